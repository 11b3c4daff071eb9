"""METRIQ — Code Synthesizer.

Builds prompts from template metadata and real sample data, calls the
code-generation provider, strips formatting and parses header metadata.
``synthesize_validated`` is the single place a failed candidate gets its
one regeneration attempt.
"""

import json
import math
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from metriq.ai.base_provider import CodeGenerationProvider
from metriq.config import settings
from metriq.core.errors import SynthesisFailure
from metriq.core.logging import get_logger
from metriq.models.transform_models import (
    ChartPreferences,
    DataPoint,
    DataStats,
    ExecutionResult,
    GeneratedCode,
)
from metriq.transformation import prompts

logger = get_logger("codegen")

GENERATE_TEMPERATURE = 0.1
REGENERATE_TEMPERATURE = 0.2
SPREADSHEET_PREVIEW_ROWS = 10

_FENCE_OPEN = re.compile(r"^```[\w+-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_METADATA_LINE = re.compile(r"^#\s*(value_label|data_description)\s*:\s*(.+?)\s*$")


class TransformerKind(str, Enum):
    INGESTION = "ingestion"
    CHART = "chart"


class IngestionContext(BaseModel):
    """Everything the oracle sees when writing an ingestion transformer."""

    template_id: str
    integration_id: str
    endpoint: str
    method: str = "GET"
    sample_response: Any = None
    metric_description: str = ""
    available_params: List[str] = Field(default_factory=list)
    endpoint_config: Dict[str, str] = Field(default_factory=dict)
    extraction_prompt: Optional[str] = None
    is_spreadsheet: bool = False


class ChartContext(BaseModel):
    """Everything the oracle sees when writing a chart transformer."""

    metric_name: str
    metric_description: str = ""
    sample_points: List[DataPoint] = Field(default_factory=list)
    stats: DataStats
    preferences: ChartPreferences
    is_spreadsheet: bool = False


# ── Output cleanup ──


def clean_generated_code(text: str) -> str:
    """Strip markdown code fences and surrounding whitespace."""
    clean = (text or "").strip()
    if clean.startswith("```"):
        clean = _FENCE_OPEN.sub("", clean, count=1)
        clean = _FENCE_CLOSE.sub("", clean)
    return clean.strip()


def parse_metadata(code: str) -> Dict[str, str]:
    """Read ``# value_label:`` / ``# data_description:`` from the header comments."""
    metadata: Dict[str, str] = {}
    for line in code.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("#"):
            break
        match = _METADATA_LINE.match(stripped)
        if match:
            metadata[match.group(1)] = match.group(2)
    return metadata


# ── Prompt context helpers ──


def compute_data_stats(points: Sequence[DataPoint]) -> DataStats:
    """Count, span, granularity (from the average gap) and dimension keys."""
    if not points:
        return DataStats(total_count=0)

    timestamps = [p.timestamp for p in points]
    oldest, newest = min(timestamps), max(timestamps)
    span_days = (newest - oldest).total_seconds() / 86400

    granularity = "daily"
    if len(points) > 1:
        avg_gap_days = span_days / (len(points) - 1)
        if avg_gap_days >= 25:
            granularity = "monthly"
        elif avg_gap_days >= 5:
            granularity = "weekly"

    keys = set()
    for p in points:
        if p.dimensions:
            keys.update(p.dimensions.keys())

    return DataStats(
        total_count=len(points),
        date_from=oldest.date().isoformat(),
        date_to=newest.date().isoformat(),
        days_covered=math.ceil(span_days),
        detected_granularity=granularity,
        dimension_keys=sorted(keys),
    )


def format_sample(sample: Any, max_chars: Optional[int] = None) -> str:
    """Pretty JSON for the prompt, truncated to keep the prompt bounded."""
    max_chars = settings.prompt_sample_max_chars if max_chars is None else max_chars
    text = json.dumps(sample, indent=2, default=str)
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n... (truncated, {len(text) - max_chars} more characters)"


def _spreadsheet_preview(sample: Any) -> str:
    rows = sample.get("values") if isinstance(sample, dict) else sample
    if not isinstance(rows, list):
        return format_sample(sample)
    width = max((len(r) for r in rows if isinstance(r, list)), default=0)
    preview = rows[:SPREADSHEET_PREVIEW_ROWS]
    return (
        f"Grid: {len(rows)} rows x {width} columns\n"
        f"First {len(preview)} rows:\n{format_sample(preview)}"
    )


def build_ingestion_prompt(ctx: IngestionContext) -> str:
    sample_block = (
        _spreadsheet_preview(ctx.sample_response)
        if ctx.is_spreadsheet
        else format_sample(ctx.sample_response)
    )
    params = ", ".join(ctx.available_params) or "none"
    prompt = (
        f"Template: {ctx.template_id}\n"
        f"Integration: {ctx.integration_id}\n"
        f"Endpoint: {ctx.method} {ctx.endpoint}\n\n"
        f"ACTUAL API Response (fetched just now):\n{sample_block}\n\n"
        f"This metric tracks: {ctx.metric_description}\n\n"
        f"Parameters available in endpoint_config: {params}\n"
        f"Current endpoint_config: {json.dumps(ctx.endpoint_config, sort_keys=True)}"
    )
    if ctx.extraction_prompt:
        prompt += f"\n\nExtraction guidance: {ctx.extraction_prompt}"
    return prompt


def build_chart_prompt(ctx: ChartContext) -> str:
    sample = [
        {
            "timestamp": p.timestamp.isoformat(),
            "value": p.value,
            "dimensions": p.dimensions,
        }
        for p in ctx.sample_points[: settings.chart_sample_size]
    ]
    stats = ctx.stats
    prefs = ctx.preferences
    prompt = (
        f"DataPoint sample (first {len(sample)} of {stats.total_count}):\n"
        f"{format_sample(sample)}\n\n"
        "Data Statistics:\n"
        f"- Total data points: {stats.total_count}\n"
        f"- Date range: {stats.date_from or 'unknown'} to {stats.date_to or 'unknown'}\n"
        f"- Days covered: {stats.days_covered}\n"
        f"- Detected granularity: {stats.detected_granularity}\n"
        f"- Available dimensions: {', '.join(stats.dimension_keys) or 'none'}\n\n"
        "Preferences:\n"
        f"- chart_type: {prefs.chart_type}\n"
        f"- cadence: {prefs.cadence.value}\n"
        f"- selected_dimension: {prefs.selected_dimension or 'none'}\n\n"
        f"Metric name: {ctx.metric_name}\n"
        f"Metric description: {ctx.metric_description}"
    )
    if ctx.is_spreadsheet:
        prompt += f"\n\n{prompts.SPREADSHEET_CHART_GUIDANCE}"
    if prefs.user_prompt:
        prompt += f'\n\nUser request: "{prefs.user_prompt}"'
    return prompt


def _with_failure(prompt: str, previous_code: str, previous_error: str) -> str:
    return (
        f"{prompt}\n\n"
        f"Previous transformer code that FAILED:\n{previous_code}\n\n"
        f"Error message:\n{previous_error}\n\n"
        f"{prompts.FIX_INSTRUCTION}"
    )


# ─────────────────────────────────────────────
# SYNTHESIZER
# ─────────────────────────────────────────────


class CodeSynthesizer:
    """Turns pipeline context into candidate transformer code."""

    def __init__(self, provider: Optional[CodeGenerationProvider] = None):
        self._provider = provider

    @property
    def provider(self) -> CodeGenerationProvider:
        if self._provider is None:
            from metriq.ai.provider_factory import select_provider

            name, self._provider = select_provider("auto")
            logger.info(f"Using code-generation provider: {name}")
        return self._provider

    async def _call(
        self, system_prompt: str, user_prompt: str, temperature: float, reasoning: str
    ) -> GeneratedCode:
        try:
            raw = await self.provider.generate(system_prompt, user_prompt, temperature=temperature)
        except SynthesisFailure:
            raise
        except Exception as e:
            raise SynthesisFailure(f"Code generation failed: {e}") from e

        code = clean_generated_code(raw)
        if not code:
            raise SynthesisFailure("Code generation returned no code")
        metadata = parse_metadata(code)
        return GeneratedCode(
            code=code,
            value_label=metadata.get("value_label"),
            data_description=metadata.get("data_description"),
            reasoning=reasoning,
        )

    # ── Ingestion ──

    @staticmethod
    def _ingestion_system(ctx: IngestionContext) -> str:
        if ctx.is_spreadsheet:
            return prompts.SPREADSHEET_INGESTION_SYSTEM_PROMPT
        return prompts.INGESTION_SYSTEM_PROMPT

    async def synthesize_ingestion(self, ctx: IngestionContext) -> GeneratedCode:
        logger.info(f"🧠 Generating ingestion transformer for {ctx.template_id}")
        return await self._call(
            self._ingestion_system(ctx),
            build_ingestion_prompt(ctx) + "\n\nGenerate the Python transform function.",
            GENERATE_TEMPERATURE,
            f"Generated transformer for {ctx.template_id} based on actual API response structure.",
        )

    async def regenerate_ingestion(
        self, ctx: IngestionContext, previous_code: str, previous_error: str
    ) -> GeneratedCode:
        logger.info(f"🔁 Regenerating ingestion transformer for {ctx.template_id}")
        return await self._call(
            self._ingestion_system(ctx),
            _with_failure(build_ingestion_prompt(ctx), previous_code, previous_error),
            REGENERATE_TEMPERATURE,
            f"Regenerated transformer for {ctx.template_id} after failure.",
        )

    # ── Charts ──

    async def synthesize_chart(self, ctx: ChartContext) -> GeneratedCode:
        logger.info(f"📊 Generating {ctx.preferences.chart_type} chart transformer for {ctx.metric_name}")
        reasoning = (
            f'Generated chart transformer based on user request: "{ctx.preferences.user_prompt}"'
            if ctx.preferences.user_prompt
            else f"Generated {ctx.preferences.chart_type} chart transformer for {ctx.metric_name}."
        )
        return await self._call(
            prompts.CHART_SYSTEM_PROMPT,
            build_chart_prompt(ctx) + "\n\nGenerate the Python transform function.",
            GENERATE_TEMPERATURE,
            reasoning,
        )

    async def regenerate_chart(
        self, ctx: ChartContext, previous_code: str, previous_error: str
    ) -> GeneratedCode:
        logger.info(f"🔁 Regenerating chart transformer for {ctx.metric_name}")
        return await self._call(
            prompts.CHART_SYSTEM_PROMPT,
            _with_failure(build_chart_prompt(ctx), previous_code, previous_error),
            REGENERATE_TEMPERATURE,
            f"Regenerated chart transformer for {ctx.metric_name} after failure.",
        )

    # ── Generic dispatch ──

    async def synthesize(self, kind: TransformerKind, ctx) -> GeneratedCode:
        if kind is TransformerKind.INGESTION:
            return await self.synthesize_ingestion(ctx)
        return await self.synthesize_chart(ctx)

    async def regenerate(
        self, kind: TransformerKind, ctx, previous_code: str, previous_error: str
    ) -> GeneratedCode:
        if kind is TransformerKind.INGESTION:
            return await self.regenerate_ingestion(ctx, previous_code, previous_error)
        return await self.regenerate_chart(ctx, previous_code, previous_error)

    async def synthesize_validated(
        self,
        kind: TransformerKind,
        ctx,
        validate: Callable[[str], Awaitable[ExecutionResult]],
    ) -> Tuple[GeneratedCode, ExecutionResult]:
        """Synthesize, validate by execution, and regenerate at most once.

        Raises:
            SynthesisFailure: the oracle failed, or both candidates failed
                              validation.
        """
        generated = await self.synthesize(kind, ctx)
        result = await validate(generated.code)
        if result.success:
            return generated, result

        logger.warning(f"Generated {kind.value} transformer failed validation: {result.error}")
        fixed = await self.regenerate(kind, ctx, generated.code, result.error or "unknown error")
        retry = await validate(fixed.code)
        if retry.success:
            return fixed, retry

        label = "transformer" if kind is TransformerKind.INGESTION else "chart transformer"
        raise SynthesisFailure(f"Failed to generate working {label}: {retry.error}")
