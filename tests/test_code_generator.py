"""Tests for prompt building, output cleanup and the regenerate-once loop."""

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeProvider, utc
from metriq.core.errors import SynthesisFailure
from metriq.models.transform_models import ChartPreferences, DataPoint, ExecutionResult
from metriq.transformation.code_generator import (
    ChartContext,
    CodeSynthesizer,
    IngestionContext,
    TransformerKind,
    build_chart_prompt,
    build_ingestion_prompt,
    clean_generated_code,
    compute_data_stats,
    format_sample,
    parse_metadata,
)


def _ingestion_ctx(**overrides):
    fields = dict(
        template_id="github-repo-stars",
        integration_id="github",
        endpoint="/repos/{OWNER}/{REPO}",
        sample_response={"stargazers_count": 10},
        metric_description="Star count",
        available_params=["OWNER", "REPO"],
        endpoint_config={"OWNER": "octocat", "REPO": "hello"},
    )
    fields.update(overrides)
    return IngestionContext(**fields)


def _series(days, step=1, dims=None):
    start = utc(2024, 1, 1)
    return [
        DataPoint(timestamp=start + timedelta(days=i * step), value=i, dimensions=dims)
        for i in range(days)
    ]


class TestCleanup:
    def test_strips_python_fence(self):
        assert clean_generated_code("```python\ndef transform():\n    pass\n```") == "def transform():\n    pass"

    def test_strips_bare_fence(self):
        assert clean_generated_code("```\nx = 1\n```\n") == "x = 1"

    def test_plain_code_untouched(self):
        assert clean_generated_code("  x = 1\n") == "x = 1"

    def test_parses_header_metadata(self):
        code = "# value_label: Stars\n# data_description: Stars over time\n\ndef transform(): pass\n# value_label: ignored"
        assert parse_metadata(code) == {"value_label": "Stars", "data_description": "Stars over time"}

    def test_no_metadata(self):
        assert parse_metadata("def transform(): pass") == {}


class TestDataStats:
    def test_empty(self):
        stats = compute_data_stats([])
        assert stats.total_count == 0
        assert stats.date_from is None

    def test_daily_granularity(self):
        stats = compute_data_stats(_series(10))
        assert stats.detected_granularity == "daily"
        assert stats.days_covered == 9
        assert stats.date_from == "2024-01-01"

    def test_weekly_granularity(self):
        assert compute_data_stats(_series(6, step=7)).detected_granularity == "weekly"

    def test_monthly_granularity(self):
        assert compute_data_stats(_series(4, step=30)).detected_granularity == "monthly"

    def test_dimension_keys_sorted(self):
        stats = compute_data_stats(_series(2, dims={"repo": "a", "branch": "main"}))
        assert stats.dimension_keys == ["branch", "repo"]


class TestPrompts:
    def test_ingestion_prompt_includes_sample_and_params(self):
        prompt = build_ingestion_prompt(_ingestion_ctx())
        assert "stargazers_count" in prompt
        assert "OWNER, REPO" in prompt
        assert "octocat" in prompt

    def test_long_sample_truncated(self):
        text = format_sample({"blob": "x" * 500}, max_chars=100)
        assert "truncated" in text
        assert len(text) < 200

    def test_spreadsheet_prompt_previews_grid(self):
        rows = [["date", "value"]] + [[f"2024-01-{i:02d}", i] for i in range(1, 21)]
        prompt = build_ingestion_prompt(_ingestion_ctx(sample_response={"values": rows}, is_spreadsheet=True))
        assert "Grid: 21 rows x 2 columns" in prompt
        assert "2024-01-15" not in prompt

    def test_chart_prompt_carries_preferences_and_user_request(self):
        points = _series(3)
        ctx = ChartContext(
            metric_name="Stars",
            sample_points=points,
            stats=compute_data_stats(points),
            preferences=ChartPreferences(chart_type="bar", user_prompt="show weekly totals"),
        )
        prompt = build_chart_prompt(ctx)
        assert "chart_type: bar" in prompt
        assert "cadence: DAILY" in prompt
        assert 'User request: "show weekly totals"' in prompt


class TestSynthesizer:
    def test_generated_code_is_cleaned(self):
        provider = FakeProvider("```python\n# value_label: Stars\ndef transform(a, b):\n    return []\n```")
        generated = asyncio.run(CodeSynthesizer(provider).synthesize_ingestion(_ingestion_ctx()))
        assert generated.code.startswith("# value_label")
        assert generated.value_label == "Stars"
        assert provider.calls[0]["temperature"] == 0.1

    def test_empty_output_is_a_synthesis_failure(self):
        with pytest.raises(SynthesisFailure, match="no code"):
            asyncio.run(CodeSynthesizer(FakeProvider("   ")).synthesize_ingestion(_ingestion_ctx()))

    def test_provider_error_wrapped(self):
        class Exploding(FakeProvider):
            async def generate(self, system_prompt, user_prompt, temperature=0.1):
                raise RuntimeError("overloaded")

        with pytest.raises(SynthesisFailure, match="Code generation failed: overloaded"):
            asyncio.run(CodeSynthesizer(Exploding()).synthesize_ingestion(_ingestion_ctx()))

    def test_regenerates_once_with_failure_context(self):
        provider = FakeProvider("first", "second")
        seen = []

        async def validate(code):
            seen.append(code)
            if code == "first":
                return ExecutionResult(success=False, error="KeyError: 'x'")
            return ExecutionResult(success=True, data=[])

        generated, result = asyncio.run(
            CodeSynthesizer(provider).synthesize_validated(TransformerKind.INGESTION, _ingestion_ctx(), validate)
        )
        assert generated.code == "second"
        assert result.success
        assert seen == ["first", "second"]
        retry_prompt = provider.calls[1]["user"]
        assert "first" in retry_prompt
        assert "KeyError: 'x'" in retry_prompt
        assert provider.calls[1]["temperature"] == 0.2

    def test_gives_up_after_one_regeneration(self):
        provider = FakeProvider("bad")

        async def validate(code):
            return ExecutionResult(success=False, error="still broken")

        with pytest.raises(SynthesisFailure, match="Failed to generate working transformer: still broken"):
            asyncio.run(
                CodeSynthesizer(provider).synthesize_validated(TransformerKind.INGESTION, _ingestion_ctx(), validate)
            )
        assert len(provider.calls) == 2

    def test_chart_failure_message(self):
        points = _series(2)
        ctx = ChartContext(
            metric_name="Stars", sample_points=points, stats=compute_data_stats(points),
            preferences=ChartPreferences(),
        )

        async def validate(code):
            return ExecutionResult(success=False, error="nope")

        with pytest.raises(SynthesisFailure, match="Failed to generate working chart transformer: nope"):
            asyncio.run(CodeSynthesizer(FakeProvider("x")).synthesize_validated(TransformerKind.CHART, ctx, validate))
