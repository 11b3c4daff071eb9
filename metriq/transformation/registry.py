"""METRIQ — Ingestion Transformer Registry.

Get-or-create for cached transformers. First writer wins: an existing
transformer is returned as-is, never re-validated. Creation synthesizes
and validates outside any DB session, then persists with insert-if-absent
so concurrent creators converge on one row without errors.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from metriq.config import settings
from metriq.core.logging import get_logger
from metriq.models.pipeline_models import IngestionTransformer
from metriq.models.transform_models import TemplateDefinition
from metriq.transformation.code_generator import (
    CodeSynthesizer,
    IngestionContext,
    TransformerKind,
)
from metriq.transformation.executor import execute_ingestion_transformer
from metriq.transformation.store import PipelineStore, as_utc

logger = get_logger("registry")


class RegistryResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    transformer: IngestionTransformer
    was_created: bool


def cache_key_for(template: TemplateDefinition, metric_id: Optional[str] = None) -> str:
    """Template ID, or ``template_id:metric_id`` for per-metric-shaped sources."""
    if template.per_metric_cache and metric_id:
        return f"{template.template_id}:{metric_id}"
    return template.template_id


class TransformerRegistry:
    """Cached ingestion transformers keyed by template (or template + metric)."""

    def __init__(self, store: PipelineStore, synthesizer: CodeSynthesizer):
        self.store = store
        self.synthesizer = synthesizer

    cache_key_for = staticmethod(cache_key_for)

    def get(self, cache_key: str) -> Optional[IngestionTransformer]:
        return self.store.get_ingestion_transformer(cache_key)

    def delete(self, cache_key: str) -> bool:
        deleted = self.store.delete_ingestion_transformer(cache_key)
        if deleted:
            logger.info("🗑️ Deleted ingestion transformer", extra={"cache_key": cache_key})
        return deleted

    async def get_or_create(
        self,
        cache_key: str,
        ctx: IngestionContext,
        sample_response: Any,
        endpoint_config: Dict[str, str],
    ) -> RegistryResult:
        """Return the cached transformer, creating and validating one if absent.

        Raises:
            SynthesisFailure: generation failed or both candidates were invalid.
                              Nothing is persisted in that case.
        """
        existing = self.store.get_ingestion_transformer(cache_key)
        if existing is not None:
            return RegistryResult(transformer=existing, was_created=False)

        async def validate(code: str):
            return await execute_ingestion_transformer(code, sample_response, endpoint_config)

        generated, _ = await self.synthesizer.synthesize_validated(
            TransformerKind.INGESTION, ctx, validate
        )

        transformer = self.store.insert_transformer_if_absent(
            cache_key=cache_key,
            template_id=ctx.template_id,
            code=generated.code,
            value_label=generated.value_label,
            data_description=generated.data_description,
        )
        window = timedelta(seconds=settings.created_window_seconds)
        was_created = as_utc(transformer.created_at) > datetime.now(timezone.utc) - window
        logger.info(
            f"{'✨ Created' if was_created else '♻️ Reused concurrently created'} ingestion transformer",
            extra={"cache_key": cache_key},
        )
        return RegistryResult(transformer=transformer, was_created=was_created)
