"""METRIQ — Ingestion Pipeline.

Fetch once → get-or-create transformer → execute + validate → batch save.
Failures come back as ``IngestionResult(success=False)``; only a template
missing from the catalog raises.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from metriq.connectors.fetcher import IntegrationFetcher, resolve_endpoint
from metriq.core.errors import NotFound, SynthesisFailure
from metriq.core.logging import get_logger
from metriq.core.template_catalog import TemplateCatalog
from metriq.models.transform_models import IngestionResult, TemplateDefinition
from metriq.transformation.code_generator import IngestionContext
from metriq.transformation.executor import execute_ingestion_transformer
from metriq.transformation.registry import TransformerRegistry, cache_key_for
from metriq.transformation.status import RefreshStatus
from metriq.transformation.store import PipelineStore

logger = get_logger("ingestion")

StepCallback = Callable[[RefreshStatus], Union[None, Awaitable[None]]]


async def _report(on_step: Optional[StepCallback], status: RefreshStatus) -> None:
    if on_step is None:
        return
    result = on_step(status)
    if inspect.isawaitable(result):
        await result


class IngestionPipeline:
    """Turns one source API response into persisted data points."""

    def __init__(
        self,
        store: PipelineStore,
        fetcher: IntegrationFetcher,
        registry: TransformerRegistry,
        catalog: TemplateCatalog,
    ):
        self.store = store
        self.fetcher = fetcher
        self.registry = registry
        self.catalog = catalog

    def _template(self, template_id: str) -> TemplateDefinition:
        template = self.catalog.get_template(template_id)
        if template is None:
            raise NotFound(f"Template {template_id} not found")
        return template

    async def _fetch(
        self,
        template: TemplateDefinition,
        integration_id: str,
        connection_id: str,
        metric_id: str,
        endpoint_config: Dict[str, str],
    ) -> tuple[Optional[Any], Optional[str]]:
        """One fetch with an audit row either way. Returns (data, error)."""
        endpoint = resolve_endpoint(template.metric_endpoint, endpoint_config)
        try:
            response = await self.fetcher.fetch(
                integration_id,
                connection_id,
                template.metric_endpoint,
                method=template.method,
                params=endpoint_config,
                body=template.request_body,
            )
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            logger.warning(f"Fetch failed: {message}", extra={"metric_id": metric_id})
            self.store.log_api_call(
                metric_id, endpoint, endpoint_config, success=False, error=message
            )
            return None, f"Failed to fetch data: {message}"

        self.store.log_api_call(metric_id, endpoint, endpoint_config, raw_response=response.data)
        return response.data, None

    def _context(
        self,
        template: TemplateDefinition,
        sample: Any,
        endpoint_config: Dict[str, str],
    ) -> IngestionContext:
        return IngestionContext(
            template_id=template.template_id,
            integration_id=template.integration_id,
            endpoint=template.metric_endpoint,
            method=template.method,
            sample_response=sample,
            metric_description=template.description,
            available_params=template.param_names,
            endpoint_config=endpoint_config,
            extraction_prompt=template.extraction_prompt,
            is_spreadsheet=template.per_metric_cache,
        )

    async def _execute_and_save(
        self,
        code: str,
        data: Any,
        metric_id: str,
        endpoint_config: Dict[str, str],
        is_time_series: bool,
        on_step: Optional[StepCallback],
        transformer_created: bool,
    ) -> IngestionResult:
        execution = await execute_ingestion_transformer(code, data, endpoint_config)
        if not execution.success:
            return IngestionResult(success=False, error=execution.error)

        await _report(on_step, RefreshStatus.SAVING_TIMESERIES_DATA)
        self.store.save_data_points(metric_id, execution.data, is_time_series)
        return IngestionResult(
            success=True,
            data_points=execution.data,
            transformer_created=transformer_created,
        )

    async def ingest(
        self,
        template_id: str,
        integration_id: str,
        connection_id: str,
        metric_id: str,
        endpoint_config: Dict[str, str],
        is_time_series: Optional[bool] = None,
        on_step: Optional[StepCallback] = None,
        regenerate: bool = False,
        clear_data: bool = False,
    ) -> IngestionResult:
        """Fetch, obtain (or create) the transformer, execute and persist.

        Args:
            regenerate: Delete the cached transformer after a successful
                        fetch so a new one is synthesized.
            clear_data: Also delete the metric's existing data points
                        (hard refresh). Only honoured with ``regenerate``.

        Raises:
            NotFound: the template is not in the catalog.
        """
        template = self._template(template_id)
        if is_time_series is None:
            is_time_series = template.is_time_series
        cache_key = cache_key_for(template, metric_id)

        await _report(on_step, RefreshStatus.FETCHING_API_DATA)
        data, error = await self._fetch(
            template, integration_id, connection_id, metric_id, endpoint_config
        )
        if error:
            return IngestionResult(success=False, error=error)

        if regenerate:
            if clear_data:
                await _report(on_step, RefreshStatus.DELETING_OLD_DATA)
                removed = self.store.delete_data_points(metric_id)
                logger.info(f"🗑️ Deleted {removed} old data points", extra={"metric_id": metric_id})
            await _report(on_step, RefreshStatus.DELETING_OLD_TRANSFORMER)
            self.registry.delete(cache_key)

        exists = not regenerate and self.registry.get(cache_key) is not None
        await _report(
            on_step,
            RefreshStatus.EXECUTING_INGESTION_TRANSFORMER
            if exists
            else RefreshStatus.GENERATING_INGESTION_TRANSFORMER,
        )
        try:
            result = await self.registry.get_or_create(
                cache_key, self._context(template, data, endpoint_config), data, endpoint_config
            )
        except SynthesisFailure as e:
            logger.error(f"Transformer synthesis failed: {e.message}", extra={"cache_key": cache_key})
            return IngestionResult(success=False, error=e.message)

        return await self._execute_and_save(
            result.transformer.code,
            data,
            metric_id,
            endpoint_config,
            is_time_series,
            on_step,
            result.was_created,
        )

    async def refresh(
        self,
        template_id: str,
        integration_id: str,
        connection_id: str,
        metric_id: str,
        endpoint_config: Dict[str, str],
        is_time_series: Optional[bool] = None,
        on_step: Optional[StepCallback] = None,
    ) -> IngestionResult:
        """Like ``ingest`` but only reuses an existing transformer.

        Raises:
            NotFound: the template is not in the catalog.
        """
        template = self._template(template_id)
        if is_time_series is None:
            is_time_series = template.is_time_series
        cache_key = cache_key_for(template, metric_id)

        transformer = self.registry.get(cache_key)
        if transformer is None:
            return IngestionResult(
                success=False, error=f"No transformer found for cache key {cache_key}"
            )

        await _report(on_step, RefreshStatus.FETCHING_API_DATA)
        data, error = await self._fetch(
            template, integration_id, connection_id, metric_id, endpoint_config
        )
        if error:
            return IngestionResult(success=False, error=error)

        await _report(on_step, RefreshStatus.EXECUTING_INGESTION_TRANSFORMER)
        return await self._execute_and_save(
            transformer.code,
            data,
            metric_id,
            endpoint_config,
            is_time_series,
            on_step,
            False,
        )
