"""METRIQ — Refresh Orchestrator.

Top-level entry point for scheduled and user-triggered refreshes.

Soft refresh reuses cached transformers:
    fetching → executing-ingestion → saving → executing-chart
Hard refresh discards and regenerates everything:
    fetching → deleting-old-data → deleting-old-transformer
    → generating-ingestion → saving → executing-chart

Progress and failure are reported only through ``Metric.refresh_status``
and ``Metric.last_error``. Status is always cleared on the way out.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence

from metriq.config import settings
from metriq.core.errors import NotFound, PipelineError
from metriq.core.logging import get_logger
from metriq.core.template_catalog import TemplateCatalog
from metriq.models.pipeline_models import DashboardChart, Metric
from metriq.models.transform_models import (
    ChartPreferences,
    ChartPreferencesUpdate,
    ChartResult,
    DataPoint,
    RefreshResult,
)
from metriq.transformation.charts import preferences_of
from metriq.transformation.ingestion import IngestionPipeline
from metriq.transformation.status import (
    PIPELINE_TRANSITIONS,
    PipelineType,
    RefreshStatus,
    StatusTracker,
)
from metriq.transformation.store import PipelineStore

logger = get_logger("orchestrator")

__all__ = [
    "ChartRunner",
    "PIPELINE_TRANSITIONS",
    "PipelineType",
    "RefreshOrchestrator",
    "RefreshStatus",
    "StatusTracker",
]


class ChartRunner(Protocol):
    """What the orchestrator needs from the chart pipeline."""

    async def create(
        self,
        dashboard_chart_id: str,
        preferences: ChartPreferences,
        data_points: Optional[Sequence[DataPoint]] = None,
    ) -> ChartResult: ...

    async def execute(
        self,
        dashboard_chart_id: str,
        data_points: Optional[Sequence[DataPoint]] = None,
    ) -> ChartResult: ...

    async def regenerate(
        self,
        dashboard_chart_id: str,
        preferences: ChartPreferencesUpdate,
        data_points: Optional[Sequence[DataPoint]] = None,
    ) -> ChartResult: ...


class _ChartTally:
    def __init__(self):
        self.updated = 0
        self.failed = 0


def _error_text(exc: Exception) -> str:
    return exc.message if isinstance(exc, PipelineError) else (str(exc) or type(exc).__name__)


class RefreshOrchestrator:
    """Runs refresh pipelines for one metric at a time."""

    def __init__(
        self,
        store: PipelineStore,
        ingestion: IngestionPipeline,
        charts: ChartRunner,
        catalog: TemplateCatalog,
    ):
        self.store = store
        self.ingestion = ingestion
        self.charts = charts
        self.catalog = catalog

    # ── Status plumbing ──

    def _stepper(self, metric_id: str, tracker: StatusTracker):
        def step(status: RefreshStatus) -> None:
            tracker.advance(status)
            self.store.set_refresh_status(metric_id, status.value)
            logger.info(f"▶️ {status.value}", extra={"metric_id": metric_id, "step": status.value})

        return step

    def _succeed(self, metric_id: str, fetched: bool = True) -> None:
        fields = {"refresh_status": None, "last_error": None}
        if fetched:
            fields["last_fetched_at"] = datetime.now(timezone.utc)
        self.store.update_metric(metric_id, **fields)

    def _fail(self, metric_id: str, error: str) -> None:
        logger.error(f"Refresh failed: {error}", extra={"metric_id": metric_id})
        self.store.update_metric(metric_id, refresh_status=None, last_error=error)

    def _clear_status(self, metric_id: str, tracker: StatusTracker) -> None:
        tracker.finish()
        try:
            self.store.set_refresh_status(metric_id, None)
        except NotFound:
            logger.warning("Metric vanished before its status could be cleared", extra={"metric_id": metric_id})

    def _configured(self, metric: Metric) -> Optional[str]:
        if not metric.template_id or not metric.integration_id or not metric.connection_id:
            return f"Metric {metric.id} is not configured with a template and connection"
        return None

    # ── Chart fan-out ──

    async def _execute_charts(
        self, metric_id: str, charts: List[DashboardChart], tally: _ChartTally
    ) -> None:
        """Soft path: one dataset load, every chart's stored code re-run."""
        points = self.store.load_data_points(metric_id, settings.chart_data_point_limit)
        for chart in charts:
            try:
                result = await self.charts.execute(chart.id, points)
            except Exception as e:
                logger.error(f"Chart execute crashed: {e}", extra={"dashboard_chart_id": chart.id})
                tally.failed += 1
                continue
            if result.success:
                tally.updated += 1
            else:
                logger.warning(f"Chart execute failed: {result.error}", extra={"dashboard_chart_id": chart.id})
                tally.failed += 1

    async def _create_charts(
        self,
        metric_id: str,
        charts: List[DashboardChart],
        preferences: Dict[str, ChartPreferences],
        tally: _ChartTally,
    ) -> None:
        """Hard path: every chart gets a freshly synthesized transformer."""
        points = self.store.load_data_points(metric_id, settings.chart_data_point_limit)
        for chart in charts:
            try:
                result = await self.charts.create(chart.id, preferences[chart.id], points)
            except Exception as e:
                logger.error(f"Chart create crashed: {e}", extra={"dashboard_chart_id": chart.id})
                tally.failed += 1
                continue
            if result.success:
                tally.updated += 1
            else:
                logger.warning(f"Chart create failed: {result.error}", extra={"dashboard_chart_id": chart.id})
                tally.failed += 1

    def _chart_preferences(self, charts: List[DashboardChart]) -> Dict[str, ChartPreferences]:
        prefs: Dict[str, ChartPreferences] = {}
        for chart in charts:
            transformer = self.store.get_chart_transformer(chart.id)
            prefs[chart.id] = (
                preferences_of(transformer)
                if transformer
                else ChartPreferences(chart_type=chart.chart_type)
            )
        return prefs

    # ── Public API ──

    async def refresh_metric(self, metric_id: str, force_regenerate: bool = False) -> RefreshResult:
        """Soft (default) or hard refresh of one metric and all of its charts.

        Raises:
            NotFound: the metric or its template does not exist.
        """
        metric = self.store.require_metric(metric_id)
        pipeline = PipelineType.HARD_REFRESH if force_regenerate else PipelineType.SOFT_REFRESH
        tracker = StatusTracker(pipeline)
        step = self._stepper(metric_id, tracker)
        tally = _ChartTally()

        problem = self._configured(metric)
        if problem:
            self._fail(metric_id, problem)
            return RefreshResult(metric_id=metric_id, success=False, pipeline=pipeline.value, error=problem)

        logger.info(f"🔄 Starting {pipeline.value}", extra={"metric_id": metric_id})
        try:
            charts = self.store.list_charts(metric_id)

            if force_regenerate:
                chart_prefs = self._chart_preferences(charts)

                def hard_step(status: RefreshStatus) -> None:
                    step(status)
                    if status is RefreshStatus.DELETING_OLD_TRANSFORMER:
                        for chart in charts:
                            self.store.delete_chart_transformer(chart.id)

                result = await self.ingestion.ingest(
                    metric.template_id,
                    metric.integration_id,
                    metric.connection_id,
                    metric_id,
                    metric.endpoint_config or {},
                    on_step=hard_step,
                    regenerate=True,
                    clear_data=True,
                )
            else:
                result = await self.ingestion.refresh(
                    metric.template_id,
                    metric.integration_id,
                    metric.connection_id,
                    metric_id,
                    metric.endpoint_config or {},
                    on_step=step,
                )

            if not result.success:
                self._fail(metric_id, result.error or f"{pipeline.value} failed")
                return RefreshResult(
                    metric_id=metric_id, success=False, pipeline=pipeline.value, error=result.error
                )

            if force_regenerate:
                if charts:
                    step(RefreshStatus.EXECUTING_CHART_TRANSFORMER)
                    await self._create_charts(metric_id, charts, chart_prefs, tally)
            else:
                with_code = [c for c in charts if self.store.get_chart_transformer(c.id)]
                if with_code:
                    step(RefreshStatus.EXECUTING_CHART_TRANSFORMER)
                    await self._execute_charts(metric_id, with_code, tally)

            self._succeed(metric_id)
            logger.info(
                f"✅ {pipeline.value} complete: {len(result.data_points)} points, "
                f"{tally.updated} charts updated, {tally.failed} failed",
                extra={"metric_id": metric_id},
            )
            return RefreshResult(
                metric_id=metric_id,
                success=True,
                pipeline=pipeline.value,
                data_point_count=len(result.data_points),
                charts_updated=tally.updated,
                charts_failed=tally.failed,
            )
        except NotFound as e:
            self._fail(metric_id, e.message)
            raise
        except Exception as e:
            logger.exception(f"Unhandled error during {pipeline.value}", extra={"metric_id": metric_id})
            self._fail(metric_id, _error_text(e))
            return RefreshResult(
                metric_id=metric_id, success=False, pipeline=pipeline.value, error=_error_text(e)
            )
        finally:
            self._clear_status(metric_id, tracker)

    async def regenerate_ingestion_only(self, metric_id: str) -> RefreshResult:
        """Replace the ingestion transformer, keep data and chart code.

        Raises:
            NotFound: the metric or its template does not exist.
        """
        metric = self.store.require_metric(metric_id)
        pipeline = PipelineType.INGESTION_ONLY
        tracker = StatusTracker(pipeline)
        step = self._stepper(metric_id, tracker)
        tally = _ChartTally()

        problem = self._configured(metric)
        if problem:
            self._fail(metric_id, problem)
            return RefreshResult(metric_id=metric_id, success=False, pipeline=pipeline.value, error=problem)

        try:
            result = await self.ingestion.ingest(
                metric.template_id,
                metric.integration_id,
                metric.connection_id,
                metric_id,
                metric.endpoint_config or {},
                on_step=step,
                regenerate=True,
            )
            if not result.success:
                self._fail(metric_id, result.error or "Failed to regenerate ingestion")
                return RefreshResult(
                    metric_id=metric_id, success=False, pipeline=pipeline.value, error=result.error
                )

            with_code = [c for c in self.store.list_charts(metric_id) if self.store.get_chart_transformer(c.id)]
            if with_code:
                step(RefreshStatus.EXECUTING_CHART_TRANSFORMER)
                await self._execute_charts(metric_id, with_code, tally)

            self._succeed(metric_id)
            return RefreshResult(
                metric_id=metric_id,
                success=True,
                pipeline=pipeline.value,
                data_point_count=len(result.data_points),
                charts_updated=tally.updated,
                charts_failed=tally.failed,
            )
        except NotFound as e:
            self._fail(metric_id, e.message)
            raise
        except Exception as e:
            logger.exception("Unhandled error during ingestion regeneration", extra={"metric_id": metric_id})
            self._fail(metric_id, _error_text(e))
            return RefreshResult(
                metric_id=metric_id, success=False, pipeline=pipeline.value, error=_error_text(e)
            )
        finally:
            self._clear_status(metric_id, tracker)

    async def regenerate_chart_only(
        self,
        metric_id: str,
        dashboard_chart_id: str,
        preferences: ChartPreferencesUpdate,
    ) -> ChartResult:
        """Re-synthesize one chart's transformer without fetching.

        Raises:
            NotFound: the metric or chart does not exist.
        """
        self.store.require_metric(metric_id)
        tracker = StatusTracker(PipelineType.CHART_ONLY)
        step = self._stepper(metric_id, tracker)

        try:
            step(RefreshStatus.GENERATING_CHART_TRANSFORMER)
            result = await self.charts.regenerate(dashboard_chart_id, preferences)
            if result.success:
                self._succeed(metric_id, fetched=False)
            else:
                self._fail(metric_id, result.error or "Chart regeneration failed")
            return result
        except NotFound as e:
            self._fail(metric_id, e.message)
            raise
        except Exception as e:
            logger.exception("Unhandled error during chart regeneration", extra={"metric_id": metric_id})
            self._fail(metric_id, _error_text(e))
            return ChartResult(success=False, error=_error_text(e))
        finally:
            self._clear_status(metric_id, tracker)
