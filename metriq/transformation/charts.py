"""METRIQ — Chart Pipeline.

DataPoints → ChartConfig through a per-chart generated transformer.
``execute`` re-runs stored code when only the data changed; ``create``
and ``regenerate`` synthesize new code. A metric goal's baseline is
recaptured only when the chart's cadence or tracked dimension changes.
"""

import math
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from metriq.config import settings
from metriq.core.errors import NotFound, SynthesisFailure
from metriq.core.logging import get_logger
from metriq.core.template_catalog import TemplateCatalog
from metriq.models.pipeline_models import ChartTransformer, DashboardChart, Metric
from metriq.models.transform_models import (
    Cadence,
    ChartConfig,
    ChartPreferences,
    ChartPreferencesUpdate,
    ChartResult,
    DataPoint,
)
from metriq.transformation.code_generator import (
    ChartContext,
    CodeSynthesizer,
    TransformerKind,
    compute_data_stats,
)
from metriq.transformation.executor import execute_chart_transformer
from metriq.transformation.store import PipelineStore

logger = get_logger("charts")

NO_DATA_ERROR = "No data points available to generate chart"


def primary_data_key(config: ChartConfig, selected_dimension: Optional[str]) -> Optional[str]:
    """Selected dimension if the chart plots it, else the first data key."""
    if selected_dimension and selected_dimension in config.data_keys:
        return selected_dimension
    return config.data_keys[0] if config.data_keys else None


def preferences_of(transformer: ChartTransformer) -> ChartPreferences:
    return ChartPreferences(
        chart_type=transformer.chart_type,
        cadence=Cadence(transformer.cadence),
        selected_dimension=transformer.selected_dimension,
        user_prompt=transformer.user_prompt,
    )


def merge_preferences(
    current: Optional[ChartPreferences], update: ChartPreferencesUpdate
) -> ChartPreferences:
    """Apply explicitly set fields of ``update`` on top of ``current``."""
    merged = current.model_dump() if current else ChartPreferences().model_dump()
    for field in update.model_fields_set:
        value = getattr(update, field)
        if value is None and field in ("chart_type", "cadence"):
            continue
        merged[field] = value
    return ChartPreferences(**merged)


class ChartPipeline:
    """Creates, executes and regenerates chart transformers."""

    def __init__(
        self,
        store: PipelineStore,
        synthesizer: CodeSynthesizer,
        catalog: Optional[TemplateCatalog] = None,
    ):
        self.store = store
        self.synthesizer = synthesizer
        self.catalog = catalog or TemplateCatalog()

    # ── Loading ──

    def _load(self, dashboard_chart_id: str) -> tuple[DashboardChart, Metric]:
        chart = self.store.get_chart(dashboard_chart_id)
        if chart is None:
            raise NotFound(f"Dashboard chart {dashboard_chart_id} not found")
        return chart, self.store.require_metric(chart.metric_id)

    def _points(
        self, metric_id: str, data_points: Optional[Sequence[DataPoint]]
    ) -> List[DataPoint]:
        if data_points is not None:
            return list(data_points)
        return self.store.load_data_points(metric_id, settings.chart_data_point_limit)

    def _is_spreadsheet(self, metric: Metric) -> bool:
        template = self.catalog.get_template(metric.template_id) if metric.template_id else None
        return bool(template and template.per_metric_cache)

    # ── Synthesis ──

    async def _synthesize_and_save(
        self,
        chart: DashboardChart,
        metric: Metric,
        preferences: ChartPreferences,
        points: List[DataPoint],
    ) -> tuple[Optional[ChartTransformer], Optional[ChartConfig], Optional[str]]:
        if not points:
            return None, None, NO_DATA_ERROR

        ctx = ChartContext(
            metric_name=metric.name,
            metric_description=metric.description,
            sample_points=points[-settings.chart_sample_size :],
            stats=compute_data_stats(points),
            preferences=preferences,
            is_spreadsheet=self._is_spreadsheet(metric),
        )

        async def validate(code: str):
            return await execute_chart_transformer(code, points, preferences)

        try:
            generated, result = await self.synthesizer.synthesize_validated(
                TransformerKind.CHART, ctx, validate
            )
        except SynthesisFailure as e:
            logger.error(
                f"Chart synthesis failed: {e.message}",
                extra={"dashboard_chart_id": chart.id},
            )
            return None, None, e.message

        transformer = self.store.save_chart_result(chart.id, generated.code, preferences, result.data)
        return transformer, result.data, None

    def _maybe_recapture_baseline(
        self, metric_id: str, config: ChartConfig, selected_dimension: Optional[str]
    ) -> bool:
        """Reset the goal baseline to the chart's first row. Returns True if written."""
        goal = self.store.get_goal(metric_id)
        if goal is None:
            return False
        key = primary_data_key(config, selected_dimension)
        if key is None or not config.chart_data:
            logger.warning("Chart has no rows to take a baseline from", extra={"metric_id": metric_id})
            return False

        raw = config.chart_data[0].get(key)
        try:
            value = float(raw)
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Baseline value for '{key}' is not numeric: {raw!r}", extra={"metric_id": metric_id})
            return False
        if not math.isfinite(value):
            return False

        self.store.update_goal_baseline(metric_id, value, datetime.now(timezone.utc))
        logger.info(f"🎯 Goal baseline recaptured from '{key}': {value}", extra={"metric_id": metric_id})
        return True

    # ── Public API ──

    async def create(
        self,
        dashboard_chart_id: str,
        preferences: ChartPreferences,
        data_points: Optional[Sequence[DataPoint]] = None,
    ) -> ChartResult:
        """Synthesize a chart transformer for a chart and render it.

        Raises:
            NotFound: the chart or its metric does not exist.
        """
        chart, metric = self._load(dashboard_chart_id)
        points = self._points(metric.id, data_points)

        transformer, config, error = await self._synthesize_and_save(chart, metric, preferences, points)
        if error:
            return ChartResult(success=False, error=error)

        recaptured = False
        if preferences.selected_dimension:
            recaptured = self._maybe_recapture_baseline(metric.id, config, preferences.selected_dimension)
        return ChartResult(
            success=True,
            chart_config=config,
            version=transformer.version,
            baseline_recaptured=recaptured,
        )

    async def execute(
        self,
        dashboard_chart_id: str,
        data_points: Optional[Sequence[DataPoint]] = None,
    ) -> ChartResult:
        """Re-run the stored chart code against current data. Never touches the goal.

        Raises:
            NotFound: the chart or its metric does not exist.
        """
        chart, metric = self._load(dashboard_chart_id)
        transformer = self.store.get_chart_transformer(dashboard_chart_id)
        if transformer is None:
            return ChartResult(
                success=False, error=f"No chart transformer found for chart {dashboard_chart_id}"
            )

        points = self._points(metric.id, data_points)
        result = await execute_chart_transformer(transformer.code, points, preferences_of(transformer))
        if not result.success:
            logger.warning(
                f"Chart transformer execution failed: {result.error}",
                extra={"dashboard_chart_id": dashboard_chart_id},
            )
            return ChartResult(success=False, error=result.error)

        self.store.update_chart_config(dashboard_chart_id, result.data)
        return ChartResult(success=True, chart_config=result.data, version=transformer.version)

    async def regenerate(
        self,
        dashboard_chart_id: str,
        preferences: ChartPreferencesUpdate,
        data_points: Optional[Sequence[DataPoint]] = None,
    ) -> ChartResult:
        """Re-synthesize from scratch with (possibly) new preferences; bumps version.

        Raises:
            NotFound: the chart or its metric does not exist.
        """
        chart, metric = self._load(dashboard_chart_id)
        existing = self.store.get_chart_transformer(dashboard_chart_id)
        previous = preferences_of(existing) if existing else None
        merged = merge_preferences(previous, preferences)
        points = self._points(metric.id, data_points)

        transformer, config, error = await self._synthesize_and_save(chart, metric, merged, points)
        if error:
            return ChartResult(success=False, error=error)

        if previous is None:
            shifted = merged.selected_dimension is not None
        else:
            shifted = (
                merged.cadence != previous.cadence
                or merged.selected_dimension != previous.selected_dimension
            )
        recaptured = (
            self._maybe_recapture_baseline(metric.id, config, merged.selected_dimension)
            if shifted
            else False
        )
        return ChartResult(
            success=True,
            chart_config=config,
            version=transformer.version,
            baseline_recaptured=recaptured,
        )
