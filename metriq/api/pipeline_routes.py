"""METRIQ — Pipeline API Routes."""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from metriq.config import settings
from metriq.core.errors import NotFound, PipelineError
from metriq.core.logging import get_logger
from metriq.models.transform_models import ChartPreferencesUpdate, ChartResult
from metriq.transformation.code_generator import compute_data_stats
from metriq.transformation.orchestrator import RefreshOrchestrator, RefreshStatus
from metriq.transformation.registry import cache_key_for
from metriq.transformation.store import as_utc

logger = get_logger("api.pipeline")

router = APIRouter(tags=["Pipeline"])


@lru_cache
def get_orchestrator() -> RefreshOrchestrator:
    """Dependency — the process-wide pipeline."""
    from metriq.services import build_orchestrator

    return build_orchestrator()


# ── Response Models ──


class RefreshAccepted(BaseModel):
    status: str = "accepted"
    metric_id: str
    pipeline: str


class MetricStatus(BaseModel):
    metric_id: str
    refresh_status: Optional[str] = None
    last_error: Optional[str] = None
    last_fetched_at: Optional[datetime] = None
    data_point_count: int = 0


class TransformerSummary(BaseModel):
    id: str
    kind: str  # ingestion | chart
    key: str
    version: Optional[int] = None
    value_label: Optional[str] = None
    chart_type: Optional[str] = None
    cadence: Optional[str] = None
    code: str
    updated_at: datetime


# ── Helpers ──


def _raise_http(e: PipelineError):
    if isinstance(e, NotFound):
        raise HTTPException(status_code=404, detail=e.message)
    raise HTTPException(status_code=422, detail=e.message)


async def _run_in_background(coro_fn, *args, **kwargs) -> None:
    """Background tasks have no caller to report to; errors are logged."""
    try:
        await coro_fn(*args, **kwargs)
    except Exception as e:
        logger.error(f"Background pipeline run failed: {e}")


def _refresh_in_flight(metric) -> bool:
    """A set status counts unless it stopped advancing, e.g. after a crash."""
    if metric.refresh_status is None:
        return False
    stamped = as_utc(metric.refresh_status_at)
    age = (datetime.now(timezone.utc) - stamped).total_seconds() if stamped else None
    if age is not None and age < settings.refresh_stale_after_seconds:
        return True
    logger.warning(
        f"⚠️ Ignoring stale refresh status '{metric.refresh_status}' on metric {metric.id}",
        extra={"metric_id": metric.id},
    )
    return False


def _schedule(
    orchestrator: RefreshOrchestrator,
    background: BackgroundTasks,
    metric_id: str,
    pipeline: str,
    coro_fn,
    *args,
    **kwargs,
) -> RefreshAccepted:
    metric = orchestrator.store.get_metric(metric_id)
    if metric is None:
        raise HTTPException(status_code=404, detail=f"Metric {metric_id} not found")
    if _refresh_in_flight(metric):
        raise HTTPException(
            status_code=409,
            detail=f"Metric {metric_id} is already refreshing ({metric.refresh_status})",
        )
    # Visible to pollers immediately, before the task starts
    orchestrator.store.set_refresh_status(metric_id, RefreshStatus.FETCHING_API_DATA.value)
    background.add_task(_run_in_background, coro_fn, *args, **kwargs)
    return RefreshAccepted(metric_id=metric_id, pipeline=pipeline)


# ── Endpoints ──


@router.post("/metrics/{metric_id}/refresh", response_model=RefreshAccepted, status_code=202)
async def refresh_metric(
    metric_id: str,
    background: BackgroundTasks,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
):
    """Soft refresh: re-fetch and re-run existing transformers."""
    return _schedule(
        orchestrator, background, metric_id, "soft-refresh",
        orchestrator.refresh_metric, metric_id,
    )


@router.post("/metrics/{metric_id}/regenerate", response_model=RefreshAccepted, status_code=202)
async def regenerate_metric(
    metric_id: str,
    background: BackgroundTasks,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
):
    """Hard refresh: discard data and transformers, regenerate everything."""
    return _schedule(
        orchestrator, background, metric_id, "hard-refresh",
        orchestrator.refresh_metric, metric_id, force_regenerate=True,
    )


@router.post(
    "/metrics/{metric_id}/regenerate-ingestion", response_model=RefreshAccepted, status_code=202
)
async def regenerate_ingestion(
    metric_id: str,
    background: BackgroundTasks,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
):
    """Replace only the ingestion transformer; charts are re-executed."""
    return _schedule(
        orchestrator, background, metric_id, "ingestion-only",
        orchestrator.regenerate_ingestion_only, metric_id,
    )


@router.post("/charts/{dashboard_chart_id}/regenerate", response_model=ChartResult)
async def regenerate_chart(
    dashboard_chart_id: str,
    preferences: ChartPreferencesUpdate,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
):
    """Re-synthesize one chart with new preferences. Returns the rendered config."""
    chart = orchestrator.store.get_chart(dashboard_chart_id)
    if chart is None:
        raise HTTPException(status_code=404, detail=f"Dashboard chart {dashboard_chart_id} not found")
    try:
        result = await orchestrator.regenerate_chart_only(chart.metric_id, dashboard_chart_id, preferences)
    except PipelineError as e:
        _raise_http(e)
    if not result.success:
        raise HTTPException(status_code=422, detail=result.error)
    return result


@router.get("/metrics/{metric_id}/status", response_model=MetricStatus)
async def metric_status(
    metric_id: str,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
):
    """Progress and last outcome of the metric's pipeline."""
    metric = orchestrator.store.get_metric(metric_id)
    if metric is None:
        raise HTTPException(status_code=404, detail=f"Metric {metric_id} not found")
    return MetricStatus(
        metric_id=metric.id,
        refresh_status=metric.refresh_status,
        last_error=metric.last_error,
        last_fetched_at=metric.last_fetched_at,
        data_point_count=orchestrator.store.count_data_points(metric_id),
    )


@router.get("/metrics/{metric_id}/dimensions")
async def metric_dimensions(
    metric_id: str,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Dimension keys present in the metric's recent data, for chart options."""
    if orchestrator.store.get_metric(metric_id) is None:
        raise HTTPException(status_code=404, detail=f"Metric {metric_id} not found")
    points = orchestrator.store.load_data_points(metric_id, settings.chart_data_point_limit)
    stats = compute_data_stats(points)
    return {"metric_id": metric_id, "dimensions": stats.dimension_keys, "stats": stats}


@router.get("/metrics/{metric_id}/transformers", response_model=List[TransformerSummary])
async def metric_transformers(
    metric_id: str,
    orchestrator: RefreshOrchestrator = Depends(get_orchestrator),
):
    """The ingestion transformer and every chart transformer serving this metric."""
    store = orchestrator.store
    metric = store.get_metric(metric_id)
    if metric is None:
        raise HTTPException(status_code=404, detail=f"Metric {metric_id} not found")

    summaries: List[TransformerSummary] = []
    template = orchestrator.catalog.get_template(metric.template_id) if metric.template_id else None
    if template is not None:
        ingestion = store.get_ingestion_transformer(cache_key_for(template, metric.id))
        if ingestion is not None:
            summaries.append(
                TransformerSummary(
                    id=ingestion.id,
                    kind="ingestion",
                    key=ingestion.cache_key,
                    value_label=ingestion.value_label,
                    code=ingestion.code,
                    updated_at=ingestion.updated_at,
                )
            )

    for chart in store.list_charts(metric_id):
        transformer = store.get_chart_transformer(chart.id)
        if transformer is None:
            continue
        summaries.append(
            TransformerSummary(
                id=transformer.id,
                kind="chart",
                key=chart.id,
                version=transformer.version,
                chart_type=transformer.chart_type,
                cadence=transformer.cadence,
                code=transformer.code,
                updated_at=transformer.updated_at,
            )
        )
    return summaries
