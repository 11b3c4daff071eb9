"""METRIQ — Scheduler Jobs.

APScheduler interval job that refreshes every metric whose next poll
is due, then pushes its next poll forward by its poll frequency.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from metriq.config import settings
from metriq.core.errors import NotFound
from metriq.core.logging import get_logger
from metriq.transformation.orchestrator import RefreshOrchestrator

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()

POLL_INTERVALS = {
    "frequent": timedelta(minutes=15),
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def next_poll_at(frequency: str, now: Optional[datetime] = None) -> datetime:
    """Next due time for a poll frequency. Unknown frequencies poll daily."""
    now = now or datetime.now(timezone.utc)
    return now + POLL_INTERVALS.get(frequency, POLL_INTERVALS["daily"])


async def poll_metrics_job(orchestrator: Optional[RefreshOrchestrator] = None) -> dict:
    """Soft-refresh every due metric; fall back to a hard refresh when it has no transformer yet."""
    if orchestrator is None:
        from metriq.services import build_orchestrator

        orchestrator = build_orchestrator()

    store = orchestrator.store
    now = datetime.now(timezone.utc)
    results = {"processed": 0, "succeeded": 0, "failed": 0}

    due = store.list_due_metrics(now, settings.poll_batch_size)
    logger.info(f"Found {len(due)} metrics due for polling")

    for metric in due:
        results["processed"] += 1
        try:
            outcome = await orchestrator.refresh_metric(metric.id)
            if not outcome.success and (outcome.error or "").startswith("No transformer found"):
                logger.info("No transformer yet, running hard refresh", extra={"metric_id": metric.id})
                outcome = await orchestrator.refresh_metric(metric.id, force_regenerate=True)
            results["succeeded" if outcome.success else "failed"] += 1
        except Exception as e:
            results["failed"] += 1
            logger.error(f"Scheduled refresh failed: {e}", extra={"metric_id": metric.id})
        finally:
            try:
                store.update_metric(metric.id, next_poll_at=next_poll_at(metric.poll_frequency, now))
            except NotFound:
                logger.warning("Metric deleted during poll, not rescheduling", extra={"metric_id": metric.id})

    logger.info(f"Polling complete: {results}")
    return results


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        poll_metrics_job,
        "interval",
        minutes=settings.poll_interval_minutes,
        id="poll_metrics",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Polling every {settings.poll_interval_minutes} minutes")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
