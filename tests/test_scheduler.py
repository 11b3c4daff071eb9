"""Tests for the polling job."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest import mock

from sqlmodel import Session

from conftest import ROWS_CODE, FakeFetcher, FakeProvider, add_metric, make_orchestrator, utc
from metriq.core.errors import NotFound
from metriq.models.pipeline_models import Metric
from metriq.scheduler.jobs import next_poll_at, poll_metrics_job
from metriq.transformation.store import as_utc

POSTHOG_CONFIG = {"PROJECT_ID": "1", "EVENT_NAME": "signup"}


class TestNextPollAt:
    def test_known_frequencies(self):
        now = utc(2024, 1, 1)
        assert next_poll_at("hourly", now) == now + timedelta(hours=1)
        assert next_poll_at("weekly", now) == now + timedelta(days=7)

    def test_unknown_frequency_polls_daily(self):
        now = utc(2024, 1, 1)
        assert next_poll_at("sometimes", now) == now + timedelta(days=1)


class TestPollMetricsJob:
    def test_first_poll_falls_back_to_hard_refresh(self, engine):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        metric = add_metric(
            engine, "posthog-event-count", endpoint_config=POSTHOG_CONFIG, next_poll_at=past, poll_frequency="hourly"
        )
        orchestrator = make_orchestrator(
            engine, FakeProvider(ROWS_CODE), FakeFetcher({"results": [["2024-01-01", 4]]})
        )

        results = asyncio.run(poll_metrics_job(orchestrator))

        assert results == {"processed": 1, "succeeded": 1, "failed": 0}
        store = orchestrator.store
        assert store.count_data_points(metric.id) == 1
        assert as_utc(store.get_metric(metric.id).next_poll_at) > datetime.now(timezone.utc)

    def test_skips_manual_and_future_metrics(self, engine):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        add_metric(engine, "posthog-event-count", next_poll_at=past, poll_frequency="manual")
        add_metric(engine, "posthog-event-count", next_poll_at=future)
        fetcher = FakeFetcher({})
        orchestrator = make_orchestrator(engine, FakeProvider("x"), fetcher)

        results = asyncio.run(poll_metrics_job(orchestrator))

        assert results["processed"] == 0
        assert fetcher.calls == []

    def test_failure_still_reschedules(self, engine):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        metric = add_metric(engine, "posthog-event-count", endpoint_config=POSTHOG_CONFIG, next_poll_at=past)
        orchestrator = make_orchestrator(engine, FakeProvider("x"), FakeFetcher(ValueError("offline")))

        results = asyncio.run(poll_metrics_job(orchestrator))

        assert results["failed"] == 1
        stored = orchestrator.store.get_metric(metric.id)
        assert stored.last_error == "Failed to fetch data: offline"
        assert as_utc(stored.next_poll_at) > datetime.now(timezone.utc)

    def test_metric_deleted_mid_poll_does_not_stop_batch(self, engine):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        doomed = add_metric(
            engine, "posthog-event-count", endpoint_config=POSTHOG_CONFIG, next_poll_at=past - timedelta(minutes=1)
        )
        survivor = add_metric(engine, "posthog-event-count", endpoint_config=POSTHOG_CONFIG, next_poll_at=past)
        orchestrator = make_orchestrator(
            engine, FakeProvider(ROWS_CODE), FakeFetcher({"results": [["2024-01-01", 4]]})
        )
        real_refresh = orchestrator.refresh_metric

        async def refresh_or_vanish(metric_id, **kwargs):
            if metric_id == doomed.id:
                with Session(engine) as session:
                    session.delete(session.get(Metric, metric_id))
                    session.commit()
                raise NotFound(f"Metric {metric_id} not found")
            return await real_refresh(metric_id, **kwargs)

        with mock.patch.object(orchestrator, "refresh_metric", side_effect=refresh_or_vanish):
            results = asyncio.run(poll_metrics_job(orchestrator))

        assert results == {"processed": 2, "succeeded": 1, "failed": 1}
        assert orchestrator.store.get_metric(doomed.id) is None
        assert as_utc(orchestrator.store.get_metric(survivor.id).next_poll_at) > datetime.now(timezone.utc)
