"""METRIQ — Pipeline Store.

Every method opens its own short-lived session, so no connection is held
while the pipeline waits on a fetch, the oracle or the sandbox. Multi-row
writes commit once, so a failure leaves the prior rows untouched.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import delete, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from metriq.core.errors import NotFound
from metriq.core.logging import get_logger
from metriq.models.pipeline_models import (
    ChartTransformer,
    DashboardChart,
    IngestionTransformer,
    Metric,
    MetricApiLog,
    MetricDataPoint,
    MetricGoal,
)
from metriq.models.transform_models import ChartConfig, ChartPreferences, DataPoint

logger = get_logger("store")

DELETE_CHUNK_SIZE = 500
RAW_RESPONSE_MAX_CHARS = 100_000


def as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class PipelineStore:
    """CRUD, insert-if-absent and atomic batch writes for the pipeline."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ── Metrics ──

    def get_metric(self, metric_id: str) -> Optional[Metric]:
        with self._session() as session:
            return session.get(Metric, metric_id)

    def require_metric(self, metric_id: str) -> Metric:
        metric = self.get_metric(metric_id)
        if metric is None:
            raise NotFound(f"Metric {metric_id} not found")
        return metric

    def update_metric(self, metric_id: str, **fields: Any) -> Metric:
        with self._session() as session:
            metric = session.get(Metric, metric_id)
            if metric is None:
                raise NotFound(f"Metric {metric_id} not found")
            for key, value in fields.items():
                setattr(metric, key, value)
            session.add(metric)
            session.commit()
            session.refresh(metric)
            return metric

    def set_refresh_status(self, metric_id: str, status: Optional[str]) -> None:
        stamped = datetime.now(timezone.utc) if status is not None else None
        self.update_metric(metric_id, refresh_status=status, refresh_status_at=stamped)

    def list_due_metrics(self, now: datetime, limit: int) -> List[Metric]:
        """Scheduled metrics whose next poll is due, oldest first."""
        with self._session() as session:
            stmt = (
                select(Metric)
                .where(Metric.next_poll_at <= now)
                .where(Metric.poll_frequency != "manual")
                .where(Metric.template_id.is_not(None))
                .where(Metric.connection_id.is_not(None))
                .order_by(Metric.next_poll_at)
                .limit(limit)
            )
            return list(session.exec(stmt).all())

    # ── Ingestion transformers ──

    def get_ingestion_transformer(self, cache_key: str) -> Optional[IngestionTransformer]:
        with self._session() as session:
            stmt = select(IngestionTransformer).where(IngestionTransformer.cache_key == cache_key)
            row = session.exec(stmt).first()
            if row is not None:
                row.created_at = as_utc(row.created_at)
                row.updated_at = as_utc(row.updated_at)
            return row

    def insert_transformer_if_absent(
        self,
        cache_key: str,
        template_id: str,
        code: str,
        value_label: Optional[str] = None,
        data_description: Optional[str] = None,
    ) -> IngestionTransformer:
        """Create the row unless one exists for this key; return whichever won.

        Uses INSERT ... ON CONFLICT (cache_key) DO NOTHING, so concurrent
        first-time creators never see an error and never produce two rows.
        """
        now = _now()
        values = {
            "id": str(uuid.uuid4()),
            "cache_key": cache_key,
            "template_id": template_id,
            "code": code,
            "value_label": value_label,
            "data_description": data_description,
            "created_at": now,
            "updated_at": now,
        }
        table = IngestionTransformer.__table__
        dialect = self.engine.dialect.name

        with self._session() as session:
            if dialect in ("sqlite", "postgresql"):
                if dialect == "sqlite":
                    from sqlalchemy.dialects.sqlite import insert
                else:
                    from sqlalchemy.dialects.postgresql import insert
                stmt = insert(table).values(**values).on_conflict_do_nothing(
                    index_elements=["cache_key"]
                )
                session.execute(stmt)
                session.commit()
            else:
                try:
                    session.execute(table.insert().values(**values))
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.info(
                        "Transformer already created by a concurrent caller",
                        extra={"cache_key": cache_key},
                    )

        row = self.get_ingestion_transformer(cache_key)
        if row is None:
            raise NotFound(f"Transformer for cache key {cache_key} vanished after insert")
        return row

    def delete_ingestion_transformer(self, cache_key: str) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(IngestionTransformer).where(IngestionTransformer.cache_key == cache_key)
            )
            session.commit()
            return result.rowcount > 0

    # ── Data points ──

    def save_data_points(
        self, metric_id: str, points: Sequence[DataPoint], is_time_series: bool
    ) -> int:
        """Replace (snapshot) or upsert-by-timestamp (time series) in one transaction."""
        if not points:
            return 0

        with self._session() as session:
            if is_time_series:
                timestamps = [p.timestamp for p in points]
                for chunk in _chunks(timestamps, DELETE_CHUNK_SIZE):
                    session.execute(
                        delete(MetricDataPoint)
                        .where(MetricDataPoint.metric_id == metric_id)
                        .where(MetricDataPoint.timestamp.in_(chunk))
                    )
                rows = [
                    MetricDataPoint(
                        metric_id=metric_id,
                        timestamp=p.timestamp,
                        value=p.value,
                        dimensions=p.dimensions,
                    )
                    for p in points
                ]
            else:
                session.execute(
                    delete(MetricDataPoint).where(MetricDataPoint.metric_id == metric_id)
                )
                # Snapshot rows have no natural time; keep them distinct under the unique key
                base = points[0].timestamp
                rows = [
                    MetricDataPoint(
                        metric_id=metric_id,
                        timestamp=base + timedelta(microseconds=index),
                        value=p.value,
                        dimensions=p.dimensions,
                    )
                    for index, p in enumerate(points)
                ]
            session.add_all(rows)
            session.commit()

        logger.info(
            f"💾 Saved {len(points)} data points ({'time-series' if is_time_series else 'snapshot'})",
            extra={"metric_id": metric_id},
        )
        return len(points)

    def delete_data_points(self, metric_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                delete(MetricDataPoint).where(MetricDataPoint.metric_id == metric_id)
            )
            session.commit()
            return result.rowcount

    def load_data_points(self, metric_id: str, limit: int) -> List[DataPoint]:
        """Most recent ``limit`` points, returned oldest first."""
        with self._session() as session:
            stmt = (
                select(MetricDataPoint)
                .where(MetricDataPoint.metric_id == metric_id)
                .order_by(MetricDataPoint.timestamp.desc())
                .limit(limit)
            )
            rows = session.exec(stmt).all()
        return [
            DataPoint(timestamp=as_utc(r.timestamp), value=r.value, dimensions=r.dimensions)
            for r in reversed(rows)
        ]

    def count_data_points(self, metric_id: str) -> int:
        with self._session() as session:
            stmt = (
                select(func.count())
                .select_from(MetricDataPoint)
                .where(MetricDataPoint.metric_id == metric_id)
            )
            return session.exec(stmt).one()

    # ── Charts ──

    def get_chart(self, dashboard_chart_id: str) -> Optional[DashboardChart]:
        with self._session() as session:
            return session.get(DashboardChart, dashboard_chart_id)

    def list_charts(self, metric_id: str) -> List[DashboardChart]:
        with self._session() as session:
            stmt = (
                select(DashboardChart)
                .where(DashboardChart.metric_id == metric_id)
                .order_by(DashboardChart.created_at)
            )
            return list(session.exec(stmt).all())

    def get_chart_transformer(self, dashboard_chart_id: str) -> Optional[ChartTransformer]:
        with self._session() as session:
            stmt = select(ChartTransformer).where(
                ChartTransformer.dashboard_chart_id == dashboard_chart_id
            )
            return session.exec(stmt).first()

    def save_chart_result(
        self,
        dashboard_chart_id: str,
        code: str,
        preferences: ChartPreferences,
        config: ChartConfig,
    ) -> ChartTransformer:
        """Upsert the chart transformer (version +1 on update) and its rendered config."""
        now = _now()
        with self._session() as session:
            chart = session.get(DashboardChart, dashboard_chart_id)
            if chart is None:
                raise NotFound(f"Dashboard chart {dashboard_chart_id} not found")

            stmt = select(ChartTransformer).where(
                ChartTransformer.dashboard_chart_id == dashboard_chart_id
            )
            transformer = session.exec(stmt).first()
            if transformer is None:
                transformer = ChartTransformer(dashboard_chart_id=dashboard_chart_id, code=code, version=1)
            else:
                transformer.code = code
                transformer.version += 1
                transformer.updated_at = now
            transformer.chart_type = preferences.chart_type
            transformer.cadence = preferences.cadence.value
            transformer.selected_dimension = preferences.selected_dimension
            transformer.user_prompt = preferences.user_prompt

            chart.chart_type = config.chart_type
            chart.chart_config = config.to_wire()
            chart.updated_at = now

            session.add(transformer)
            session.add(chart)
            session.commit()
            session.refresh(transformer)
            return transformer

    def update_chart_config(self, dashboard_chart_id: str, config: ChartConfig) -> None:
        with self._session() as session:
            chart = session.get(DashboardChart, dashboard_chart_id)
            if chart is None:
                raise NotFound(f"Dashboard chart {dashboard_chart_id} not found")
            chart.chart_type = config.chart_type
            chart.chart_config = config.to_wire()
            chart.updated_at = _now()
            session.add(chart)
            session.commit()

    def delete_chart_transformer(self, dashboard_chart_id: str) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(ChartTransformer).where(
                    ChartTransformer.dashboard_chart_id == dashboard_chart_id
                )
            )
            session.commit()
            return result.rowcount > 0

    # ── Goals ──

    def get_goal(self, metric_id: str) -> Optional[MetricGoal]:
        with self._session() as session:
            stmt = select(MetricGoal).where(MetricGoal.metric_id == metric_id)
            return session.exec(stmt).first()

    def update_goal_baseline(
        self, metric_id: str, baseline_value: float, baseline_timestamp: datetime
    ) -> None:
        with self._session() as session:
            goal = session.exec(select(MetricGoal).where(MetricGoal.metric_id == metric_id)).first()
            if goal is None:
                raise NotFound(f"Goal for metric {metric_id} not found")
            goal.baseline_value = baseline_value
            goal.baseline_timestamp = baseline_timestamp
            session.add(goal)
            session.commit()

    # ── Audit log ──

    def log_api_call(
        self,
        metric_id: Optional[str],
        endpoint: str,
        endpoint_config: Optional[Dict[str, str]],
        raw_response: Any = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        """Append an audit row. Never raises; a failed write is only logged."""
        try:
            raw = None
            if raw_response is not None:
                raw = json.dumps(raw_response, default=str)[:RAW_RESPONSE_MAX_CHARS]
            with self._session() as session:
                session.add(
                    MetricApiLog(
                        metric_id=metric_id,
                        endpoint=endpoint,
                        endpoint_config=dict(endpoint_config or {}),
                        raw_response=raw,
                        success=success,
                        error=error,
                    )
                )
                session.commit()
        except Exception as e:
            logger.warning(f"Audit log write failed: {e}", extra={"metric_id": metric_id})
