"""METRIQ — Persisted Pipeline Models.

Metrics, their data points, the cached transformers that produce them,
and the dashboard charts rendered from them.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Column, JSON, Text
from sqlmodel import SQLModel, Field, UniqueConstraint


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Metric(SQLModel, table=True):
    """A tracked metric bound to a template and a third-party connection."""

    __tablename__ = "metrics"

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str = Field(description="Display name")
    description: str = Field(default="", description="What the metric tracks")
    template_id: Optional[str] = Field(
        default=None, index=True, description="Catalog template; None for manual metrics"
    )
    integration_id: Optional[str] = Field(default=None, description="github | posthog | youtube | google-sheet")
    connection_id: Optional[str] = Field(default=None, description="Broker connection ID")
    endpoint_config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    poll_frequency: str = Field(
        default="daily", description="frequent | hourly | daily | weekly | manual"
    )
    next_poll_at: Optional[datetime] = Field(default=None, index=True)
    last_fetched_at: Optional[datetime] = None
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text))
    refresh_status: Optional[str] = Field(
        default=None, description="Current RefreshStatus step, None when idle"
    )
    refresh_status_at: Optional[datetime] = Field(
        default=None, description="When refresh_status last advanced"
    )
    created_at: datetime = Field(default_factory=_now)


class MetricDataPoint(SQLModel, table=True):
    """One canonical observation. Unique per (metric, timestamp)."""

    __tablename__ = "metric_data_points"
    __table_args__ = (
        UniqueConstraint("metric_id", "timestamp", name="uq_metric_data_point"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: str = Field(index=True, foreign_key="metrics.id")
    timestamp: datetime = Field(index=True)
    value: float
    dimensions: Optional[dict] = Field(default=None, sa_column=Column(JSON))


class IngestionTransformer(SQLModel, table=True):
    """Cached generated code mapping a raw API response to data points.

    At most one row per cache key. Rows are only ever created through
    the insert-ignore path in the store, never updated in place.
    """

    __tablename__ = "ingestion_transformers"

    id: str = Field(default_factory=_uuid, primary_key=True)
    cache_key: str = Field(unique=True, index=True)
    template_id: str = Field(index=True)
    code: str = Field(sa_column=Column(Text, nullable=False))
    value_label: Optional[str] = None
    data_description: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class DashboardChart(SQLModel, table=True):
    """A chart on a dashboard. Stores the last rendered ChartConfig."""

    __tablename__ = "dashboard_charts"

    id: str = Field(default_factory=_uuid, primary_key=True)
    metric_id: str = Field(index=True, foreign_key="metrics.id")
    chart_type: str = Field(default="line")
    chart_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ChartTransformer(SQLModel, table=True):
    """Generated code mapping data points to a ChartConfig. One per chart."""

    __tablename__ = "chart_transformers"

    id: str = Field(default_factory=_uuid, primary_key=True)
    dashboard_chart_id: str = Field(
        unique=True, index=True, foreign_key="dashboard_charts.id"
    )
    code: str = Field(sa_column=Column(Text, nullable=False))
    chart_type: str = Field(default="line")
    cadence: str = Field(default="DAILY", description="DAILY | WEEKLY | MONTHLY")
    selected_dimension: Optional[str] = None
    user_prompt: Optional[str] = Field(default=None, sa_column=Column(Text))
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class MetricGoal(SQLModel, table=True):
    """Goal attached to a metric. Only the baseline fields are pipeline-owned."""

    __tablename__ = "metric_goals"

    id: str = Field(default_factory=_uuid, primary_key=True)
    metric_id: str = Field(unique=True, index=True, foreign_key="metrics.id")
    goal_type: str = Field(default="ABSOLUTE", description="ABSOLUTE | RELATIVE")
    target_value: float = 0.0
    baseline_value: Optional[float] = None
    baseline_timestamp: Optional[datetime] = None


class MetricApiLog(SQLModel, table=True):
    """Append-only audit trail of raw fetch attempts.

    Never modify these rows.
    """

    __tablename__ = "metric_api_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: Optional[str] = Field(default=None, index=True)
    endpoint: str = Field(default="", description="Resolved endpoint that was called")
    endpoint_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    raw_response: Optional[str] = Field(default=None, sa_column=Column(Text))
    success: bool = True
    error: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=_now)
