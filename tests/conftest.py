"""Shared test fixtures for METRIQ."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlmodel import Session

from metriq.ai.base_provider import CodeGenerationProvider
from metriq.connectors.fetcher import FetchResponse
from metriq.core.errors import FetchFailure
from metriq.core.template_catalog import TemplateCatalog
from metriq.database import build_engine, init_db
from metriq.models.pipeline_models import DashboardChart, Metric, MetricGoal
from metriq.services import build_orchestrator
from metriq.transformation.store import PipelineStore


# ── Transformer code the fake provider hands out ──

SNAPSHOT_VALUE_CODE = '''# value_label: Followers
# data_description: Current follower count
from datetime import datetime, timezone

def transform(api_response, endpoint_config):
    return [{"timestamp": datetime.now(timezone.utc).isoformat(), "value": api_response["value"]}]
'''

ROWS_CODE = '''# value_label: Events
def transform(api_response, endpoint_config):
    points = []
    for day, count in api_response["results"]:
        points.append({"timestamp": day + "T00:00:00Z", "value": count})
    return points
'''

DIMENSION_ROWS_CODE = '''def transform(api_response, endpoint_config):
    return [
        {"timestamp": day + "T00:00:00Z", "value": total, "dimensions": {"likes": likes}}
        for day, total, likes in api_response["rows"]
    ]
'''

BROKEN_CODE = '''def transform(api_response, endpoint_config):
    return api_response["missing"]
'''

CHART_CODE = '''def transform(data_points, preferences):
    key = preferences.get("selected_dimension") or "value"
    rows = []
    for p in data_points:
        dims = p.get("dimensions") or {}
        rows.append({"date": p["timestamp"][:10], key: dims.get(key, p["value"])})
    return {
        "chartType": preferences["chart_type"],
        "chartData": rows,
        "chartConfig": {key: {"label": key.title()}},
        "xAxisKey": "date",
        "dataKeys": [key],
        "title": "Trend",
    }
'''

BAD_CHART_CODE = '''def transform(data_points, preferences):
    return {"chartType": "line"}
'''


class FakeProvider(CodeGenerationProvider):
    """Hands out queued responses in order; repeats the last one when drained."""

    name = "fake"

    def __init__(self, *responses: str):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def is_available(self) -> bool:
        return True

    async def generate(self, system_prompt: str, user_prompt: str, temperature: float = 0.1) -> str:
        self.calls.append(
            {"system": system_prompt, "user": user_prompt, "temperature": temperature}
        )
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FakeFetcher:
    """Stands in for IntegrationFetcher; returns queued payloads or raises."""

    def __init__(self, *payloads: Any):
        self.payloads = list(payloads)
        self.calls: List[Dict[str, Any]] = []

    async def fetch(self, integration_id, connection_id, endpoint, method="GET", params=None, body=None):
        self.calls.append(
            {"integration_id": integration_id, "endpoint": endpoint, "params": params}
        )
        payload = self.payloads.pop(0) if len(self.payloads) > 1 else self.payloads[0]
        if isinstance(payload, Exception):
            raise payload
        return FetchResponse(data=payload)


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database per test."""
    eng = build_engine(f"sqlite:///{tmp_path / 'metriq-test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return PipelineStore(engine)


@pytest.fixture
def catalog():
    return TemplateCatalog()


def add_metric(engine, template_id: Optional[str] = "github-followers-count", **fields) -> Metric:
    integration = {
        "github-followers-count": "github",
        "posthog-event-count": "posthog",
        "youtube-video-daily-views": "youtube",
        "gsheets-column-data": "google-sheet",
    }.get(template_id or "", "github")
    metric = Metric(
        name=fields.pop("name", "Followers"),
        description=fields.pop("description", "Tracks followers"),
        template_id=template_id,
        integration_id=fields.pop("integration_id", integration),
        connection_id=fields.pop("connection_id", "conn-1"),
        endpoint_config=fields.pop("endpoint_config", {}),
        **fields,
    )
    with Session(engine, expire_on_commit=False) as session:
        session.add(metric)
        session.commit()
        session.refresh(metric)
    return metric


def add_chart(engine, metric_id: str, chart_type: str = "line") -> DashboardChart:
    chart = DashboardChart(metric_id=metric_id, chart_type=chart_type)
    with Session(engine, expire_on_commit=False) as session:
        session.add(chart)
        session.commit()
        session.refresh(chart)
    return chart


def add_goal(engine, metric_id: str, baseline: Optional[float] = None) -> MetricGoal:
    goal = MetricGoal(metric_id=metric_id, target_value=100.0, baseline_value=baseline)
    with Session(engine, expire_on_commit=False) as session:
        session.add(goal)
        session.commit()
        session.refresh(goal)
    return goal


def make_orchestrator(engine, provider: FakeProvider, fetcher: FakeFetcher):
    return build_orchestrator(engine=engine, provider=provider, fetcher=fetcher)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def fetch_error(message: str = "Bad credentials", status: int = 401) -> FetchFailure:
    return FetchFailure(message, status)
