"""METRIQ — Refresh Status State Machine.

``Metric.refresh_status`` holds one of these while a refresh is in
flight and None when idle. Each pipeline type walks its own ordered
subset of steps; moving backwards or skipping outside the table is a bug.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from metriq.core.errors import InvalidTransition


class RefreshStatus(str, Enum):
    FETCHING_API_DATA = "fetching-api-data"
    DELETING_OLD_DATA = "deleting-old-data"
    DELETING_OLD_TRANSFORMER = "deleting-old-transformer"
    GENERATING_INGESTION_TRANSFORMER = "generating-ingestion-transformer"
    EXECUTING_INGESTION_TRANSFORMER = "executing-ingestion-transformer"
    SAVING_TIMESERIES_DATA = "saving-timeseries-data"
    GENERATING_CHART_TRANSFORMER = "generating-chart-transformer"
    EXECUTING_CHART_TRANSFORMER = "executing-chart-transformer"


class PipelineType(str, Enum):
    SOFT_REFRESH = "soft-refresh"
    HARD_REFRESH = "hard-refresh"
    INGESTION_ONLY = "ingestion-only"
    CHART_ONLY = "chart-only"


PIPELINE_TRANSITIONS: Dict[PipelineType, Tuple[RefreshStatus, ...]] = {
    PipelineType.SOFT_REFRESH: (
        RefreshStatus.FETCHING_API_DATA,
        RefreshStatus.EXECUTING_INGESTION_TRANSFORMER,
        RefreshStatus.SAVING_TIMESERIES_DATA,
        RefreshStatus.EXECUTING_CHART_TRANSFORMER,
    ),
    PipelineType.HARD_REFRESH: (
        RefreshStatus.FETCHING_API_DATA,
        RefreshStatus.DELETING_OLD_DATA,
        RefreshStatus.DELETING_OLD_TRANSFORMER,
        RefreshStatus.GENERATING_INGESTION_TRANSFORMER,
        RefreshStatus.SAVING_TIMESERIES_DATA,
        RefreshStatus.EXECUTING_CHART_TRANSFORMER,
    ),
    PipelineType.INGESTION_ONLY: (
        RefreshStatus.FETCHING_API_DATA,
        RefreshStatus.DELETING_OLD_TRANSFORMER,
        RefreshStatus.GENERATING_INGESTION_TRANSFORMER,
        RefreshStatus.SAVING_TIMESERIES_DATA,
        RefreshStatus.EXECUTING_CHART_TRANSFORMER,
    ),
    PipelineType.CHART_ONLY: (
        RefreshStatus.GENERATING_CHART_TRANSFORMER,
        RefreshStatus.EXECUTING_CHART_TRANSFORMER,
    ),
}


class StatusTracker:
    """Walks one pipeline's step list, refusing out-of-order moves.

    Steps may be skipped forward (a soft refresh with no charts never
    reaches the chart step) but never revisited or reordered.
    """

    def __init__(self, pipeline: PipelineType):
        self.pipeline = pipeline
        self.steps = PIPELINE_TRANSITIONS[pipeline]
        self.current: Optional[RefreshStatus] = None
        self.history: List[RefreshStatus] = []

    def advance(self, status: RefreshStatus) -> RefreshStatus:
        if status not in self.steps:
            raise InvalidTransition(
                f"{status.value} is not a step of the {self.pipeline.value} pipeline"
            )
        if self.current is not None and self.steps.index(status) <= self.steps.index(self.current):
            raise InvalidTransition(
                f"Cannot move from {self.current.value} to {status.value} in {self.pipeline.value}"
            )
        self.current = status
        self.history.append(status)
        return status

    def finish(self) -> None:
        """Terminal state: idle."""
        self.current = None
