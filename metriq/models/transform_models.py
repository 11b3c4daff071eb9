"""METRIQ — In-Memory Transformation Schemas.

Pydantic models that flow between the fetcher, the sandbox, the
synthesizer and the store. None of these are persisted directly.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


# ─────────────────────────────────────────────
# TEMPLATES
# ─────────────────────────────────────────────


class TemplateParam(BaseModel):
    """A user-supplied value substituted into an endpoint template."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str = ""
    description: str = ""
    required: bool = True
    placeholder: str = ""


class TemplateDefinition(BaseModel):
    """Static description of one trackable source endpoint."""

    model_config = ConfigDict(frozen=True)

    template_id: str
    label: str
    integration_id: str
    metric_endpoint: str  # may contain {PARAM} placeholders
    method: str = "GET"
    request_body: Optional[str] = None
    description: str = ""
    required_params: List[TemplateParam] = Field(default_factory=list)
    is_time_series: bool = True
    per_metric_cache: bool = False  # spreadsheet-like sources whose shape varies per metric
    extraction_prompt: Optional[str] = None

    @property
    def param_names(self) -> List[str]:
        return [p.name for p in self.required_params]


# ─────────────────────────────────────────────
# DATA POINTS & CHARTS
# ─────────────────────────────────────────────


class DataPoint(BaseModel):
    """One canonical (timestamp, value, dimensions) observation."""

    timestamp: datetime
    value: float
    dimensions: Optional[Dict[str, Any]] = None


class Cadence(str, Enum):
    """Bucket size a chart aggregates data points into."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ChartConfig(BaseModel):
    """Renderable chart description.

    Attribute names are snake_case; the stored JSON and the sandbox
    contract use the camelCase aliases. Unknown display hints emitted by
    the generated code are kept as extras.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    chart_type: str = Field(alias="chartType")
    chart_data: List[Dict[str, Any]] = Field(alias="chartData")
    chart_config: Dict[str, Any] = Field(alias="chartConfig")
    x_axis_key: str = Field(alias="xAxisKey")
    data_keys: List[str] = Field(alias="dataKeys")
    title: str
    description: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Dump in the camelCase form stored on DashboardChart."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ChartPreferences(BaseModel):
    """What the user asked the chart to look like."""

    chart_type: str = "line"
    cadence: Cadence = Cadence.DAILY
    selected_dimension: Optional[str] = None
    user_prompt: Optional[str] = None


class ChartPreferencesUpdate(BaseModel):
    """Partial preferences for regeneration. None keeps the stored value."""

    chart_type: Optional[str] = None
    cadence: Optional[Cadence] = None
    selected_dimension: Optional[str] = None
    user_prompt: Optional[str] = None


class DataStats(BaseModel):
    """Summary of the dataset shown to the chart synthesizer."""

    total_count: int
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    days_covered: int = 0
    detected_granularity: str = "daily"  # daily | weekly | monthly
    dimension_keys: List[str] = Field(default_factory=list)


# ─────────────────────────────────────────────
# RESULTS
# ─────────────────────────────────────────────


class ExecutionResult(BaseModel, Generic[T]):
    """Outcome of running generated code and validating its output."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None


class GeneratedCode(BaseModel):
    """Cleaned oracle output plus metadata parsed from its header comments."""

    code: str
    value_label: Optional[str] = None
    data_description: Optional[str] = None
    reasoning: Optional[str] = None


class IngestionResult(BaseModel):
    """Outcome of one ingest or refresh call."""

    success: bool
    data_points: List[DataPoint] = Field(default_factory=list)
    transformer_created: bool = False
    error: Optional[str] = None


class ChartResult(BaseModel):
    """Outcome of one chart create / execute / regenerate call."""

    success: bool
    chart_config: Optional[ChartConfig] = None
    version: Optional[int] = None
    baseline_recaptured: bool = False
    error: Optional[str] = None


class RefreshResult(BaseModel):
    """Outcome of a full metric refresh."""

    metric_id: str
    success: bool
    pipeline: str
    data_point_count: int = 0
    charts_updated: int = 0
    charts_failed: int = 0
    error: Optional[str] = None
