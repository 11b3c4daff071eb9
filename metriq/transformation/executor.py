"""METRIQ — Transformer Execution.

Sandbox + validator composed into the two calls the pipelines use.
Both return an ExecutionResult and never raise for script problems.
"""

from typing import Any, Dict, List, Sequence

from metriq.core.errors import SandboxRuntimeFailure, ValidationFailure
from metriq.models.transform_models import (
    ChartConfig,
    ChartPreferences,
    DataPoint,
    ExecutionResult,
)
from metriq.transformation.sandbox import run_in_sandbox
from metriq.transformation.validator import (
    validate_chart_output,
    validate_ingestion_output,
)


def serialize_data_points(data_points: Sequence[DataPoint]) -> List[Dict[str, Any]]:
    """ISO timestamps, stable order: same points in, same JSON out."""
    rows = [
        {
            "timestamp": dp.timestamp.isoformat(),
            "value": dp.value,
            "dimensions": dp.dimensions,
        }
        for dp in data_points
    ]
    rows.sort(key=lambda r: (r["timestamp"], r["value"]))
    return rows


async def execute_ingestion_transformer(
    code: str, api_response: Any, endpoint_config: Dict[str, str]
) -> ExecutionResult[List[DataPoint]]:
    """Run ingestion code: raw API response → DataPoints."""
    result = await run_in_sandbox(
        code,
        {"api_response": api_response, "endpoint_config": dict(endpoint_config)},
    )
    try:
        points = validate_ingestion_output(result.unwrap())
    except (SandboxRuntimeFailure, ValidationFailure) as e:
        return ExecutionResult(success=False, error=e.message)
    return ExecutionResult(success=True, data=points)


async def execute_chart_transformer(
    code: str, data_points: Sequence[DataPoint], preferences: ChartPreferences
) -> ExecutionResult[ChartConfig]:
    """Run chart code: DataPoints → ChartConfig."""
    result = await run_in_sandbox(
        code,
        {
            "data_points": serialize_data_points(data_points),
            "preferences": preferences.model_dump(mode="json"),
        },
    )
    try:
        config = validate_chart_output(result.unwrap())
    except (SandboxRuntimeFailure, ValidationFailure) as e:
        return ExecutionResult(success=False, error=e.message)
    return ExecutionResult(success=True, data=config)
