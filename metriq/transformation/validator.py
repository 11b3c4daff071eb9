"""METRIQ — Transformer Output Validation.

Structural checks only: shape, timestamp and number coercion. Semantic
aggregation is the generated code's job, never the validator's.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import ValidationError

from metriq.core.errors import ValidationFailure
from metriq.core.logging import get_logger
from metriq.models.transform_models import ChartConfig, DataPoint

logger = get_logger("validator")

CHART_REQUIRED_FIELDS = ("chartType", "chartData", "chartConfig", "xAxisKey", "dataKeys", "title")


def _to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def parse_timestamp(raw: Any) -> datetime:
    """Coerce a datetime, ISO-8601 string or epoch-milliseconds number.

    Raises:
        ValueError: if the value is of another type or cannot be parsed.
    """
    if isinstance(raw, datetime):
        return _to_utc(raw)
    if isinstance(raw, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            raise ValueError("non-finite epoch")
        try:
            return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(str(e)) from e
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return _to_utc(datetime.fromisoformat(text))
    raise ValueError(f"unsupported type {type(raw).__name__}")


def _parse_value(raw: Any) -> float:
    if isinstance(raw, bool) or raw is None:
        raise ValueError("not a number")
    try:
        value = float(raw.strip()) if isinstance(raw, str) else float(raw)
    except OverflowError:
        raise ValueError("too large")
    if not math.isfinite(value):
        raise ValueError("not finite")
    return value


def validate_ingestion_output(raw: Any) -> List[DataPoint]:
    """Validate a generated ingestion result into DataPoints.

    Any invalid element rejects the whole batch. Duplicate timestamps keep
    the last value in the position of the first occurrence.

    Raises:
        ValidationFailure: naming the offending index.
    """
    if not isinstance(raw, list):
        raise ValidationFailure("Transformer must return an array of DataPoints")

    points: List[DataPoint] = []
    position: Dict[datetime, int] = {}

    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValidationFailure(f"DataPoint at index {index} is not an object")

        try:
            timestamp = parse_timestamp(item.get("timestamp"))
        except (TypeError, ValueError):
            raise ValidationFailure(
                f"DataPoint at index {index} has invalid timestamp: {item.get('timestamp')}"
            )

        try:
            value = _parse_value(item.get("value"))
        except (TypeError, ValueError):
            raise ValidationFailure(
                f"DataPoint at index {index} has invalid value: {item.get('value')}"
            )

        dimensions = item.get("dimensions")
        point = DataPoint(
            timestamp=timestamp,
            value=value,
            dimensions=dimensions if isinstance(dimensions, dict) else None,
        )

        if timestamp in position:
            logger.info(
                f"Duplicate timestamp at index {index}: {timestamp.isoformat()}. Using last value."
            )
            points[position[timestamp]] = point
        else:
            position[timestamp] = len(points)
            points.append(point)

    return points


def validate_chart_output(raw: Any) -> ChartConfig:
    """Validate a generated chart result into a ChartConfig.

    Raises:
        ValidationFailure: listing every missing field, or the malformed one.
    """
    if not isinstance(raw, dict):
        raise ValidationFailure("ChartTransformer must return a ChartConfig object")

    missing = [f for f in CHART_REQUIRED_FIELDS if f not in raw]
    if missing:
        raise ValidationFailure(
            "; ".join(f"ChartConfig missing required field: {f}" for f in missing)
        )
    if not isinstance(raw["chartData"], list):
        raise ValidationFailure("chartData must be an array")
    if not isinstance(raw["dataKeys"], list):
        raise ValidationFailure("dataKeys must be an array")

    try:
        return ChartConfig.model_validate(raw)
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationFailure(f"ChartConfig has malformed fields: {problems}")
