"""Profile-driven transformer for formats without a dedicated parser.

Each :class:`~health_ingest.profiles.TableMapping` selects rows with a
small JSONPath subset, resolves every field mapping against the row, and
materializes the result as a canonical record.  The formula language in
``compute`` is intentionally limited to three shapes:

* ``sum(arr[*].field)``
* ``sum(arr[?key=='value'].field)``
* ``a <op> b`` with ``op`` in ``+ - * /`` on two row fields
"""
from __future__ import annotations

import dataclasses
import datetime as dt
import re
from typing import Any, Callable, Generator, Optional

import structlog

from ..models import (
    DailyMetric,
    ImportWarning,
    SleepSession,
    TransformResult,
    VendorType,
    WarningKind,
    WorkoutSession,
    WorkoutType,
    snake_case,
)
from ..profiles import (
    CoalesceTransform,
    ComputeTransform,
    DivideTransform,
    DurationTransform,
    FieldMapping,
    ImporterProfile,
    JsonPathTransform,
    MapTransform,
    MultiplyTransform,
    RegexTransform,
    TableMapping,
    TimestampTransform,
)
from ..utils import (
    get_tz,
    iso_date,
    new_id,
    night_of_date,
    normalize_workout_type,
    parse_iso,
    parse_number,
    to_local,
    utc_from_timestamp,
)
from .base import CancelFlag, ParseSteps, VendorParser, check_cancel

logger = structlog.get_logger()

_PATH_SPLIT = re.compile(r"\.|\[(\d+|\*)\]")
_INDEXED = re.compile(r"^(\w+)\[(\d+)\]$")

_SUM = re.compile(r"^sum\((\w+)\[\*\]\.(\w+)\)$")
_SUM_WHERE = re.compile(r"^sum\((\w+)\[\?(\w+)=='([^']*)'\]\.(\w+)\)$")
_ARITHMETIC = re.compile(r"^(\w+)\s*([+\-*/])\s*(\w+)$")

_FILTER_EQ = re.compile(r"^(\w+)\s*==\s*'(.*)'$")
_FILTER_NUM = re.compile(r"^(\w+)\s*(>=|<=|==|!=|>|<)\s*(-?\d+(?:\.\d+)?)$")

_SECONDS_PER = {"seconds": 1, "minutes": 60, "hours": 3600}

_STRING_FIELDS = {"date", "workout_subtype", "distance_unit", "metric_type", "unit"}
_INT_FIELDS = {"sets", "reps"}
_DATETIME_FIELDS = {"started_at", "ended_at"}


# --------------------------- Path evaluation ---------------------------

def extract_rows(data: Any, path: Optional[str]) -> list:
    """Rows addressed by *path*; ``[*]`` returns the whole array at that point."""
    if not path or path == "$":
        return data if isinstance(data, list) else [data]

    segments = [s for s in _PATH_SPLIT.split(re.sub(r"^\$\.?", "", path)) if s]
    current = data
    for segment in segments:
        if current is None:
            return []
        if segment == "*":
            return current if isinstance(current, list) else []
        if segment.isdigit():
            if not isinstance(current, list) or int(segment) >= len(current):
                return []
            current = current[int(segment)]
        else:
            if not isinstance(current, dict):
                return []
            current = current.get(segment)

    if isinstance(current, list):
        return current
    if isinstance(current, dict):
        return [current]
    return []


def extract_value(row: Any, source: str) -> Any:
    """``'literal'``, ``key``, or a dotted path with optional ``name[i]`` steps."""
    if len(source) >= 2 and source.startswith("'") and source.endswith("'"):
        return source[1:-1]
    if "." not in source and "[" not in source:
        return row.get(source) if isinstance(row, dict) else None

    current = row
    for segment in source.split("."):
        if current is None:
            return None
        m = _INDEXED.match(segment)
        if m:
            current = current.get(m[1]) if isinstance(current, dict) else None
            if not isinstance(current, list) or int(m[2]) >= len(current):
                return None
            current = current[int(m[2])]
        else:
            current = current.get(segment) if isinstance(current, dict) else None
    return current


# --------------------------- Transforms ---------------------------

def _number(value: Any) -> Optional[float]:
    return parse_number(value)


def transform_timestamp(value: Any, t: TimestampTransform) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if t.format == "unix_seconds":
            return utc_from_timestamp(value)
        if t.format == "unix_millis":
            return utc_from_timestamp(value / 1000)
    if isinstance(value, str):
        parsed = parse_iso(value)
        if parsed is not None:
            return parsed.astimezone(dt.timezone.utc)
    return value


def transform_duration(value: Any, t: DurationTransform) -> float:
    number = _number(value)
    if number is None:
        return 0.0
    return number * _SECONDS_PER[t.from_unit] / _SECONDS_PER[t.to_unit]


def transform_multiply(value: Any, t: MultiplyTransform) -> Any:
    number = _number(value)
    return value if number is None else number * t.factor


def transform_divide(value: Any, t: DivideTransform) -> Any:
    number = _number(value)
    if number is None or t.divisor == 0:
        return value
    return number / t.divisor


def transform_map(value: Any, t: MapTransform) -> Any:
    return t.mapping.get(str(value), value)


def transform_regex(value: Any, t: RegexTransform) -> Any:
    if not isinstance(value, str):
        return value
    m = re.search(t.pattern, value)
    if m is None:
        return value
    try:
        return m.group(t.group) if m.group(t.group) is not None else value
    except IndexError:
        return value


def evaluate_formula(formula: str, row: dict) -> Any:
    m = _SUM.match(formula)
    if m:
        items = row.get(m[1])
        if not isinstance(items, list):
            return 0
        return sum(_numeric_item(item, m[2]) for item in items)

    m = _SUM_WHERE.match(formula)
    if m:
        items = row.get(m[1])
        if not isinstance(items, list):
            return 0
        return sum(
            _numeric_item(item, m[4]) for item in items
            if isinstance(item, dict) and item.get(m[2]) == m[3]
        )

    m = _ARITHMETIC.match(formula)
    if m:
        left, op, right = _number(row.get(m[1])), m[2], _number(row.get(m[3]))
        if left is None or right is None:
            return 0
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        return left / right if right != 0 else 0

    logger.warning("formula_unsupported", formula=formula)
    return None


def _numeric_item(item: Any, key: str) -> float:
    if not isinstance(item, dict):
        return 0
    value = item.get(key)
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0


def apply_transform(value: Any, transform: Any, row: dict) -> Any:
    """Dispatch on the transform variant; ``direct`` and unknown variants pass through."""
    handler = _ROW_FREE.get(type(transform))
    if handler is not None:
        return handler(value, transform)
    if isinstance(transform, JsonPathTransform):
        return extract_value(row, transform.path)
    if isinstance(transform, ComputeTransform):
        return evaluate_formula(transform.formula, row)
    if isinstance(transform, CoalesceTransform):
        for source in transform.sources:
            candidate = extract_value(row, source)
            if candidate is not None:
                return candidate
        return None
    return value


_ROW_FREE: dict[type, Callable[[Any, Any], Any]] = {
    TimestampTransform: transform_timestamp,
    DurationTransform: transform_duration,
    MultiplyTransform: transform_multiply,
    DivideTransform: transform_divide,
    MapTransform: transform_map,
    RegexTransform: transform_regex,
}


# --------------------------- Filters ---------------------------

def evaluate_filter(row: dict, expression: str) -> bool:
    """``field == 'text'`` or ``field <op> number``; anything else keeps the row."""
    m = _FILTER_EQ.match(expression.strip())
    if m:
        value = row.get(m[1])
        return value is not None and str(value) == m[2]

    m = _FILTER_NUM.match(expression.strip())
    if m:
        value = _number(row.get(m[1]))
        if value is None:
            return False
        target = float(m[3])
        op = m[2]
        if op == ">":
            return value > target
        if op == ">=":
            return value >= target
        if op == "<":
            return value < target
        if op == "<=":
            return value <= target
        if op == "==":
            return value == target
        return value != target

    return True


# --------------------------- Rows -> records ---------------------------

class RequiredFieldMissing(ValueError):
    pass


def transform_row(row: dict, mappings: list[FieldMapping]) -> dict[str, Any]:
    """Resolve every field mapping; a failing mapping is skipped, the rest still apply."""
    out: dict[str, Any] = {}
    for mapping in mappings:
        try:
            if isinstance(mapping.transform, CoalesceTransform):
                value = apply_transform(None, mapping.transform, row)
            else:
                value = extract_value(row, mapping.source)
                if value is not None and mapping.transform is not None:
                    value = apply_transform(value, mapping.transform, row)
            if value is None:
                if mapping.required:
                    raise RequiredFieldMissing(f"Required field missing: {mapping.source}")
                if mapping.default_value is None:
                    continue
                value = mapping.default_value
            out[snake_case(mapping.target)] = value
        except (RequiredFieldMissing, TypeError, ValueError, re.error) as e:
            logger.warning("field_mapping_failed", target=mapping.target, source=mapping.source, error=str(e))
    return out


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _DATETIME_FIELDS:
        return value if isinstance(value, dt.datetime) else parse_iso(value)
    if name == "workout_type":
        try:
            return WorkoutType(str(value).lower())
        except ValueError:
            return normalize_workout_type(str(value))
    if name in _STRING_FIELDS:
        return str(value)
    if name in _INT_FIELDS:
        number = _number(value)
        return int(number) if number is not None else None
    return _number(value)


def _record_kwargs(cls: type, values: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in dataclasses.fields(cls)} - {"id", "user_id", "source_id", "data_quality", "vendor_data"}
    known = {k: _coerce(k, v) for k, v in values.items() if k in names}
    return {k: v for k, v in known.items() if v is not None}


def _plain(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, dt.datetime) else v for k, v in values.items()}


def create_sleep_session(values: dict[str, Any], source_id: str, user_id: str, tz: dt.tzinfo) -> Optional[SleepSession]:
    kwargs = _record_kwargs(SleepSession, values)
    started_at = kwargs.get("started_at")
    if "date" not in kwargs:
        if started_at is None:
            return None
        kwargs["date"] = night_of_date(started_at, tz)
    duration = kwargs.get("duration_seconds")
    kwargs.setdefault("time_in_bed_seconds", duration or 0)
    if "ended_at" not in kwargs and started_at is not None:
        kwargs["ended_at"] = started_at + dt.timedelta(seconds=kwargs["time_in_bed_seconds"])
    return SleepSession(id=new_id(), user_id=user_id, source_id=source_id, vendor_data=_plain(values), **kwargs)


def create_workout_session(values: dict[str, Any], source_id: str, user_id: str, tz: dt.tzinfo) -> Optional[WorkoutSession]:
    kwargs = _record_kwargs(WorkoutSession, values)
    started_at = kwargs.get("started_at")
    if "date" not in kwargs:
        if started_at is None:
            return None
        kwargs["date"] = iso_date(to_local(started_at, tz))
    return WorkoutSession(id=new_id(), user_id=user_id, source_id=source_id, vendor_data=_plain(values), **kwargs)


def create_daily_metric(values: dict[str, Any], source_id: str, user_id: str, tz: dt.tzinfo) -> Optional[DailyMetric]:
    kwargs = _record_kwargs(DailyMetric, values)
    if "date" not in kwargs:
        started_at = _coerce("started_at", values.get("started_at"))
        if started_at is None:
            return None
        kwargs["date"] = iso_date(to_local(started_at, tz))
    if "metric_type" not in kwargs or "value" not in kwargs:
        raise ValueError("daily metric needs metricType and value")
    kwargs.setdefault("unit", "")
    return DailyMetric(id=new_id(), user_id=user_id, source_id=source_id, **kwargs)


_CREATORS = {
    "sleep_sessions": ("sleep_sessions", create_sleep_session),
    "workout_sessions": ("workout_sessions", create_workout_session),
    "daily_metrics": ("daily_metrics", create_daily_metric),
}


def transform_table(
    data: Any,
    mapping: TableMapping,
    source_id: str,
    user_id: str,
    result: TransformResult,
    *,
    tz: Optional[dt.tzinfo] = None,
    cancel: Optional[CancelFlag] = None,
) -> Generator[tuple[int, int], None, None]:
    tz = tz or get_tz()
    if mapping.source_type == "csv":
        rows = data if isinstance(data, list) else []
    else:
        rows = extract_rows(data, mapping.source_path)
    if not rows:
        result.warnings.append(ImportWarning(
            kind=WarningKind.PARSE_ERROR,
            message=f"No data found at path: {mapping.source_path or 'root'}",
        ))
        return

    creator = _CREATORS.get(mapping.target_table)
    if creator is None:
        logger.info("table_mapping_ignored", target=mapping.target_table)
        return
    bucket_name, create = creator
    bucket = getattr(result, bucket_name)

    for i, row in enumerate(rows):
        check_cancel(cancel)
        yield i + 1, len(rows)
        if not isinstance(row, dict):
            result.warnings.append(ImportWarning(
                kind=WarningKind.PARSE_ERROR, message=f"Row {i} is not an object", record_index=i,
            ))
            continue
        if mapping.filter and not evaluate_filter(row, mapping.filter):
            continue
        try:
            record = create(transform_row(row, mapping.field_mappings), source_id, user_id, tz)
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning("row_skipped", index=i, error=str(e))
            result.warnings.append(ImportWarning(
                kind=WarningKind.PARSE_ERROR, message=f"Failed to transform row {i}: {e}", record_index=i,
            ))
            continue
        if record is None:
            result.warnings.append(ImportWarning(
                kind=WarningKind.MISSING_FIELD,
                message=f"Row {i} has no date or start time",
                record_index=i,
                field="date",
            ))
            continue
        bucket.append(record)


# --------------------------- Parser ---------------------------

class GenericTransformer(VendorParser):
    requires_profile = True

    def __init__(self, vendor: VendorType):
        self.vendor = vendor

    def iter_parse(
        self,
        data: Any,
        source_id: str,
        user_id: str,
        *,
        profile: Optional[ImporterProfile] = None,
        cancel: Optional[CancelFlag] = None,
    ) -> ParseSteps:
        if profile is None:
            raise ValueError("generic import needs an importer profile")
        result = TransformResult()
        tz = get_tz()
        for mapping in profile.mappings:
            yield from transform_table(data, mapping, source_id, user_id, result, tz=tz, cancel=cancel)
        logger.info(
            "generic_transformed",
            profile=profile.id,
            sleep=len(result.sleep_sessions),
            workouts=len(result.workout_sessions),
            metrics=len(result.daily_metrics),
        )
        return result
