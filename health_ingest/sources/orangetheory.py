from __future__ import annotations

import datetime as dt
import re
from typing import Any, Optional

import structlog

from ..config import get_settings
from ..models import (
    ImportWarning,
    TransformResult,
    VendorType,
    WarningKind,
    WorkoutSession,
    WorkoutType,
)
from ..profiles import ImporterProfile
from ..utils import get_tz, localize, new_id, parse_number
from .base import CancelFlag, ParseSteps, VendorParser, check_cancel

logger = structlog.get_logger()

DEFAULT_DURATION_SECONDS = 3600
DEFAULT_CLASS = "Orange 60"

# Export column names drift between app versions and DSAR dumps; the first
# alias found (exact or substring, case-insensitive) wins.
COLUMN_ALIASES: dict[str, list[str]] = {
    "date": ["date", "workout_date", "class_date", "workout date", "class date", "session_date"],
    "class_type": ["class_type", "class type", "workout_type", "workout type", "type", "class"],
    "duration": [
        "duration", "class_duration", "class duration", "workout_duration", "workout duration",
        "time", "total_time",
    ],
    "calories": ["calories", "calories_burned", "calories burned", "total_calories", "total calories", "cal"],
    "splat_points": ["splat_points", "splat points", "splats", "splat", "splatpoints"],
    "avg_hr": [
        "avg_hr", "avg hr", "average_heart_rate", "average heart rate", "avg_heart_rate",
        "avg heart rate", "avghr",
    ],
    "max_hr": [
        "max_hr", "max hr", "maximum_heart_rate", "maximum heart rate", "max_heart_rate",
        "max heart rate", "maxhr",
    ],
    "zone_1": ["zone_1", "zone 1", "gray_zone", "gray zone", "grey_zone", "grey zone", "zone1", "gray"],
    "zone_2": ["zone_2", "zone 2", "blue_zone", "blue zone", "zone2", "blue"],
    "zone_3": ["zone_3", "zone 3", "green_zone", "green zone", "zone3", "green"],
    "zone_4": ["zone_4", "zone 4", "orange_zone", "orange zone", "zone4", "orange"],
    "zone_5": ["zone_5", "zone 5", "red_zone", "red zone", "zone5", "red"],
    "tread_distance": [
        "tread_distance", "tread distance", "treadmill_distance", "treadmill distance", "distance", "miles",
    ],
    "row_distance": [
        "row_distance", "row distance", "rower_distance", "rower distance", "row_meters", "row meters",
    ],
}

_ISO = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_US_LONG = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})")
_US_SHORT = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2})")
_EU = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})")

_FALLBACK_FORMATS = ("%b %d, %Y", "%B %d, %Y", "%d %b %Y", "%d %B %Y", "%Y/%m/%d")


# --------------------------- Helpers ---------------------------

def build_column_map(headers: list[str]) -> dict[str, str]:
    """canonical field -> original header"""
    normalized = [(h, h.lower().strip()) for h in headers]
    column_map: dict[str, str] = {}
    for canonical, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            match = next((orig for orig, low in normalized if low == alias or alias in low), None)
            if match is not None:
                column_map[canonical] = match
                break
    return column_map


def _get(row: dict, column_map: dict[str, str], name: str) -> Optional[str]:
    column = column_map.get(name)
    if column is None:
        return None
    value = row.get(column)
    return value.strip() if isinstance(value, str) else value


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return dt.date(year, month, day).isoformat()
    except ValueError:
        return None


def parse_date(value: Optional[str]) -> Optional[str]:
    """ISO, US (M/D/YYYY, M/D/YY) and European (D.M.YYYY) dates -> ``YYYY-MM-DD``."""
    if not value:
        return None
    value = str(value).strip()

    m = _ISO.match(value)
    if m:
        return _safe_date(int(m[1]), int(m[2]), int(m[3]))

    m = _US_LONG.match(value) or _US_SHORT.match(value)
    if m:
        year = m[3]
        if len(year) == 2:
            year = f"19{year}" if int(year) > 50 else f"20{year}"
        return _safe_date(int(year), int(m[1]), int(m[2]))

    m = _EU.match(value)
    if m:
        return _safe_date(int(m[3]), int(m[2]), int(m[1]))

    try:
        return dt.datetime.fromisoformat(value).date().isoformat()
    except ValueError:
        pass
    for fmt in _FALLBACK_FORMATS:
        try:
            return dt.datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def classify_class(class_name: str) -> WorkoutType:
    lowered = class_name.lower()
    if "lift" in lowered or "strength" in lowered:
        return WorkoutType.STRENGTH
    if "run" in lowered or "tread" in lowered:
        return WorkoutType.RUNNING
    if "row" in lowered:
        return WorkoutType.CARDIO
    return WorkoutType.HIIT


def transform_row(
    row: dict,
    column_map: dict[str, str],
    source_id: str,
    user_id: str,
    tz: Optional[dt.tzinfo] = None,
    anchor_hour: int = 9,
) -> Optional[WorkoutSession]:
    """One CSV row -> WorkoutSession; rows without a usable date yield None."""
    date = parse_date(_get(row, column_map, "date"))
    if date is None:
        return None

    duration_seconds = float(DEFAULT_DURATION_SECONDS)
    minutes = parse_number(_get(row, column_map, "duration"))
    if minutes:
        duration_seconds = minutes * 60

    class_type = _get(row, column_map, "class_type") or DEFAULT_CLASS

    # Exports carry the class date only.
    anchor = dt.datetime.combine(dt.date.fromisoformat(date), dt.time(anchor_hour))
    started_at = localize(anchor, tz or get_tz()).astimezone(dt.timezone.utc)

    return WorkoutSession(
        id=new_id(),
        user_id=user_id,
        source_id=source_id,
        date=date,
        started_at=started_at,
        ended_at=started_at + dt.timedelta(seconds=duration_seconds),
        duration_seconds=duration_seconds,
        workout_type=classify_class(class_type),
        workout_subtype=class_type,
        calories=parse_number(_get(row, column_map, "calories")),
        avg_heart_rate=parse_number(_get(row, column_map, "avg_hr")),
        max_heart_rate=parse_number(_get(row, column_map, "max_hr")),
        splat_points=parse_number(_get(row, column_map, "splat_points")),
        zone1_minutes=parse_number(_get(row, column_map, "zone_1")),
        zone2_minutes=parse_number(_get(row, column_map, "zone_2")),
        zone3_minutes=parse_number(_get(row, column_map, "zone_3")),
        zone4_minutes=parse_number(_get(row, column_map, "zone_4")),
        zone5_minutes=parse_number(_get(row, column_map, "zone_5")),
        distance=parse_number(_get(row, column_map, "tread_distance")),
        distance_unit="miles",
        vendor_data={
            "originalRow": dict(row),
            "rowDistance": parse_number(_get(row, column_map, "row_distance")),
        },
    )


def analyze_columns(headers: list[str]) -> dict[str, Any]:
    """Which headers map automatically, which don't, and fuzzy suggestions for the rest."""
    column_map = build_column_map(headers)
    by_header: dict[str, str] = {}
    for canonical, header in column_map.items():
        by_header.setdefault(header, canonical)

    detected: dict[str, str] = {}
    unmapped: list[str] = []
    suggestions: list[dict[str, str]] = []
    for header in headers:
        if header in by_header:
            detected[header] = by_header[header]
            continue
        unmapped.append(header)
        lowered = header.lower()
        for canonical, aliases in COLUMN_ALIASES.items():
            for alias in aliases:
                if alias in lowered or lowered in alias:
                    suggestions.append({
                        "header": header,
                        "suggested_field": canonical,
                        "confidence": "high" if lowered == alias else "medium",
                    })
                    break

    return {"detected_mappings": detected, "unmapped_headers": unmapped, "suggestions": suggestions}


# --------------------------- Parser ---------------------------

class OrangetheoryParser(VendorParser):
    vendor = VendorType.ORANGETHEORY

    def iter_parse(
        self,
        data: Any,
        source_id: str,
        user_id: str,
        *,
        profile: Optional[ImporterProfile] = None,
        cancel: Optional[CancelFlag] = None,
    ) -> ParseSteps:
        result = TransformResult()
        if not isinstance(data, list):
            result.warnings.append(ImportWarning(kind=WarningKind.PARSE_ERROR, message="Expected array of CSV rows"))
            return result
        if not data:
            result.warnings.append(ImportWarning(kind=WarningKind.PARSE_ERROR, message="No workout data found in file"))
            return result

        settings = get_settings()
        tz = get_tz(settings.TZ)
        column_map = build_column_map(list(data[0].keys()))
        logger.info("otf_columns_mapped", mapped=column_map)

        for i, row in enumerate(data):
            check_cancel(cancel)
            yield i + 1, len(data)
            try:
                session = transform_row(row, column_map, source_id, user_id, tz, settings.WORKOUT_ANCHOR_HOUR)
            except (TypeError, ValueError, AttributeError, OverflowError) as e:
                logger.warning("row_skipped", index=i, error=str(e))
                result.warnings.append(ImportWarning(
                    kind=WarningKind.PARSE_ERROR,
                    message=f"Failed to parse row {i + 1}: {e}",
                    record_index=i,
                ))
                continue
            if session is not None:
                result.workout_sessions.append(session)

        return result
