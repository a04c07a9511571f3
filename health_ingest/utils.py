from __future__ import annotations

import datetime as dt
import hashlib
import logging
import re
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

import pytz
import structlog

from .config import get_settings
from .models import WorkoutType

logger = structlog.get_logger()

# Sessions that start before this local hour belong to the previous night.
NIGHT_OF_CUTOFF_HOUR = 6


def configure_logging(level: Optional[str] = None) -> None:
    name = (level or get_settings().LOG_LEVEL).upper()
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, name, logging.INFO)),
    )


def get_tz(name: Optional[str] = None) -> pytz.BaseTzInfo:
    return pytz.timezone(name or get_settings().TZ)


def iso_date(d: dt.date | dt.datetime) -> str:
    if isinstance(d, dt.datetime):
        d = d.date()
    return d.isoformat()


def utc_from_timestamp(ts: float) -> dt.datetime:
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc)


def to_local(moment: dt.datetime, tz: Optional[dt.tzinfo] = None) -> dt.datetime:
    tz = tz or get_tz()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(tz)


def localize(naive: dt.datetime, tz: Optional[dt.tzinfo] = None) -> dt.datetime:
    """Attach *tz* to a naive local time (pytz needs ``localize`` for DST)."""
    tz = tz or get_tz()
    if hasattr(tz, "localize"):
        return tz.localize(naive)  # type: ignore[union-attr]
    return naive.replace(tzinfo=tz)


def night_of_date(started_at: dt.datetime, tz: Optional[dt.tzinfo] = None) -> str:
    """Calendar date a sleep session is attributed to.

    A start before 06:00 local time counts toward the previous evening.
    """
    local = to_local(started_at, tz)
    if local.hour < NIGHT_OF_CUTOFF_HOUR:
        local = local - dt.timedelta(days=1)
    return iso_date(local)


def parse_iso(ts: Any) -> Optional[dt.datetime]:
    if ts is None or ts == "":
        return None
    if isinstance(ts, dt.datetime):
        return ts if ts.tzinfo else ts.replace(tzinfo=dt.timezone.utc)
    try:
        parsed = dt.datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def round_half_up(value: Optional[float]) -> Optional[int]:
    if value is None:
        return None
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


_NUMBER_JUNK = re.compile(r"[^\d.\-]")


def parse_number(value: Any) -> Optional[float]:
    """Lenient numeric parse: ``"60 mins"`` -> 60.0, ``""`` -> None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _NUMBER_JUNK.sub("", str(value))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def mean(values: Iterable[float]) -> Optional[float]:
    vals = list(values)
    if not vals:
        return None
    return sum(vals) / len(vals)


def new_id() -> str:
    return str(uuid.uuid4())


def sha256_hex(chunks: Iterable[bytes]) -> str:
    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(chunk)
    return digest.hexdigest()


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"


NORMALIZED_WORKOUT_TYPES = {
    "run": WorkoutType.RUNNING,
    "running": WorkoutType.RUNNING,
    "ride": WorkoutType.CYCLING,
    "cycling": WorkoutType.CYCLING,
    "bike": WorkoutType.CYCLING,
    "swim": WorkoutType.SWIMMING,
    "swimming": WorkoutType.SWIMMING,
    "strength": WorkoutType.STRENGTH,
    "weight_training": WorkoutType.STRENGTH,
    "walk": WorkoutType.WALKING,
    "walking": WorkoutType.WALKING,
    "hike": WorkoutType.WALKING,
    "yoga": WorkoutType.YOGA,
    "hiit": WorkoutType.HIIT,
    "cardio": WorkoutType.CARDIO,
    "sports": WorkoutType.SPORTS,
}


def normalize_workout_type(value: Optional[str]) -> WorkoutType:
    if not value:
        return WorkoutType.OTHER
    key = str(value).replace("-", "_").replace(" ", "_").lower()
    return NORMALIZED_WORKOUT_TYPES.get(key, WorkoutType.OTHER)
