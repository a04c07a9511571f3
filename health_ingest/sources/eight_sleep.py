from __future__ import annotations

import datetime as dt
from typing import Any, Optional

import structlog

from ..models import (
    DataQualityFlags,
    ImportWarning,
    SleepSession,
    TimeSeries,
    TransformResult,
    VendorType,
    WarningKind,
)
from ..profiles import ImporterProfile
from ..utils import get_tz, localize, mean, new_id, night_of_date, utc_from_timestamp
from .base import CancelFlag, ParseSteps, VendorParser, check_cancel

logger = structlog.get_logger()

STAGE_BUCKETS = ("awake", "light", "deep", "rem", "out")

# Anything with less actual sleep is treated as noise (naps, sensor blips).
MIN_SLEEP_SECONDS = 3 * 60 * 60

DEFAULT_INTERVAL_SECONDS = 300
DASHBOARD_BEDTIME_HOUR = 23

# timeseries key -> (metric type, session attribute averaged from it)
SERIES = {
    "heartRate": ("heart_rate", "avg_heart_rate"),
    "hrv": ("hrv", "avg_hrv"),
    "respiratoryRate": ("respiratory_rate", "avg_respiratory_rate"),
    "tempBedC": ("bed_temperature", "avg_bed_temp_c"),
    "tempRoomC": ("room_temperature", "avg_room_temp_c"),
}


# --------------------------- Helpers ---------------------------

def is_dashboard_format(data: Any) -> bool:
    return isinstance(data, dict) and all(k in data for k in ("sessions", "baselines", "debtStats"))


def extract_raw_sessions(data: Any) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("sessions"), list):
        return data["sessions"]
    return []


def _series_values(points: Any) -> list[float]:
    """Non-null sample values of a ``[[ts, value|null], ...]`` series."""
    if not isinstance(points, list):
        return []
    return [
        float(p[1]) for p in points
        if isinstance(p, (list, tuple)) and len(p) >= 2 and p[1] is not None
    ]


def estimate_interval(points: list) -> float:
    """Median delta of the first (up to) ten timestamps."""
    if len(points) < 2:
        return DEFAULT_INTERVAL_SECONDS
    deltas = sorted(points[i][0] - points[i - 1][0] for i in range(1, min(10, len(points))))
    return deltas[len(deltas) // 2] or DEFAULT_INTERVAL_SECONDS


def _stage_totals(stages: list) -> dict[str, float]:
    totals = {name: 0.0 for name in STAGE_BUCKETS}
    for stage in stages:
        name = stage.get("stage")
        if name in totals:
            totals[name] += float(stage.get("duration") or 0)
    return totals


# --------------------------- Raw export ---------------------------

def transform_raw_session(
    raw: dict,
    source_id: str,
    user_id: str,
    tz: Optional[dt.tzinfo] = None,
) -> Optional[SleepSession]:
    """One raw export session -> SleepSession, or None when it is too short to count."""
    stages = raw.get("stages")
    if not stages:
        return None

    totals = _stage_totals(stages)
    sleep_seconds = totals["light"] + totals["deep"] + totals["rem"]
    in_bed_seconds = sleep_seconds + totals["awake"]
    if sleep_seconds < MIN_SLEEP_SECONDS:
        return None

    started_at = utc_from_timestamp(float(raw["ts"]))
    ended_at = started_at + dt.timedelta(seconds=in_bed_seconds)

    series = raw.get("timeseries") or {}
    biometrics: dict[str, Optional[float]] = {}
    hr = _series_values(series.get("heartRate"))
    biometrics["min_heart_rate"] = min(hr) if hr else None
    biometrics["max_heart_rate"] = max(hr) if hr else None
    for key, (_, attr) in SERIES.items():
        biometrics[attr] = mean(_series_values(series.get(key)))

    return SleepSession(
        id=new_id(),
        user_id=user_id,
        source_id=source_id,
        date=night_of_date(started_at, tz),
        started_at=started_at,
        ended_at=ended_at,
        duration_seconds=sleep_seconds,
        time_in_bed_seconds=in_bed_seconds,
        deep_seconds=totals["deep"],
        rem_seconds=totals["rem"],
        light_seconds=totals["light"],
        awake_seconds=totals["awake"],
        wake_after_sleep_onset=totals["awake"],
        efficiency=(sleep_seconds / in_bed_seconds) * 100 if in_bed_seconds > 0 else None,
        vendor_data={"originalTimestamp": raw["ts"], "rawStages": stages},
        **biometrics,
    )


def extract_time_series(raw: dict, session: SleepSession) -> list[TimeSeries]:
    result: list[TimeSeries] = []
    series = raw.get("timeseries") or {}
    for key, (metric_type, _) in SERIES.items():
        points = series.get(key)
        if not isinstance(points, list) or not points:
            continue
        values = [p[1] for p in points]
        result.append(
            TimeSeries(
                id=new_id(),
                user_id=session.user_id,
                source_id=session.source_id,
                session_id=session.id,
                metric_type=metric_type,
                started_at=session.started_at,
                interval_seconds=estimate_interval(points),
                values=values,
                gap_count=sum(1 for v in values if v is None),
            )
        )
    return result


# --------------------------- Dashboard export ---------------------------

def transform_dashboard_session(
    raw: dict,
    source_id: str,
    user_id: str,
    tz: Optional[dt.tzinfo] = None,
) -> SleepSession:
    """The app's own dashboard export: hours, stage percentages, awake minutes."""
    sleep_seconds = float(raw["sleepHours"]) * 3600
    awake_seconds = float(raw.get("awakeMins") or 0) * 60
    date = str(raw["date"])

    # Dashboard rows carry no clock time; assume an 11pm bedtime.
    bedtime = dt.datetime.combine(dt.date.fromisoformat(date), dt.time(DASHBOARD_BEDTIME_HOUR))
    started_at = localize(bedtime, tz or get_tz()).astimezone(dt.timezone.utc)
    in_bed_seconds = sleep_seconds + awake_seconds

    return SleepSession(
        id=new_id(),
        user_id=user_id,
        source_id=source_id,
        date=date,
        started_at=started_at,
        ended_at=started_at + dt.timedelta(seconds=in_bed_seconds),
        duration_seconds=sleep_seconds,
        time_in_bed_seconds=in_bed_seconds,
        deep_seconds=float(raw.get("deepPct") or 0) / 100 * sleep_seconds,
        rem_seconds=float(raw.get("remPct") or 0) / 100 * sleep_seconds,
        light_seconds=float(raw.get("lightPct") or 0) / 100 * sleep_seconds,
        awake_seconds=awake_seconds,
        efficiency=(sleep_seconds / in_bed_seconds) * 100 if sleep_seconds > 0 else None,
        avg_heart_rate=raw.get("avgHr"),
        min_heart_rate=raw.get("minHr"),
        avg_hrv=raw.get("avgHrv"),
        avg_respiratory_rate=raw.get("avgRr"),
        avg_bed_temp_c=raw.get("bedTempC"),
        avg_room_temp_c=raw.get("roomTempC"),
        data_quality=DataQualityFlags(),
        vendor_data={
            "originalFormat": "dashboard_data",
            "quality": raw.get("quality"),
            "dailyDeficit": raw.get("dailyDeficit"),
            "debt7Day": raw.get("debt7Day"),
            "debt14Day": raw.get("debt14Day"),
            "cumulativeDebt": raw.get("cumulativeDebt"),
        },
    )


# --------------------------- Parser ---------------------------

class EightSleepParser(VendorParser):
    vendor = VendorType.EIGHT_SLEEP

    def iter_parse(
        self,
        data: Any,
        source_id: str,
        user_id: str,
        *,
        profile: Optional[ImporterProfile] = None,
        cancel: Optional[CancelFlag] = None,
    ) -> ParseSteps:
        tz = get_tz()
        result = TransformResult()

        if is_dashboard_format(data):
            sessions = data.get("sessions") or []
            for i, raw in enumerate(sessions):
                check_cancel(cancel)
                yield i + 1, len(sessions)
                try:
                    result.sleep_sessions.append(transform_dashboard_session(raw, source_id, user_id, tz))
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    label = raw.get("date") if isinstance(raw, dict) else i
                    logger.warning("dashboard_session_skipped", index=i, error=str(e))
                    result.warnings.append(ImportWarning(
                        kind=WarningKind.PARSE_ERROR,
                        message=f"Failed to parse session {label}: {e}",
                        record_index=i,
                    ))
            return result

        raw_sessions = extract_raw_sessions(data)
        if not raw_sessions:
            result.warnings.append(ImportWarning(kind=WarningKind.PARSE_ERROR, message="No sleep sessions found in file"))
            return result

        for i, raw in enumerate(raw_sessions):
            check_cancel(cancel)
            yield i + 1, len(raw_sessions)
            try:
                session = transform_raw_session(raw, source_id, user_id, tz)
                if session is None:
                    continue
                series = extract_time_series(raw, session)
            except (KeyError, TypeError, ValueError, AttributeError, IndexError) as e:
                logger.warning("session_skipped", index=i, error=str(e))
                result.warnings.append(ImportWarning(
                    kind=WarningKind.PARSE_ERROR,
                    message=f"Failed to parse session at index {i}: {e}",
                    record_index=i,
                ))
                continue
            session.data_quality.sensor_gaps = sum(ts.gap_count for ts in series)
            result.sleep_sessions.append(session)
            result.time_series.extend(series)

        logger.info("eight_sleep_parsed", sessions=len(result.sleep_sessions), series=len(result.time_series))
        return result
