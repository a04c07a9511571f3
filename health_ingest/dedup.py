"""Date-keyed deduplication of sleep sessions.

One night is one canonical record per user.  Precedence goes to the more
complete record, never to the more recent import, so a thin re-import
cannot clobber richer stored data.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

import structlog

from .models import DataQualityFlags, SleepSession

logger = structlog.get_logger()

# Filled from the supplement when the base has None or 0.
FILLABLE_FIELDS = (
    "duration_seconds",
    "time_in_bed_seconds",
    "deep_seconds",
    "rem_seconds",
    "light_seconds",
    "awake_seconds",
    "sleep_onset_latency",
    "wake_after_sleep_onset",
    "min_heart_rate",
    "avg_heart_rate",
    "max_heart_rate",
    "avg_hrv",
    "avg_respiratory_rate",
)

# Zero is a legitimate temperature; only None counts as missing.
NULLABLE_FIELDS = ("avg_bed_temp_c", "avg_room_temp_c", "started_at", "ended_at")


def completeness_score(session: SleepSession) -> int:
    score = 0
    if (session.duration_seconds or 0) > 0:
        score += 10
    if session.deep_seconds > 0:
        score += 5
    if session.rem_seconds > 0:
        score += 5
    if session.light_seconds > 0:
        score += 5
    if session.awake_seconds > 0:
        score += 2
    if (session.min_heart_rate or 0) > 0:
        score += 5
    if (session.avg_hrv or 0) > 0:
        score += 5
    if session.efficiency is not None and 0 < session.efficiency <= 100:
        score += 3
    if (session.avg_respiratory_rate or 0) > 0:
        score += 3
    if session.avg_bed_temp_c is not None:
        score += 2
    return score


def _valid_efficiency(value: Optional[float]) -> bool:
    return value is not None and 0 < value <= 100


def merge_sessions(first: SleepSession, second: SleepSession) -> SleepSession:
    """Merge two sessions for the same night.

    The higher-scored session is the base (``first`` on ties) and keeps its
    identity; the other only fills fields the base is missing.
    """
    if completeness_score(first) >= completeness_score(second):
        base, supplement = first, second
    else:
        base, supplement = second, first

    updates = {}
    for name in FILLABLE_FIELDS:
        if not getattr(base, name):
            updates[name] = getattr(supplement, name) or getattr(base, name)
    for name in NULLABLE_FIELDS:
        if getattr(base, name) is None:
            updates[name] = getattr(supplement, name)

    if _valid_efficiency(base.efficiency):
        updates["efficiency"] = base.efficiency
    elif _valid_efficiency(supplement.efficiency):
        updates["efficiency"] = supplement.efficiency

    merged_sources = [s for s in (base.vendor_data.get("source"), supplement.vendor_data.get("source")) if s]
    updates["vendor_data"] = {**supplement.vendor_data, **base.vendor_data, "mergedSources": merged_sources}

    flags = base.data_quality
    updates["data_quality"] = DataQualityFlags(
        is_complete=flags.is_complete,
        has_outliers=flags.has_outliers,
        outlier_fields=list(flags.outlier_fields),
        sensor_gaps=flags.sensor_gaps,
        manually_excluded=flags.manually_excluded or supplement.data_quality.manually_excluded,
        exclusion_reason=flags.exclusion_reason or supplement.data_quality.exclusion_reason,
    )
    return replace(base, **updates)


@dataclass
class DedupResult:
    sessions: list[SleepSession] = field(default_factory=list)
    merged_count: int = 0
    skipped_count: int = 0
    # incoming session id -> id of the record that will be stored (None when skipped)
    id_map: dict[str, Optional[str]] = field(default_factory=dict)


def deduplicate_sessions(
    sessions: Iterable[SleepSession],
    user_id: str,
    existing: Iterable[SleepSession] = (),
) -> DedupResult:
    """Reconcile *sessions* against stored *existing* sessions of *user_id*."""
    existing_by_date: dict[str, SleepSession] = {}
    for stored in existing:
        if stored.user_id != user_id:
            continue
        current = existing_by_date.get(stored.date)
        if current is None or completeness_score(stored) > completeness_score(current):
            existing_by_date[stored.date] = stored

    incoming_by_date: dict[str, SleepSession] = {}
    ids_by_date: dict[str, list[str]] = {}
    for session in sessions:
        ids_by_date.setdefault(session.date, []).append(session.id)
        current = incoming_by_date.get(session.date)
        incoming_by_date[session.date] = merge_sessions(current, session) if current else session

    result = DedupResult()
    for date, session in incoming_by_date.items():
        stored = existing_by_date.get(date)
        if stored is None:
            final_id: Optional[str] = session.id
            result.sessions.append(session)
        elif completeness_score(stored) >= completeness_score(session):
            final_id = None
            result.skipped_count += 1
        else:
            merged = replace(merge_sessions(stored, session), id=stored.id)
            final_id = stored.id
            result.sessions.append(merged)
            result.merged_count += 1
        for incoming_id in ids_by_date[date]:
            result.id_map[incoming_id] = final_id

    logger.info(
        "sessions_deduplicated",
        incoming=sum(len(v) for v in ids_by_date.values()),
        kept=len(result.sessions),
        merged=result.merged_count,
        skipped=result.skipped_count,
    )
    return result
