"""Data quality: hard limits, robust outliers, baselines and batch reports.

Hard limits are biologically implausible ranges and always win; statistical
outliers are judged against a personal baseline with the robust z-score
from :mod:`health_ingest.stats`.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional

import structlog

from . import stats
from .config import get_settings
from .models import DataQualityFlags, SleepSession, WorkoutSession
from .utils import round_half_up

logger = structlog.get_logger()

HARD_LIMITS: dict[str, tuple[float, float]] = {
    "heartRate": (25, 220),
    "minHeartRate": (25, 120),
    "maxHeartRate": (40, 220),
    "hrv": (5, 300),
    "respiratoryRate": (4, 40),
    "sleepDuration": (30 * 60, 16 * 60 * 60),
    "deepPercent": (0, 60),
    "remPercent": (0, 60),
    "bodyTemp": (15, 45),
    "roomTemp": (-10, 50),
    "workoutDuration": (60, 8 * 60 * 60),
    "calories": (0, 5000),
}

# (report field, session attribute, limit key, required)
SLEEP_CHECKS = [
    ("minHeartRate", "min_heart_rate", "minHeartRate", False),
    ("avgHeartRate", "avg_heart_rate", "heartRate", False),
    ("maxHeartRate", "max_heart_rate", "maxHeartRate", False),
    ("avgHrv", "avg_hrv", "hrv", False),
    ("avgRespiratoryRate", "avg_respiratory_rate", "respiratoryRate", False),
    ("durationSeconds", "duration_seconds", "sleepDuration", True),
    ("avgBedTempC", "avg_bed_temp_c", "bodyTemp", False),
    ("avgRoomTempC", "avg_room_temp_c", "roomTemp", False),
]

WORKOUT_CHECKS = [
    ("durationSeconds", "duration_seconds", "workoutDuration"),
    ("calories", "calories", "calories"),
    ("avgHeartRate", "avg_heart_rate", "heartRate"),
    ("maxHeartRate", "max_heart_rate", "maxHeartRate"),
]

# Baseline metrics: report field -> session attribute
BASELINE_METRICS = {
    "avgHrv": "avg_hrv",
    "minHeartRate": "min_heart_rate",
    "avgRespiratoryRate": "avg_respiratory_rate",
    "durationSeconds": "duration_seconds",
}


# --------------------------- Reports ---------------------------

@dataclass
class HardLimitViolation:
    field: str
    value: float
    limit: tuple[float, float]
    violation: str  # below_min | above_max


@dataclass
class SleepQualityReport:
    session: SleepSession
    hard_limit_violations: list[HardLimitViolation] = field(default_factory=list)
    outlier_fields: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    missing_optional_fields: list[str] = field(default_factory=list)
    is_complete: bool = True
    overall_quality: str = "good"  # good | warning | bad
    suggested_action: str = "include"  # include | exclude_from_baseline | flag_for_review


@dataclass
class WorkoutQualityReport:
    workout: WorkoutSession
    hard_limit_violations: list[HardLimitViolation] = field(default_factory=list)
    overall_quality: str = "good"


@dataclass
class MetricBaseline:
    metric: str
    median: float = 0.0
    mad: float = 0.0
    mean: float = 0.0
    std_dev: float = 0.0
    low: float = 0.0
    high: float = 0.0
    p25: float = 0.0
    p75: float = 0.0
    sample_size: int = 0
    excluded_count: int = 0


@dataclass
class DataQualitySummary:
    total_sessions: int
    good_sessions: int
    warning_sessions: int
    bad_sessions: int
    common_issues: list[tuple[str, int]]
    baselines: dict[str, MetricBaseline]
    outlier_dates: list[str]
    recommendations: list[str]


# --------------------------- Checks ---------------------------

def check_hard_limit(value: Optional[float], field_name: str, limit_key: str) -> Optional[HardLimitViolation]:
    if value is None:
        return None
    low, high = HARD_LIMITS[limit_key]
    if value < low:
        return HardLimitViolation(field_name, value, (low, high), "below_min")
    if value > high:
        return HardLimitViolation(field_name, value, (low, high), "above_max")
    return None


def _center_spread(entry: Any) -> tuple[float, float]:
    if isinstance(entry, Mapping):
        return float(entry["median"]), float(entry["mad"])
    return float(entry.median), float(entry.mad)


def check_sleep_session_quality(
    session: SleepSession,
    baseline: Optional[Mapping[str, Any]] = None,
    threshold: Optional[float] = None,
) -> SleepQualityReport:
    """Classify one session.

    ``baseline`` maps a metric name (``avgHrv``, ``minHeartRate``,
    ``avgRespiratoryRate``, ``durationSeconds``) to a :class:`MetricBaseline`
    or a ``{"median", "mad"}`` mapping.
    """
    if threshold is None:
        threshold = get_settings().OUTLIER_THRESHOLD
    report = SleepQualityReport(session=session)

    for name, attr, limit_key, required in SLEEP_CHECKS:
        value = getattr(session, attr)
        if value is None:
            (report.missing_fields if required else report.missing_optional_fields).append(name)
            continue
        violation = check_hard_limit(value, name, limit_key)
        if violation:
            report.hard_limit_violations.append(violation)

    total_sleep = session.deep_seconds + session.rem_seconds + session.light_seconds
    if total_sleep > 0:
        for name, seconds in (("deepPercent", session.deep_seconds), ("remPercent", session.rem_seconds)):
            violation = check_hard_limit(seconds / total_sleep * 100, name, name)
            if violation:
                report.hard_limit_violations.append(violation)

    if baseline:
        for name, attr in BASELINE_METRICS.items():
            value = getattr(session, attr)
            if value is None or name not in baseline:
                continue
            center, spread = _center_spread(baseline[name])
            if stats.is_outlier(value, center, spread, threshold):
                report.outlier_fields.append(name)

    report.is_complete = not report.missing_fields
    if report.hard_limit_violations:
        report.overall_quality, report.suggested_action = "bad", "exclude_from_baseline"
    elif len(report.outlier_fields) >= 2:
        report.overall_quality, report.suggested_action = "warning", "flag_for_review"
    elif report.outlier_fields or not report.is_complete or report.missing_optional_fields:
        report.overall_quality, report.suggested_action = "warning", "include"
    else:
        report.overall_quality, report.suggested_action = "good", "include"
    return report


def check_workout_quality(workout: WorkoutSession) -> WorkoutQualityReport:
    report = WorkoutQualityReport(workout=workout)
    for name, attr, limit_key in WORKOUT_CHECKS:
        violation = check_hard_limit(getattr(workout, attr), name, limit_key)
        if violation:
            report.hard_limit_violations.append(violation)
    if report.hard_limit_violations:
        report.overall_quality = "bad"
    return report


def generate_data_quality_flags(
    report: SleepQualityReport | WorkoutQualityReport,
    existing: Optional[DataQualityFlags] = None,
) -> DataQualityFlags:
    """Fresh flags from *report*; gap count and manual exclusion carry over from *existing*."""
    outliers = list(getattr(report, "outlier_fields", []))
    violations = [v.field for v in report.hard_limit_violations]
    return DataQualityFlags(
        is_complete=getattr(report, "is_complete", True),
        has_outliers=bool(outliers or violations),
        outlier_fields=outliers + violations,
        sensor_gaps=existing.sensor_gaps if existing else 0,
        manually_excluded=existing.manually_excluded if existing else False,
        exclusion_reason=existing.exclusion_reason if existing else None,
    )


def validate_session(session: SleepSession) -> SleepSession:
    """Clamp efficiency to [0, 100] and round heart-rate/HRV to whole numbers."""
    efficiency = session.efficiency
    if efficiency is not None:
        efficiency = min(max(efficiency, 0.0), 100.0)
    return replace(
        session,
        efficiency=efficiency,
        min_heart_rate=round_half_up(session.min_heart_rate) if session.min_heart_rate else None,
        avg_heart_rate=round_half_up(session.avg_heart_rate) if session.avg_heart_rate else None,
        avg_hrv=round_half_up(session.avg_hrv) if session.avg_hrv else None,
    )


# --------------------------- Baselines ---------------------------

def calculate_baseline(
    values: Iterable[float],
    metric: str,
    exclude_outliers: bool = True,
    threshold: Optional[float] = None,
) -> MetricBaseline:
    """Two-pass robust baseline: the first pass only decides exclusions."""
    if threshold is None:
        threshold = get_settings().OUTLIER_THRESHOLD
    values = list(values)
    if not values:
        return MetricBaseline(metric=metric)

    center = stats.median(values)
    spread = stats.mad(values)
    kept = values
    if exclude_outliers and spread > 0:
        kept = [v for v in values if abs(stats.robust_z_score(v, center, spread)) <= threshold]

    final_median = stats.median(kept)
    final_mad = stats.mad(kept)
    return MetricBaseline(
        metric=metric,
        median=final_median,
        mad=final_mad,
        mean=stats.mean(kept),
        std_dev=stats.std_dev(kept),
        low=final_median - 2 * final_mad,
        high=final_median + 2 * final_mad,
        p25=stats.percentile(kept, 25),
        p75=stats.percentile(kept, 75),
        sample_size=len(kept),
        excluded_count=len(values) - len(kept),
    )


def calculate_baselines(sessions: Iterable[SleepSession]) -> dict[str, MetricBaseline]:
    """Per-metric baselines, leaving out manually excluded sessions."""
    usable = [s for s in sessions if not s.data_quality.manually_excluded]
    return {
        name: calculate_baseline([getattr(s, attr) for s in usable if getattr(s, attr) is not None], name)
        for name, attr in BASELINE_METRICS.items()
    }


def assess_data_quality(sessions: list[SleepSession]) -> DataQualitySummary:
    baselines = calculate_baselines(sessions)
    reports = [check_sleep_session_quality(s, baselines) for s in sessions]

    buckets: Counter = Counter()
    issues: Counter = Counter()
    outlier_dates: list[str] = []
    for report in reports:
        buckets[report.overall_quality] += 1
        for v in report.hard_limit_violations:
            issues[f"{v.field}: {v.violation}"] += 1
        for name in report.outlier_fields:
            issues[f"{name}: statistical outlier"] += 1
        if report.suggested_action in ("exclude_from_baseline", "flag_for_review"):
            outlier_dates.append(report.session.date)

    recommendations: list[str] = []
    bad = buckets["bad"]
    if sessions and bad > len(sessions) * 0.1:
        recommendations.append(
            f"{bad} sessions ({bad / len(sessions) * 100:.1f}%) have data quality issues. "
            "Consider reviewing sensor placement or device settings."
        )
    for name, baseline in baselines.items():
        if baseline.excluded_count > 5:
            recommendations.append(
                f"{baseline.excluded_count} {name} readings were excluded as outliers. "
                "This may indicate sensor issues or unusual nights."
            )

    logger.info("quality_assessed", sessions=len(sessions), good=buckets["good"], warning=buckets["warning"], bad=bad)
    return DataQualitySummary(
        total_sessions=len(sessions),
        good_sessions=buckets["good"],
        warning_sessions=buckets["warning"],
        bad_sessions=bad,
        common_issues=issues.most_common(10),
        baselines=baselines,
        outlier_dates=outlier_dates,
        recommendations=recommendations,
    )


# --------------------------- Manual exclusion ---------------------------

def set_manual_exclusion(store, user_id: str, date: str, excluded: bool, reason: Optional[str] = None) -> int:
    """Toggle ``manually_excluded`` on the stored session(s) for *date*; returns how many changed."""
    sessions = store.get_by_index("sleepSessions", "userId_date", (user_id, date))
    for session in sessions:
        session.data_quality.manually_excluded = excluded
        session.data_quality.exclusion_reason = reason if excluded else None
    if sessions:
        store.put_many("sleepSessions", sessions)
    logger.info("manual_exclusion_set", user_id=user_id, date=date, excluded=excluded, sessions=len(sessions))
    return len(sessions)
