"""Apple Health ``export.xml`` parser.

Exports routinely run to hundreds of megabytes, so the document is never
parsed as a tree.  Bytes are decoded incrementally and two regular
expressions (``Record`` and ``Workout`` elements) are run over a rolling
text buffer; everything up to the end of the last complete element is
dropped, and at most ``tail_margin`` characters are carried over to the
next chunk.  Memory therefore stays bounded by chunk size plus margin.

Matched elements are folded into an :class:`HealthAccumulator` owned by a
single parse, which :meth:`HealthAccumulator.finalize` turns into canonical
records once input is exhausted.

The same module also re-imports the pre-parsed JSON snapshot produced by
earlier runs (``sleepSessions`` + ``workoutSessions`` + ``sources``).
"""
from __future__ import annotations

import codecs
import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Any, Generator, Iterable, Optional

import structlog

from ..config import get_settings
from ..models import (
    DailyMetric,
    DataQualityFlags,
    ImportWarning,
    SleepSession,
    TransformResult,
    VendorType,
    WarningKind,
    WorkoutSession,
    WorkoutType,
)
from ..profiles import ImporterProfile
from ..utils import mean, new_id, parse_iso
from .base import CancelFlag, ParseSteps, RowProgress, VendorParser, check_cancel, run_steps

logger = structlog.get_logger()

RECORD_RE = re.compile(r"<Record\s+([^>]+?)(?:/>|>[\s\S]*?</Record>)")
WORKOUT_RE = re.compile(r"<Workout\s+([^>]+?)(?:>[\s\S]*?</Workout>|/>)")
STATISTICS_RE = re.compile(r"<WorkoutStatistics\s+([^>]+?)/?>")
ATTR_RE = re.compile(r'(\w+)="([^"]*)"')

SLEEP_ANALYSIS = "HKCategoryTypeIdentifierSleepAnalysis"
HEART_RATE = "HKQuantityTypeIdentifierHeartRate"
HRV_SDNN = "HKQuantityTypeIdentifierHeartRateVariabilitySDNN"
BODY_MASS = "HKQuantityTypeIdentifierBodyMass"
STEP_COUNT = "HKQuantityTypeIdentifierStepCount"

MIN_SLEEP_SECONDS = 30 * 60
MIN_WORKOUT_SECONDS = 5 * 60

SLEEP_STAGE_BUCKETS = {
    "HKCategoryValueSleepAnalysisAsleepDeep": "deep",
    "HKCategoryValueSleepAnalysisAsleepREM": "rem",
    "HKCategoryValueSleepAnalysisAsleepCore": "light",
    "HKCategoryValueSleepAnalysisAsleep": "light",
    "HKCategoryValueSleepAnalysisAsleepUnspecified": "light",
    "HKCategoryValueSleepAnalysisAwake": "awake",
    "HKCategoryValueSleepAnalysisInBed": "in_bed",
}

WORKOUT_PREFIX = "HKWorkoutActivityType"

WORKOUT_TYPES: dict[str, WorkoutType] = {
    "HKWorkoutActivityTypeCycling": WorkoutType.CYCLING,
    "HKWorkoutActivityTypeRunning": WorkoutType.RUNNING,
    "HKWorkoutActivityTypeWalking": WorkoutType.WALKING,
    "HKWorkoutActivityTypeSwimming": WorkoutType.SWIMMING,
    "HKWorkoutActivityTypeYoga": WorkoutType.YOGA,
    "HKWorkoutActivityTypeHighIntensityIntervalTraining": WorkoutType.HIIT,
    "HKWorkoutActivityTypeFunctionalStrengthTraining": WorkoutType.STRENGTH,
    "HKWorkoutActivityTypeTraditionalStrengthTraining": WorkoutType.STRENGTH,
    "HKWorkoutActivityTypeCrossTraining": WorkoutType.HIIT,
    "HKWorkoutActivityTypeMixedCardio": WorkoutType.CARDIO,
    "HKWorkoutActivityTypeHiking": WorkoutType.WALKING,
    "HKWorkoutActivityTypeElliptical": WorkoutType.CARDIO,
    "HKWorkoutActivityTypeBarre": WorkoutType.OTHER,
    "HKWorkoutActivityTypeDance": WorkoutType.OTHER,
    "HKWorkoutActivityTypePreparationAndRecovery": WorkoutType.OTHER,
}

_CAPITAL = re.compile(r"([A-Z])")


# --------------------------- Helpers ---------------------------

def parse_attributes(attr_string: str) -> dict[str, str]:
    return dict(ATTR_RE.findall(attr_string))


def parse_apple_date(value: Optional[str]) -> Optional[dt.datetime]:
    """``2024-01-15 08:30:00 -0800`` -> aware UTC datetime."""
    if not value:
        return None
    try:
        moment = dt.datetime.strptime(value.strip(), "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        moment = parse_iso(value)
        if moment is None:
            return None
    return moment.astimezone(dt.timezone.utc)


def _float(value: Optional[str]) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except ValueError:
        return None


def map_workout_type(activity_type: str) -> WorkoutType:
    return WORKOUT_TYPES.get(activity_type, WorkoutType.OTHER)


def clean_workout_type(activity_type: str) -> str:
    """``HKWorkoutActivityTypeMixedCardio`` -> ``Mixed Cardio``."""
    return _CAPITAL.sub(r" \1", activity_type.replace(WORKOUT_PREFIX, "", 1)).strip()


def map_distance_unit(unit: Optional[str]) -> Optional[str]:
    if not unit:
        return None
    lowered = unit.lower()
    if "mi" in lowered:
        return "miles"
    if "km" in lowered:
        return "kilometers"
    return "meters"


# --------------------------- Accumulator ---------------------------

@dataclass
class HealthAccumulator:
    """Per-parse state collected while scanning the document."""

    source_id: str
    user_id: str
    sleep_segments: dict[tuple[str, str], list[dict[str, str]]] = field(default_factory=dict)
    heart_rate_by_date: dict[str, list[float]] = field(default_factory=dict)
    hrv_by_date: dict[str, list[float]] = field(default_factory=dict)
    daily_metrics: list[DailyMetric] = field(default_factory=list)
    workout_sessions: list[WorkoutSession] = field(default_factory=list)
    sources: dict[str, None] = field(default_factory=dict)  # insertion-ordered set
    counts: dict[str, int] = field(default_factory=lambda: {
        "sleep": 0, "heartRate": 0, "hrv": 0, "workouts": 0, "weight": 0, "steps": 0, "other": 0,
    })

    def add_record(self, attrs: dict[str, str]) -> None:
        record_type = attrs.get("type")
        start = attrs.get("startDate")
        if not record_type or not start:
            return
        self.sources[attrs.get("sourceName") or "Unknown"] = None
        date = start[:10]
        value = _float(attrs.get("value"))

        if record_type == SLEEP_ANALYSIS:
            self.counts["sleep"] += 1
            key = (date, attrs.get("sourceName") or "Unknown")
            self.sleep_segments.setdefault(key, []).append(attrs)
        elif record_type == HEART_RATE:
            self.counts["heartRate"] += 1
            bucket = self.heart_rate_by_date.setdefault(date, [])
            if value is not None:
                bucket.append(value)
        elif record_type == HRV_SDNN:
            self.counts["hrv"] += 1
            bucket = self.hrv_by_date.setdefault(date, [])
            if value is not None:
                bucket.append(value)
        elif record_type == BODY_MASS:
            self.counts["weight"] += 1
            if value is not None:
                self.daily_metrics.append(DailyMetric(
                    id=new_id(),
                    user_id=self.user_id,
                    source_id=self.source_id,
                    date=date,
                    metric_type="weight",
                    value=value,
                    unit=attrs.get("unit") or "lb",
                ))
        elif record_type == STEP_COUNT:
            self.counts["steps"] += 1
        else:
            self.counts["other"] += 1

    def add_workout(self, attrs: dict[str, str], element: str) -> None:
        activity = attrs.get("workoutActivityType")
        start = attrs.get("startDate")
        if not activity or not start:
            return
        self.counts["workouts"] += 1
        self.sources[attrs.get("sourceName") or "Unknown"] = None

        statistics = [parse_attributes(m) for m in STATISTICS_RE.findall(element)]
        session = self._build_workout(attrs, statistics)
        if session is not None:
            self.workout_sessions.append(session)

    def _build_workout(self, attrs: dict[str, str], statistics: list[dict[str, str]]) -> Optional[WorkoutSession]:
        started_at = parse_apple_date(attrs.get("startDate"))
        if started_at is None:
            return None
        duration = _float(attrs.get("duration")) or 0.0
        if (attrs.get("durationUnit") or "min") == "min":
            duration *= 60
        if duration < MIN_WORKOUT_SECONDS:
            return None

        activity = attrs["workoutActivityType"]
        hr = next((s for s in statistics if s.get("type") == HEART_RATE), {})
        return WorkoutSession(
            id=new_id(),
            user_id=self.user_id,
            source_id=self.source_id,
            date=attrs["startDate"][:10],
            started_at=started_at,
            ended_at=parse_apple_date(attrs.get("endDate")),
            duration_seconds=duration,
            workout_type=map_workout_type(activity),
            workout_subtype=clean_workout_type(activity),
            calories=_float(attrs.get("totalEnergyBurned")),
            avg_heart_rate=_float(hr.get("average")),
            max_heart_rate=_float(hr.get("maximum")),
            distance=_float(attrs.get("totalDistance")),
            distance_unit=map_distance_unit(attrs.get("totalDistanceUnit")),
            vendor_data={"source": attrs.get("sourceName")},
        )

    def _build_sleep(self, date: str, source: str, segments: list[dict[str, str]]) -> Optional[SleepSession]:
        buckets = {"deep": 0.0, "rem": 0.0, "light": 0.0, "awake": 0.0, "in_bed": 0.0}
        earliest: Optional[dt.datetime] = None
        latest: Optional[dt.datetime] = None

        timed = [(parse_apple_date(s.get("startDate")), parse_apple_date(s.get("endDate")), s) for s in segments]
        timed = [(start, end, s) for start, end, s in timed if start is not None and end is not None]
        timed.sort(key=lambda t: t[0])
        for start, end, seg in timed:
            earliest = start if earliest is None or start < earliest else earliest
            latest = end if latest is None or end > latest else latest
            bucket = SLEEP_STAGE_BUCKETS.get(seg.get("value", ""))
            if bucket:
                buckets[bucket] += (end - start).total_seconds()

        if earliest is None or latest is None:
            return None

        duration = buckets["deep"] + buckets["rem"] + buckets["light"]
        if duration < MIN_SLEEP_SECONDS:
            return None
        in_bed = buckets["in_bed"] if buckets["in_bed"] > 0 else (latest - earliest).total_seconds()

        return SleepSession(
            id=new_id(),
            user_id=self.user_id,
            source_id=self.source_id,
            date=date,
            started_at=earliest,
            ended_at=latest,
            duration_seconds=duration,
            time_in_bed_seconds=in_bed,
            deep_seconds=buckets["deep"],
            rem_seconds=buckets["rem"],
            light_seconds=buckets["light"],
            awake_seconds=buckets["awake"],
            efficiency=(duration / in_bed) * 100 if in_bed > 0 else None,
            data_quality=DataQualityFlags(),
            vendor_data={"source": source, "segmentCount": len(segments)},
        )

    def finalize(self) -> TransformResult:
        """Reduce accumulated segments into sessions; the first source seen for a date wins."""
        sessions: list[SleepSession] = []
        taken: set[str] = set()
        for (date, source), segments in self.sleep_segments.items():
            if date in taken:
                continue
            session = self._build_sleep(date, source, segments)
            if session is None:
                continue
            hr = self.heart_rate_by_date.get(date)
            if hr:
                session.min_heart_rate = min(hr)
                session.avg_heart_rate = mean(hr)
                session.max_heart_rate = max(hr)
            hrv = self.hrv_by_date.get(date)
            if hrv:
                session.avg_hrv = mean(hrv)
            sessions.append(session)
            taken.add(date)

        sessions.sort(key=lambda s: s.date)
        workouts = sorted(self.workout_sessions, key=lambda w: w.date)
        return TransformResult(
            sleep_sessions=sessions,
            workout_sessions=workouts,
            daily_metrics=list(self.daily_metrics),
        )


# --------------------------- Streaming scanner ---------------------------

class AppleHealthStream:
    """Feed raw bytes chunk by chunk, then call :meth:`finish`.

    ``bytes_processed`` is the progress signal; records are not counted
    up front.
    """

    def __init__(self, source_id: str, user_id: str, tail_margin: Optional[int] = None):
        self.acc = HealthAccumulator(source_id=source_id, user_id=user_id)
        self.tail_margin = tail_margin if tail_margin is not None else get_settings().XML_TAIL_MARGIN
        self.bytes_processed = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> None:
        self.bytes_processed += len(chunk)
        self._buffer += self._decoder.decode(chunk)
        consumed = self._scan()
        safe_point = max(consumed, len(self._buffer) - self.tail_margin)
        self._buffer = self._buffer[safe_point:]

    def finish(self) -> TransformResult:
        self._buffer += self._decoder.decode(b"", final=True)
        self._scan()
        self._buffer = ""
        result = self.acc.finalize()
        logger.info(
            "apple_health_parsed",
            bytes=self.bytes_processed,
            counts=self.acc.counts,
            sources=len(self.acc.sources),
            sleep_sessions=len(result.sleep_sessions),
            workouts=len(result.workout_sessions),
        )
        return result

    @property
    def sources(self) -> list[str]:
        return list(self.acc.sources)

    def _scan(self) -> int:
        """Consume complete elements; return the offset after the last one."""
        last_end = 0
        for m in RECORD_RE.finditer(self._buffer):
            self.acc.add_record(parse_attributes(m.group(1)))
            last_end = max(last_end, m.end())
        for m in WORKOUT_RE.finditer(self._buffer):
            self.acc.add_workout(parse_attributes(m.group(1)), m.group(0))
            last_end = max(last_end, m.end())
        return last_end


def iter_xml_chunks(
    chunks: Iterable[bytes],
    source_id: str,
    user_id: str,
    *,
    total_bytes: Optional[int] = None,
    cancel: Optional[CancelFlag] = None,
    tail_margin: Optional[int] = None,
) -> Generator[tuple[int, int], None, tuple[TransformResult, list[str]]]:
    """Stream *chunks*, yielding ``(bytes_processed, total_bytes)`` after each one.

    Returns the records and the names of the devices/apps that wrote them.
    """
    stream = AppleHealthStream(source_id, user_id, tail_margin=tail_margin)
    for chunk in chunks:
        check_cancel(cancel)
        stream.feed(chunk)
        yield stream.bytes_processed, total_bytes or 0
    return stream.finish(), stream.sources


def parse_xml_chunks(
    chunks: Iterable[bytes],
    source_id: str,
    user_id: str,
    *,
    total_bytes: Optional[int] = None,
    on_progress: Optional[RowProgress] = None,
    cancel: Optional[CancelFlag] = None,
    tail_margin: Optional[int] = None,
) -> tuple[TransformResult, list[str]]:
    steps = iter_xml_chunks(
        chunks, source_id, user_id, total_bytes=total_bytes, cancel=cancel, tail_margin=tail_margin,
    )
    return run_steps(steps, on_progress if total_bytes else None)


def note_sources(result: TransformResult, sources: list[str]) -> TransformResult:
    if sources:
        result.warnings.append(ImportWarning(
            kind=WarningKind.DUPLICATE,
            message=f"Found data from {len(sources)} sources: {', '.join(sources)}",
        ))
    return result


# --------------------------- Pre-parsed JSON ---------------------------

def is_pre_parsed(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and isinstance(data.get("sleepSessions"), list)
        and isinstance(data.get("workoutSessions"), list)
        and "sources" in data
    )


def _rehome(record: Any, source_id: str, user_id: str):
    record.source_id = source_id
    record.user_id = user_id
    if not record.id:
        record.id = new_id()
    return record


def from_pre_parsed(data: dict, source_id: str, user_id: str) -> TransformResult:
    """Rebuild canonical records from a JSON snapshot, re-homed onto *source_id*/*user_id*."""
    result = TransformResult()
    for kind, cls, target in (
        ("sleepSessions", SleepSession, result.sleep_sessions),
        ("workoutSessions", WorkoutSession, result.workout_sessions),
        ("dailyMetrics", DailyMetric, result.daily_metrics),
    ):
        for i, raw in enumerate(data.get(kind) or []):
            try:
                raw = {"id": "", "userId": user_id, "sourceId": source_id, **raw}
                target.append(_rehome(cls.from_dict(raw), source_id, user_id))
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning("pre_parsed_record_skipped", kind=kind, index=i, error=str(e))
                result.warnings.append(ImportWarning(
                    kind=WarningKind.PARSE_ERROR,
                    message=f"Failed to read {kind}[{i}]: {e}",
                    record_index=i,
                ))

    names = [str(s) for s in (data.get("sources") or [])]
    suffix = "..." if len(names) > 5 else ""
    result.warnings.insert(0, ImportWarning(
        kind=WarningKind.DUPLICATE,
        message=f"Imported data from {len(names)} sources: {', '.join(names[:5])}{suffix}",
    ))
    return result


# --------------------------- Parser ---------------------------

class AppleHealthParser(VendorParser):
    """Accepts XML as text/bytes or a pre-parsed JSON snapshot (dict)."""

    vendor = VendorType.APPLE_HEALTH

    def iter_parse(
        self,
        data: Any,
        source_id: str,
        user_id: str,
        *,
        profile: Optional[ImporterProfile] = None,
        cancel: Optional[CancelFlag] = None,
    ) -> ParseSteps:
        if is_pre_parsed(data):
            return from_pre_parsed(data, source_id, user_id)

        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        size = get_settings().XML_CHUNK_SIZE
        chunks = (raw[i:i + size] for i in range(0, len(raw), size))
        result, sources = yield from iter_xml_chunks(chunks, source_id, user_id, total_bytes=len(raw), cancel=cancel)
        return note_sources(result, sources)
