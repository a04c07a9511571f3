from __future__ import annotations

import dataclasses
import datetime as dt
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Iterator, List, Optional


# --------------------------- Enums ---------------------------

class VendorType(str, Enum):
    EIGHT_SLEEP = "eight_sleep"
    OURA = "oura"
    ORANGETHEORY = "orangetheory"
    WHOOP = "whoop"
    APPLE_HEALTH = "apple_health"
    GARMIN = "garmin"
    FITBIT = "fitbit"
    GENERIC_CSV = "generic_csv"
    GENERIC_JSON = "generic_json"
    UNKNOWN = "unknown"


class WorkoutType(str, Enum):
    CARDIO = "cardio"
    STRENGTH = "strength"
    HIIT = "hiit"
    YOGA = "yoga"
    CYCLING = "cycling"
    RUNNING = "running"
    SWIMMING = "swimming"
    WALKING = "walking"
    SPORTS = "sports"
    OTHER = "other"


class FileType(str, Enum):
    JSON = "json"
    CSV = "csv"
    XML = "xml"
    ZIP = "zip"
    UNKNOWN = "unknown"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class WarningKind(str, Enum):
    MISSING_FIELD = "missing_field"
    OUTLIER = "outlier"
    PARSE_ERROR = "parse_error"
    DUPLICATE = "duplicate"


class ErrorKind(str, Enum):
    INVALID_FORMAT = "invalid_format"
    UNSUPPORTED_VENDOR = "unsupported_vendor"
    PARSE_ERROR = "parse_error"
    STORAGE_ERROR = "storage_error"
    CANCELLED = "cancelled"


class ImportStage(str, Enum):
    DETECTING = "detecting"
    PARSING = "parsing"
    TRANSFORMING = "transforming"
    VALIDATING = "validating"
    STORING = "storing"
    COMPLETE = "complete"


# --------------------------- Serialization helpers ---------------------------

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def snake_case(name: str) -> str:
    """``timeInBedSeconds`` -> ``time_in_bed_seconds``; ``zone1Minutes`` -> ``zone1_minutes``."""
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def _dump(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dt.datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return value.to_dict()  # type: ignore[union-attr]
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return value


def _load_datetime(value: Any) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        moment = value
    else:
        moment = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return moment


class RecordMixin:
    """Dict round-trip shared by the stored record types.

    ``from_dict`` accepts both snake_case and the camelCase keys used by
    the app's own JSON exports; unknown keys are ignored.
    """

    _datetime_fields: ClassVar[frozenset] = frozenset()
    _enum_fields: ClassVar[dict] = {}

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _dump(getattr(self, f.name)) for f in dataclasses.fields(self)}  # type: ignore[arg-type]

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        names = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = snake_case(key)
            if name not in names:
                continue
            if name in cls._datetime_fields:
                value = _load_datetime(value)
            elif name in cls._enum_fields and value is not None:
                value = cls._enum_fields[name](value)
            elif name == "data_quality" and isinstance(value, dict):
                value = DataQualityFlags.from_dict(value)
            kwargs[name] = value
        return cls(**kwargs)


# --------------------------- Canonical records ---------------------------

@dataclass
class DataQualityFlags(RecordMixin):
    is_complete: bool = True
    has_outliers: bool = False
    outlier_fields: List[str] = field(default_factory=list)
    sensor_gaps: int = 0
    manually_excluded: bool = False
    exclusion_reason: Optional[str] = None


@dataclass
class SleepSession(RecordMixin):
    id: str
    user_id: str
    source_id: str
    date: str  # YYYY-MM-DD, the night of
    started_at: Optional[dt.datetime] = None
    ended_at: Optional[dt.datetime] = None
    duration_seconds: Optional[float] = None  # time asleep
    time_in_bed_seconds: float = 0
    deep_seconds: float = 0
    rem_seconds: float = 0
    light_seconds: float = 0
    awake_seconds: float = 0
    sleep_onset_latency: Optional[float] = None
    wake_after_sleep_onset: Optional[float] = None
    efficiency: Optional[float] = None
    avg_heart_rate: Optional[float] = None
    min_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    avg_hrv: Optional[float] = None
    avg_respiratory_rate: Optional[float] = None
    avg_bed_temp_c: Optional[float] = None
    avg_room_temp_c: Optional[float] = None
    data_quality: DataQualityFlags = field(default_factory=DataQualityFlags)
    vendor_data: dict[str, Any] = field(default_factory=dict)

    _datetime_fields: ClassVar[frozenset] = frozenset({"started_at", "ended_at"})

    def as_row(self) -> List[Any]:
        # Order must match SLEEP_EXPORT_HEADER
        return [
            self.date,
            self.started_at.isoformat() if self.started_at else None,
            self.ended_at.isoformat() if self.ended_at else None,
            self.duration_seconds, self.time_in_bed_seconds,
            self.deep_seconds, self.rem_seconds, self.light_seconds, self.awake_seconds,
            self.efficiency,
            self.avg_heart_rate, self.min_heart_rate, self.avg_hrv, self.avg_respiratory_rate,
            self.data_quality.has_outliers, self.data_quality.manually_excluded,
            self.source_id,
        ]


SLEEP_EXPORT_HEADER: List[str] = [
    "date", "started_at", "ended_at",
    "duration_seconds", "time_in_bed_seconds",
    "deep_seconds", "rem_seconds", "light_seconds", "awake_seconds",
    "efficiency",
    "avg_heart_rate", "min_heart_rate", "avg_hrv", "avg_respiratory_rate",
    "has_outliers", "manually_excluded",
    "source_id",
]


@dataclass
class WorkoutSession(RecordMixin):
    id: str
    user_id: str
    source_id: str
    date: str
    started_at: Optional[dt.datetime] = None
    ended_at: Optional[dt.datetime] = None
    duration_seconds: float = 0
    workout_type: WorkoutType = WorkoutType.OTHER
    workout_subtype: Optional[str] = None
    calories: Optional[float] = None
    avg_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    avg_heart_rate_percent: Optional[float] = None
    distance: Optional[float] = None
    distance_unit: Optional[str] = None  # meters | miles | kilometers
    pace: Optional[float] = None
    elevation_gain: Optional[float] = None
    splat_points: Optional[float] = None
    zone1_minutes: Optional[float] = None
    zone2_minutes: Optional[float] = None
    zone3_minutes: Optional[float] = None
    zone4_minutes: Optional[float] = None
    zone5_minutes: Optional[float] = None
    sets: Optional[int] = None
    reps: Optional[int] = None
    volume: Optional[float] = None
    data_quality: DataQualityFlags = field(default_factory=DataQualityFlags)
    vendor_data: dict[str, Any] = field(default_factory=dict)

    _datetime_fields: ClassVar[frozenset] = frozenset({"started_at", "ended_at"})
    _enum_fields: ClassVar[dict] = {"workout_type": WorkoutType}


@dataclass
class DailyMetric(RecordMixin):
    id: str
    user_id: str
    source_id: str
    date: str
    metric_type: str  # weight, resting_heart_rate, hrv_morning, ...
    value: float
    unit: str
    data_quality: DataQualityFlags = field(default_factory=DataQualityFlags)


@dataclass
class TimeSeries(RecordMixin):
    id: str
    user_id: str
    source_id: str
    metric_type: str  # heart_rate, hrv, respiratory_rate, bed_temperature, ...
    started_at: Optional[dt.datetime]
    interval_seconds: float
    values: List[Optional[float]] = field(default_factory=list)
    gap_count: int = 0
    interpolated_count: int = 0
    session_id: Optional[str] = None

    _datetime_fields: ClassVar[frozenset] = frozenset({"started_at"})


@dataclass
class Source(RecordMixin):
    id: str
    user_id: str
    vendor: VendorType
    file_name: str
    file_hash: str
    file_size_bytes: int
    imported_at: dt.datetime
    importer_profile_id: str
    record_counts: dict[str, int] = field(default_factory=dict)

    _datetime_fields: ClassVar[frozenset] = frozenset({"imported_at"})
    _enum_fields: ClassVar[dict] = {"vendor": VendorType}


# --------------------------- Import I/O ---------------------------

@dataclass
class ImportFile:
    """A file handed to the importer, either in memory or on disk."""

    name: str
    size: int
    mime_type: str = ""
    content: bytes | str | None = None
    path: Optional[Path] = None

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str = "") -> "ImportFile":
        p = Path(path)
        return cls(name=p.name, size=p.stat().st_size, mime_type=mime_type, path=p)

    @classmethod
    def from_content(cls, name: str, content: bytes | str, mime_type: str = "") -> "ImportFile":
        size = len(content.encode("utf-8")) if isinstance(content, str) else len(content)
        return cls(name=name, size=size, mime_type=mime_type, content=content)

    def iter_chunks(self, chunk_size: int) -> Iterator[bytes]:
        if self.path is not None:
            with self.path.open("rb") as f:
                while True:
                    block = f.read(chunk_size)
                    if not block:
                        return
                    yield block
        data = self.content.encode("utf-8") if isinstance(self.content, str) else (self.content or b"")
        for start in range(0, len(data), chunk_size):
            yield data[start:start + chunk_size]

    def head(self, size: int = 64 * 1024) -> bytes:
        if self.path is not None:
            with self.path.open("rb") as f:
                return f.read(size)
        data = self.content.encode("utf-8") if isinstance(self.content, str) else (self.content or b"")
        return data[:size]

    def read_text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        raw = self.path.read_bytes() if self.path is not None else (self.content or b"")
        return raw.decode("utf-8-sig", errors="replace")


@dataclass
class ImportWarning:
    kind: WarningKind
    message: str
    record_index: Optional[int] = None
    field: Optional[str] = None


@dataclass
class ImportFailure:
    kind: ErrorKind
    message: str
    details: Any = None


@dataclass
class ImportProgress:
    stage: ImportStage
    percent: float
    message: str
    records_processed: Optional[int] = None
    total_records: Optional[int] = None


@dataclass
class RecordCounts:
    sleep_sessions: int = 0
    workout_sessions: int = 0
    daily_metrics: int = 0
    time_series: int = 0


@dataclass
class QualitySummary:
    good: int = 0
    warning: int = 0
    bad: int = 0


@dataclass
class ImportResult:
    success: bool
    source_id: str
    vendor: VendorType
    record_counts: RecordCounts = field(default_factory=RecordCounts)
    warnings: List[ImportWarning] = field(default_factory=list)
    errors: List[ImportFailure] = field(default_factory=list)
    quality_summary: QualitySummary = field(default_factory=QualitySummary)


@dataclass
class TransformResult:
    """What every parser / transformer hands back to the pipeline."""

    sleep_sessions: List[SleepSession] = field(default_factory=list)
    workout_sessions: List[WorkoutSession] = field(default_factory=list)
    daily_metrics: List[DailyMetric] = field(default_factory=list)
    time_series: List[TimeSeries] = field(default_factory=list)
    warnings: List[ImportWarning] = field(default_factory=list)
