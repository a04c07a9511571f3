"""Import orchestration: detect -> parse -> transform -> validate -> store.

:func:`import_file` never raises.  Every failure comes back as an
:class:`~health_ingest.models.ImportResult` with ``success=False`` and one
entry in ``errors``; recoverable problems are ``warnings`` on a successful
result.  Cancelling the task that awaits it is the one exception: the
``CancelledError`` propagates and nothing is stored.

Control is handed back to the event loop between stages, after every XML
chunk and every ``ROWS_PER_YIELD`` parsed rows, so a long import does not
starve other tasks.
"""
from __future__ import annotations

import asyncio
import csv
import datetime as dt
import io
import json
from dataclasses import dataclass
from typing import Any, Callable, Generator, Optional

import structlog

from . import sources  # noqa: F401  registers the built-in parsers
from .config import Settings, get_settings
from .dedup import deduplicate_sessions
from .detect import DetectionResult, detect_file_type
from .models import (
    ErrorKind,
    FileType,
    ImportFailure,
    ImportFile,
    ImportProgress,
    ImportResult,
    ImportStage,
    ImportWarning,
    QualitySummary,
    RecordCounts,
    SleepSession,
    Source,
    TransformResult,
    VendorType,
    WarningKind,
)
from .profiles import BUILTIN_PROFILES, ImporterProfile
from .quality import (
    calculate_baselines,
    check_sleep_session_quality,
    check_workout_quality,
    generate_data_quality_flags,
    validate_session,
)
from .sources.apple_health import iter_xml_chunks, note_sources
from .sources.base import CancelFlag, ImportCancelled, ParserRegistry, VendorParser, check_cancel
from .store import JsonFileStore, RecordStore, StoreError
from .utils import format_bytes, new_id, sha256_hex

logger = structlog.get_logger()

ProgressCallback = Callable[[ImportProgress], Any]

# Percent ranges per stage; progress never moves backwards.
DETECT_PERCENT = 5
PARSE_PERCENT = 20
TRANSFORM_RANGE = (40, 70)
VALIDATE_PERCENT = 75
DEDUP_PERCENT = 85
STORE_PERCENT = 90

# Parsed rows between two hand-offs to the event loop.
ROWS_PER_YIELD = 50


class ImportAborted(Exception):
    """Internal: stop the import with a structured failure."""

    def __init__(self, kind: ErrorKind, message: str, details: Any = None):
        super().__init__(message)
        self.failure = ImportFailure(kind=kind, message=message, details=details)


# --------------------------- Helpers ---------------------------

def parse_csv(text: str) -> list[dict[str, str]]:
    """Rows as header -> stripped cell; blank lines skipped, short rows padded with ``""``."""
    lines = text.lstrip("\ufeff").splitlines()
    header_line = next((line for line in lines if line.strip()), "")
    delimiter = "\t" if header_line.count("\t") > header_line.count(",") else ","

    reader = csv.reader(io.StringIO("\n".join(lines)), delimiter=delimiter)
    rows: list[dict[str, str]] = []
    headers: Optional[list[str]] = None
    for cells in reader:
        if not any(c.strip() for c in cells):
            continue
        if headers is None:
            headers = [c.strip() for c in cells]
            continue
        rows.append({h: (cells[i].strip() if i < len(cells) else "") for i, h in enumerate(headers)})
    return rows


def _failed(
    failure: ImportFailure,
    warnings: Optional[list[ImportWarning]] = None,
    vendor: VendorType = VendorType.UNKNOWN,
) -> ImportResult:
    return ImportResult(
        success=False,
        source_id="",
        vendor=vendor,
        warnings=list(warnings or []),
        errors=[failure],
    )


def _workout_key(user_id: str, w) -> tuple:
    return (user_id, w.date, w.started_at.isoformat() if w.started_at else None, w.workout_subtype)


def _metric_key(user_id: str, m) -> tuple:
    return (user_id, m.date, m.metric_type, m.value)


@dataclass
class _Plan:
    detection: DetectionResult
    parser: VendorParser
    profile: Optional[ImporterProfile]
    vendor: VendorType
    profile_id: str


# --------------------------- Importer ---------------------------

class FileImporter:
    """One import run; holds the warning list and progress state."""

    def __init__(
        self,
        file: ImportFile,
        user_id: str,
        *,
        profile: Optional[ImporterProfile] = None,
        on_progress: Optional[ProgressCallback] = None,
        store: Optional[RecordStore] = None,
        cancel_event: Optional[CancelFlag] = None,
        settings: Optional[Settings] = None,
    ):
        self.file = file
        self.user_id = user_id
        self.profile = profile
        self.on_progress = on_progress
        self.cancel_event = cancel_event
        self.settings = settings or get_settings()
        self.store = store if store is not None else JsonFileStore(self.settings.STORE_PATH)
        self.source_id = new_id()
        self.warnings: list[ImportWarning] = []
        self.stage = ImportStage.DETECTING
        self.vendor = VendorType.UNKNOWN
        self._percent = 0.0
        self.log = logger.bind(file=file.name, user_id=user_id, source_id=self.source_id)

    # --------------------------- Progress ---------------------------

    def report(
        self,
        stage: ImportStage,
        percent: float,
        message: str,
        records_processed: Optional[int] = None,
        total_records: Optional[int] = None,
    ) -> None:
        self.stage = stage
        self._percent = max(self._percent, min(percent, 100.0))
        if self.on_progress is None:
            return
        progress = ImportProgress(stage, round(self._percent, 1), message, records_processed, total_records)
        try:
            self.on_progress(progress)
        except Exception as e:  # a broken observer must not fail the import
            self.log.warning("progress_callback_failed", stage=stage.value, error=str(e))

    def _row_progress(self, done: int, total: int) -> None:
        low, high = TRANSFORM_RANGE
        percent = low + (high - low) * (done / total if total else 1)
        self.report(ImportStage.TRANSFORMING, percent, f"Processed {done} of {total} records", done, total)

    def _byte_progress(self, done: int, total: int) -> None:
        low, high = TRANSFORM_RANGE
        percent = low + (high - low) * (done / total if total else 1)
        self.report(ImportStage.TRANSFORMING, percent, f"Parsed {format_bytes(done)} of {format_bytes(total)}")

    def _warn(self, kind: WarningKind, message: str, **kwargs: Any) -> None:
        self.warnings.append(ImportWarning(kind=kind, message=message, **kwargs))

    # --------------------------- Stages ---------------------------

    def plan(self) -> _Plan:
        self.report(ImportStage.DETECTING, DETECT_PERCENT, "Detecting file format...")
        detection = detect_file_type(self.file, [self.profile] if self.profile else None)
        self.vendor = detection.suggested_vendor

        if detection.file_type == FileType.UNKNOWN:
            raise ImportAborted(ErrorKind.INVALID_FORMAT, "Could not determine file format")
        if detection.file_type == FileType.ZIP:
            raise ImportAborted(ErrorKind.INVALID_FORMAT, "ZIP archives are not supported; extract the export first")

        profile = self.profile or detection.matched_profile
        parser: Optional[VendorParser] = None
        vendor = detection.suggested_vendor
        if profile is not None:
            parser = ParserRegistry.get(profile.vendor)
            if parser is not None and not parser.requires_profile:
                vendor = profile.vendor
            elif profile.mappings:
                fallback = VendorType.GENERIC_CSV if detection.file_type == FileType.CSV else VendorType.GENERIC_JSON
                parser = ParserRegistry.get(fallback)
                vendor = profile.vendor
            else:
                parser = None
        if parser is None and profile is None:
            parser = ParserRegistry.get(vendor)

        if parser is None or (parser.requires_profile and profile is None):
            raise ImportAborted(
                ErrorKind.UNSUPPORTED_VENDOR,
                f"No importer available for vendor '{vendor.value}'",
                details={"file_type": detection.file_type.value, "confidence": detection.confidence.value},
            )

        self.vendor = vendor
        builtin = BUILTIN_PROFILES.get(vendor.value)
        profile_id = profile.id if profile else (builtin.id if builtin else f"{vendor.value}_builtin")
        self.log.info(
            "import_planned",
            vendor=vendor.value,
            parser=type(parser).__name__,
            profile=profile_id,
            file_type=detection.file_type.value,
        )
        return _Plan(detection, parser, profile, vendor, profile_id)

    def check_size(self, file_type: FileType) -> None:
        if file_type not in (FileType.JSON, FileType.CSV):
            return
        if self.file.size > self.settings.HARD_LIMIT_BYTES:
            raise ImportAborted(
                ErrorKind.INVALID_FORMAT,
                f"File is too large to import ({format_bytes(self.file.size)}; "
                f"limit {format_bytes(self.settings.HARD_LIMIT_BYTES)})",
            )
        if self.file.size > self.settings.SOFT_LIMIT_BYTES:
            self.log.warning("large_file", size=format_bytes(self.file.size))

    async def parse(self, plan: _Plan) -> tuple[TransformResult, str]:
        """Run the parser; returns the records and the SHA-256 of the file."""
        self.report(ImportStage.PARSING, PARSE_PERCENT, f"Reading {self.file.name}...")
        file_hash = sha256_hex(self.file.iter_chunks(self.settings.XML_CHUNK_SIZE))
        await asyncio.sleep(0)

        if plan.detection.file_type == FileType.XML:
            steps = iter_xml_chunks(
                self.file.iter_chunks(self.settings.XML_CHUNK_SIZE),
                self.source_id,
                self.user_id,
                total_bytes=self.file.size,
                cancel=self.cancel_event,
                tail_margin=self.settings.XML_TAIL_MARGIN,
            )
            result, sources = await self._drive(steps, self._byte_progress, every=1)
            return note_sources(result, sources), file_hash

        text = self.file.read_text().lstrip("\ufeff")
        if plan.detection.file_type == FileType.JSON:
            try:
                data: Any = json.loads(text)
            except ValueError as e:
                raise ImportAborted(ErrorKind.PARSE_ERROR, f"Invalid JSON format: {e}") from e
        else:
            data = parse_csv(text)
        await asyncio.sleep(0)

        check_cancel(self.cancel_event)
        self.report(ImportStage.TRANSFORMING, TRANSFORM_RANGE[0], "Transforming records...")
        try:
            steps = plan.parser.iter_parse(
                data, self.source_id, self.user_id, profile=plan.profile, cancel=self.cancel_event,
            )
            result = await self._drive(steps, self._row_progress)
        except ImportCancelled:
            raise
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ImportAborted(ErrorKind.PARSE_ERROR, f"Failed to parse {self.file.name}: {e}") from e
        return result, file_hash

    async def _drive(
        self,
        steps: Generator[tuple[int, int], None, Any],
        progress: Callable[[int, int], None],
        every: int = ROWS_PER_YIELD,
    ) -> Any:
        """Run parser *steps*, reporting each one and yielding to the event loop every *every* steps."""
        count = 0
        while True:
            try:
                done, total = next(steps)
            except StopIteration as stop:
                return stop.value
            progress(done, total)
            count += 1
            if count % every == 0:
                await asyncio.sleep(0)

    def validate(self, result: TransformResult) -> QualitySummary:
        self.report(ImportStage.VALIDATING, VALIDATE_PERCENT, "Checking data quality...")
        stored = self.store.get_by_index("sleepSessions", "userId", self.user_id)
        usable = [s for s in stored if not s.data_quality.manually_excluded]
        baseline = calculate_baselines(usable) if len(usable) >= self.settings.MIN_BASELINE_SAMPLES else None

        summary = QualitySummary()
        checked: list[SleepSession] = []
        for session in result.sleep_sessions:
            session = validate_session(session)
            report = check_sleep_session_quality(session, baseline, self.settings.OUTLIER_THRESHOLD)
            session.data_quality = generate_data_quality_flags(report, existing=session.data_quality)
            setattr(summary, report.overall_quality, getattr(summary, report.overall_quality) + 1)
            if report.hard_limit_violations:
                self._warn(
                    WarningKind.OUTLIER,
                    f"Session {session.date} has values outside expected ranges",
                    field=report.hard_limit_violations[0].field,
                )
            checked.append(session)
        result.sleep_sessions = checked

        for workout in result.workout_sessions:
            report = check_workout_quality(workout)
            workout.data_quality = generate_data_quality_flags(report, existing=workout.data_quality)
            if report.hard_limit_violations:
                self._warn(
                    WarningKind.OUTLIER,
                    f"Workout {workout.date} has values outside expected ranges",
                    field=report.hard_limit_violations[0].field,
                )
        return summary

    def deduplicate(self, result: TransformResult) -> None:
        self.report(ImportStage.VALIDATING, DEDUP_PERCENT, "Checking for duplicates...")
        existing = self.store.get_by_index("sleepSessions", "userId", self.user_id)
        dedup = deduplicate_sessions(result.sleep_sessions, self.user_id, existing)
        result.sleep_sessions = dedup.sessions
        if dedup.merged_count:
            self._warn(WarningKind.DUPLICATE, f"Merged {dedup.merged_count} sessions with existing data")
        if dedup.skipped_count:
            self._warn(WarningKind.DUPLICATE, f"Skipped {dedup.skipped_count} duplicate sessions")

        series = []
        for ts in result.time_series:
            if ts.session_id in dedup.id_map:
                final_id = dedup.id_map[ts.session_id]
                if final_id is None:
                    continue
                ts.session_id = final_id
            series.append(ts)
        result.time_series = series

        seen = {_workout_key(self.user_id, w) for w in self.store.get_by_index("workoutSessions", "userId", self.user_id)}
        workouts = []
        for w in result.workout_sessions:
            key = _workout_key(self.user_id, w)
            if key not in seen:
                seen.add(key)
                workouts.append(w)
        skipped = len(result.workout_sessions) - len(workouts)
        result.workout_sessions = workouts
        if skipped:
            self._warn(WarningKind.DUPLICATE, f"Skipped {skipped} duplicate workouts")

        seen = {_metric_key(self.user_id, m) for m in self.store.get_by_index("dailyMetrics", "userId", self.user_id)}
        metrics = []
        for m in result.daily_metrics:
            key = _metric_key(self.user_id, m)
            if key not in seen:
                seen.add(key)
                metrics.append(m)
        skipped = len(result.daily_metrics) - len(metrics)
        result.daily_metrics = metrics
        if skipped:
            self._warn(WarningKind.DUPLICATE, f"Skipped {skipped} duplicate daily metrics")

    def save(self, plan: _Plan, result: TransformResult, file_hash: str) -> RecordCounts:
        self.report(ImportStage.STORING, STORE_PERCENT, "Saving to database...")
        counts = RecordCounts(
            sleep_sessions=len(result.sleep_sessions),
            workout_sessions=len(result.workout_sessions),
            daily_metrics=len(result.daily_metrics),
            time_series=len(result.time_series),
        )
        source = Source(
            id=self.source_id,
            user_id=self.user_id,
            vendor=plan.vendor,
            file_name=self.file.name,
            file_hash=file_hash,
            file_size_bytes=self.file.size,
            imported_at=dt.datetime.now(dt.timezone.utc),
            importer_profile_id=plan.profile_id,
            record_counts={
                "sleepSessions": counts.sleep_sessions,
                "workoutSessions": counts.workout_sessions,
                "dailyMetrics": counts.daily_metrics,
                "timeSeries": counts.time_series,
            },
        )
        self.store.put("sources", source)
        for table, records in (
            ("sleepSessions", result.sleep_sessions),
            ("workoutSessions", result.workout_sessions),
            ("dailyMetrics", result.daily_metrics),
            ("timeSeries", result.time_series),
        ):
            if records:
                self.store.put_many(table, records)
        return counts

    # --------------------------- Run ---------------------------

    async def run(self) -> ImportResult:
        try:
            plan = self.plan()
            self.check_size(plan.detection.file_type)
            await asyncio.sleep(0)

            result, file_hash = await self.parse(plan)
            self.warnings.extend(result.warnings)
            if self.store.get_by_index("sources", "fileHash", file_hash):
                self._warn(WarningKind.DUPLICATE, "This file has already been imported")

            check_cancel(self.cancel_event)
            summary = self.validate(result)
            await asyncio.sleep(0)
            check_cancel(self.cancel_event)
            self.deduplicate(result)
            await asyncio.sleep(0)

            check_cancel(self.cancel_event)
            counts = self.save(plan, result, file_hash)
        except ImportAborted as e:
            self.log.warning("import_failed", kind=e.failure.kind.value, error=e.failure.message)
            return _failed(e.failure, self.warnings, self.vendor)
        except ImportCancelled:
            self.log.info("import_cancelled", stage=self.stage.value)
            return _failed(ImportFailure(ErrorKind.CANCELLED, "Import cancelled"), self.warnings, self.vendor)
        except asyncio.CancelledError:
            self.log.info("import_task_cancelled", stage=self.stage.value)
            raise
        except StoreError as e:
            self.log.error("store_failed", stage=self.stage.value, error=str(e))
            return _failed(ImportFailure(ErrorKind.STORAGE_ERROR, str(e)), self.warnings, self.vendor)
        except Exception as e:
            self.log.exception("import_crashed", stage=self.stage.value)
            kind = ErrorKind.STORAGE_ERROR if self.stage == ImportStage.STORING else ErrorKind.PARSE_ERROR
            return _failed(ImportFailure(kind, f"Unknown error during import: {e}"), self.warnings, self.vendor)

        self.report(ImportStage.COMPLETE, 100, "Import complete!")
        self.log.info(
            "import_complete",
            vendor=plan.vendor.value,
            sleep=counts.sleep_sessions,
            workouts=counts.workout_sessions,
            metrics=counts.daily_metrics,
            series=counts.time_series,
            warnings=len(self.warnings),
        )
        return ImportResult(
            success=True,
            source_id=self.source_id,
            vendor=plan.vendor,
            record_counts=counts,
            warnings=self.warnings,
            quality_summary=summary,
        )


async def import_file(
    file: ImportFile,
    user_id: str,
    profile: Optional[ImporterProfile] = None,
    on_progress: Optional[ProgressCallback] = None,
    store: Optional[RecordStore] = None,
    cancel_event: Optional[CancelFlag] = None,
) -> ImportResult:
    """Import *file* for *user_id* into *store* (defaults to the configured JSON store)."""
    try:
        importer = FileImporter(
            file, user_id, profile=profile, on_progress=on_progress, store=store, cancel_event=cancel_event,
        )
    except StoreError as e:
        logger.error("store_failed", file=file.name, error=str(e))
        return _failed(ImportFailure(ErrorKind.STORAGE_ERROR, str(e)))
    return await importer.run()
