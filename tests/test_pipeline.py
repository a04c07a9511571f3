import asyncio
import datetime as dt
import hashlib
import json
import threading

import pytest

from health_ingest.models import (
    DataQualityFlags,
    ErrorKind,
    ImportFile,
    ImportStage,
    SleepSession,
    VendorType,
)
from health_ingest.pipeline import import_file
from health_ingest.profiles import ImporterProfile
from health_ingest.sources.base import ParserRegistry, VendorParser
from health_ingest.store import InMemoryStore, StoreError

from test_apple_health import EXPORT_XML
from test_generic import NIGHTS, PROFILE

TS = 1709334000  # 2024-03-01T23:00:00Z

EIGHT_SLEEP = {
    "sessions": [{
        "ts": TS,
        "stages": [
            {"stage": "deep", "duration": 1800},
            {"stage": "rem", "duration": 900},
            {"stage": "light", "duration": 10800},
            {"stage": "awake", "duration": 300},
        ],
        "timeseries": {
            "heartRate": [[TS, 52], [TS + 300, None], [TS + 600, 56]],
            "hrv": [[TS, 40], [TS + 300, 44]],
        },
    }]
}

OTF_CSV = "Date, Splat Points, Avg HR\n2024-01-15, 12, 150\n01/16/2024, 9, 145\n"


def _run(file, store, **kwargs):
    return asyncio.run(import_file(file, "u1", store=store, **kwargs))


def _eight_sleep_file():
    return ImportFile.from_content("sleep.json", json.dumps(EIGHT_SLEEP))


class _BrokenStore(InMemoryStore):
    def put_many(self, table, records):
        raise StoreError("disk full")


class _ExplodingParser(VendorParser):
    vendor = VendorType.WHOOP

    def iter_parse(self, data, source_id, user_id, *, profile=None, cancel=None):
        raise ValueError("unexpected layout")


def test_eight_sleep_import():
    store = InMemoryStore()
    progress = []
    result = _run(_eight_sleep_file(), store, on_progress=progress.append)

    assert result.success
    assert result.errors == []
    assert result.vendor == VendorType.EIGHT_SLEEP
    assert result.record_counts.sleep_sessions == 1
    assert result.record_counts.time_series == 2
    assert store.count("sleepSessions") == 1
    assert store.count("timeSeries") == 2

    session = store.get_all("sleepSessions")[0]
    assert session.date == "2024-03-01"
    assert session.duration_seconds == 13500
    assert session.data_quality.sensor_gaps == 1
    assert {ts.session_id for ts in store.get_all("timeSeries")} == {session.id}

    source = store.get("sources", result.source_id)
    assert source.importer_profile_id == "eight_sleep_v1"
    assert source.record_counts["sleepSessions"] == 1
    assert source.file_hash == hashlib.sha256(json.dumps(EIGHT_SLEEP).encode("utf-8")).hexdigest()

    percents = [p.percent for p in progress]
    assert percents == sorted(percents)
    assert progress[0].stage == ImportStage.DETECTING
    assert progress[-1].stage == ImportStage.COMPLETE
    assert progress[-1].percent == 100


def test_reimport_is_idempotent():
    store = InMemoryStore()
    _run(_eight_sleep_file(), store)
    again = _run(_eight_sleep_file(), store)

    assert again.success
    assert again.record_counts.sleep_sessions == 0
    assert again.record_counts.time_series == 0
    assert store.count("sleepSessions") == 1
    assert store.count("timeSeries") == 2
    messages = [w.message for w in again.warnings]
    assert "This file has already been imported" in messages
    assert "Skipped 1 duplicate sessions" in messages


def test_workout_csv_import_and_reimport():
    store = InMemoryStore()
    first = _run(ImportFile.from_content("workouts.csv", OTF_CSV), store)
    assert first.success
    assert first.vendor == VendorType.ORANGETHEORY
    assert first.record_counts.workout_sessions == 2
    assert sorted(w.date for w in store.get_all("workoutSessions")) == ["2024-01-15", "2024-01-16"]

    second = _run(ImportFile.from_content("workouts.csv", OTF_CSV), store)
    assert second.record_counts.workout_sessions == 0
    assert "Skipped 2 duplicate workouts" in [w.message for w in second.warnings]
    assert store.count("workoutSessions") == 2


def test_apple_health_xml_streams_in_chunks(monkeypatch, tmp_path):
    monkeypatch.setenv("XML_CHUNK_SIZE", "64")
    path = tmp_path / "export.xml"
    path.write_text(EXPORT_XML, encoding="utf-8")
    store = InMemoryStore()
    progress = []

    result = _run(ImportFile.from_path(path), store, on_progress=progress.append)

    assert result.success
    assert result.vendor == VendorType.APPLE_HEALTH
    assert result.record_counts.sleep_sessions == 1
    assert result.record_counts.workout_sessions == 1
    assert result.record_counts.daily_metrics == 1
    assert "Found data from 2 sources: Apple Watch, iPhone" in [w.message for w in result.warnings]
    assert sum(1 for p in progress if p.stage == ImportStage.TRANSFORMING) > 10


def test_generic_profile_import():
    store = InMemoryStore()
    profile = ImporterProfile.model_validate(PROFILE)
    result = _run(ImportFile.from_content("acme.json", json.dumps(NIGHTS)), store, profile=profile)

    assert result.success
    assert result.vendor == VendorType.GENERIC_JSON
    assert result.record_counts.sleep_sessions == 1
    assert store.get("sources", result.source_id).importer_profile_id == "acme_sleep"


def test_unrecognized_content_is_invalid_format():
    result = _run(ImportFile.from_content("notes.txt", "hello world"), InMemoryStore())
    assert not result.success
    assert result.errors[0].kind == ErrorKind.INVALID_FORMAT
    assert result.source_id == ""
    assert result.vendor == VendorType.UNKNOWN


def test_zip_is_invalid_format():
    result = _run(ImportFile.from_content("export.zip", b"PK\x03\x04data"), InMemoryStore())
    assert result.errors[0].kind == ErrorKind.INVALID_FORMAT


def test_json_over_hard_limit_is_rejected(monkeypatch):
    monkeypatch.setenv("HARD_LIMIT_BYTES", "100")
    result = _run(_eight_sleep_file(), InMemoryStore())
    assert result.errors[0].kind == ErrorKind.INVALID_FORMAT


def test_unknown_vendor_is_unsupported():
    store = InMemoryStore()
    generic = _run(ImportFile.from_content("rows.json", json.dumps([{"a": 1}])), store)
    assert generic.errors[0].kind == ErrorKind.UNSUPPORTED_VENDOR

    oura = _run(ImportFile.from_content("oura.json", json.dumps({"sleep": []})), store)
    assert oura.errors[0].kind == ErrorKind.UNSUPPORTED_VENDOR
    assert oura.vendor == VendorType.OURA
    assert store.count("sources") == 0


def test_parser_failure_is_parse_error():
    ParserRegistry.register(_ExplodingParser())
    try:
        profile = ImporterProfile(id="whoop", vendor=VendorType.WHOOP, name="Whoop")
        result = _run(ImportFile.from_content("whoop.json", json.dumps([{"a": 1}])), InMemoryStore(), profile=profile)
    finally:
        ParserRegistry.unregister(VendorType.WHOOP)

    assert not result.success
    assert result.errors[0].kind == ErrorKind.PARSE_ERROR
    assert "unexpected layout" in result.errors[0].message
    assert result.vendor == VendorType.WHOOP


def test_store_failure_is_storage_error():
    result = _run(_eight_sleep_file(), _BrokenStore())
    assert not result.success
    assert result.errors[0].kind == ErrorKind.STORAGE_ERROR
    assert result.errors[0].message == "disk full"
    assert result.vendor == VendorType.EIGHT_SLEEP


def test_broken_progress_callback_does_not_fail_import():
    def explode(progress):
        raise RuntimeError("ui went away")

    result = _run(_eight_sleep_file(), InMemoryStore(), on_progress=explode)
    assert result.success


@pytest.mark.parametrize("name,content", [
    ("sleep.json", json.dumps(EIGHT_SLEEP)),
    ("export.xml", EXPORT_XML),
])
def test_cancellation(name, content):
    cancel = threading.Event()
    cancel.set()
    store = InMemoryStore()

    result = _run(ImportFile.from_content(name, content), store, cancel_event=cancel)

    assert not result.success
    assert result.errors[0].kind == ErrorKind.CANCELLED
    assert store.count("sources") == 0
    assert store.count("sleepSessions") == 0


def _long_otf_csv(rows=200):
    lines = ["Date, Splat Points, Avg HR"]
    for i in range(rows):
        day = dt.date(2023, 1, 1) + dt.timedelta(days=i)
        lines.append(f"{day.isoformat()}, {i % 20}, 140")
    return ImportFile.from_content("classes.csv", "\n".join(lines) + "\n")


def test_csv_rows_yield_to_the_event_loop():
    ticks = 0
    seen = []

    async def ticker():
        nonlocal ticks
        while True:
            ticks += 1
            await asyncio.sleep(0)

    def on_progress(progress):
        if progress.stage == ImportStage.TRANSFORMING and progress.records_processed:
            seen.append(ticks)

    async def main():
        task = asyncio.create_task(ticker())
        result = await import_file(_long_otf_csv(), "u1", on_progress=on_progress, store=InMemoryStore())
        task.cancel()
        return result

    result = asyncio.run(main())
    assert result.success
    assert result.record_counts.workout_sessions == 200
    assert seen[-1] > seen[0]


def test_cancel_flag_stops_csv_mid_rows():
    cancel = threading.Event()
    store = InMemoryStore()
    rows_seen = []

    def on_progress(progress):
        if progress.records_processed:
            rows_seen.append(progress.records_processed)
            if progress.records_processed == 60:
                cancel.set()

    result = _run(_long_otf_csv(), store, on_progress=on_progress, cancel_event=cancel)

    assert result.errors[0].kind == ErrorKind.CANCELLED
    assert result.vendor == VendorType.ORANGETHEORY
    assert max(rows_seen) == 60
    assert store.count("sources") == 0
    assert store.count("workoutSessions") == 0


def test_task_cancel_interrupts_csv_rows():
    store = InMemoryStore()
    rows_seen = []

    async def main():
        task = None

        def on_progress(progress):
            if progress.records_processed:
                rows_seen.append(progress.records_processed)
                if progress.records_processed == 60:
                    task.cancel()

        task = asyncio.create_task(import_file(_long_otf_csv(), "u1", on_progress=on_progress, store=store))
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(main())
    assert max(rows_seen) < 200
    assert store.count("sources") == 0
    assert store.count("workoutSessions") == 0


def test_manual_exclusion_survives_a_richer_reimport():
    store = InMemoryStore()
    store.put("sleepSessions", SleepSession(
        id="old",
        user_id="u1",
        source_id="earlier",
        date="2024-03-01",
        duration_seconds=13000,
        data_quality=DataQualityFlags(manually_excluded=True, exclusion_reason="travel"),
    ))

    result = _run(_eight_sleep_file(), store)

    assert "Merged 1 sessions with existing data" in [w.message for w in result.warnings]
    assert store.count("sleepSessions") == 1
    merged = store.get("sleepSessions", "old")
    assert merged.duration_seconds == 13500
    assert merged.data_quality.manually_excluded
    assert merged.data_quality.exclusion_reason == "travel"
    assert len(store.get_by_index("timeSeries", "sessionId", "old")) == 2


def test_hard_limit_violation_becomes_a_warning():
    bad = json.loads(json.dumps(EIGHT_SLEEP))
    bad["sessions"][0]["timeseries"]["hrv"] = [[TS, 400], [TS + 300, 410]]
    store = InMemoryStore()
    result = _run(ImportFile.from_content("sleep.json", json.dumps(bad)), store)

    assert result.success
    assert result.quality_summary.bad == 1
    outlier = [w for w in result.warnings if w.kind.value == "outlier"]
    assert outlier[0].field == "avgHrv"
    assert store.get_all("sleepSessions")[0].data_quality.has_outliers

