import datetime as dt

import pytest

from health_ingest.models import DataQualityFlags, SleepSession, Source, TimeSeries, VendorType
from health_ingest.store import InMemoryStore, JsonFileStore, KeyRange, StoreError


def _session(id, date, user_id="u1"):
    return SleepSession(
        id=id,
        user_id=user_id,
        source_id="src",
        date=date,
        started_at=dt.datetime(2024, 3, 1, 23, tzinfo=dt.timezone.utc),
        duration_seconds=25200,
        data_quality=DataQualityFlags(sensor_gaps=2),
    )


def test_put_and_get_returns_a_copy():
    store = InMemoryStore()
    session = _session("s1", "2024-03-01")
    store.put("sleepSessions", session)

    loaded = store.get("sleepSessions", "s1")
    assert loaded == session
    assert loaded is not session
    assert loaded.data_quality.sensor_gaps == 2
    assert store.get("sleepSessions", "missing") is None


def test_indexes_and_ranges():
    store = InMemoryStore()
    store.put_many("sleepSessions", [
        _session("s1", "2024-03-01"),
        _session("s2", "2024-03-02"),
        _session("s3", "2024-03-05"),
        _session("x1", "2024-03-01", user_id="u2"),
    ])

    assert store.count("sleepSessions") == 4
    assert [s.id for s in store.get_by_index("sleepSessions", "userId_date", ("u1", "2024-03-01"))] == ["s1"]
    assert len(store.get_by_index("sleepSessions", "userId", "u1")) == 3
    in_range = store.get_by_index("sleepSessions", "userId_date", KeyRange(("u1", "2024-03-01"), ("u1", "2024-03-02")))
    assert sorted(s.id for s in in_range) == ["s1", "s2"]


def test_put_overwrites_by_id():
    store = InMemoryStore()
    store.put("sleepSessions", _session("s1", "2024-03-01"))
    store.put("sleepSessions", _session("s1", "2024-03-09"))
    assert store.count("sleepSessions") == 1
    assert store.get("sleepSessions", "s1").date == "2024-03-09"


def test_unknown_table_and_index():
    store = InMemoryStore()
    with pytest.raises(StoreError):
        store.get_all("nope")
    with pytest.raises(StoreError):
        store.get_by_index("sleepSessions", "byColor", "red")


def test_json_file_store_persists(tmp_path):
    path = tmp_path / "state" / "store.json"
    store = JsonFileStore(path)
    store.put("sleepSessions", _session("s1", "2024-03-01"))
    store.put("sources", Source(
        id="src",
        user_id="u1",
        vendor=VendorType.EIGHT_SLEEP,
        file_name="sleep.json",
        file_hash="abc",
        file_size_bytes=10,
        imported_at=dt.datetime(2024, 3, 2, tzinfo=dt.timezone.utc),
        importer_profile_id="eight_sleep_v1",
    ))
    store.put("timeSeries", TimeSeries(
        id="t1", user_id="u1", source_id="src", metric_type="heart_rate",
        started_at=None, interval_seconds=300, values=[50, None], session_id="s1",
    ))

    reopened = JsonFileStore(path)
    session = reopened.get("sleepSessions", "s1")
    assert session.started_at == dt.datetime(2024, 3, 1, 23, tzinfo=dt.timezone.utc)
    assert reopened.get_by_index("sources", "fileHash", "abc")[0].vendor == VendorType.EIGHT_SLEEP
    assert reopened.get_by_index("timeSeries", "sessionId", "s1")[0].values == [50, None]


def test_json_file_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{broken", encoding="utf-8")
    with pytest.raises(StoreError):
        JsonFileStore(path)
