from health_ingest.dedup import completeness_score, deduplicate_sessions, merge_sessions
from health_ingest.models import DataQualityFlags, SleepSession


def _sparse(id="old", date="2024-03-01", **kw):
    return SleepSession(id=id, user_id="u1", source_id="a", date=date, duration_seconds=25000, **kw)


def _rich(id="new", date="2024-03-01", **kw):
    values = dict(
        id=id,
        user_id="u1",
        source_id="b",
        date=date,
        duration_seconds=26000,
        time_in_bed_seconds=27000,
        deep_seconds=5000,
        rem_seconds=6000,
        light_seconds=15000,
        awake_seconds=1000,
        efficiency=96.3,
        min_heart_rate=48,
        avg_hrv=52,
        avg_respiratory_rate=14,
        avg_bed_temp_c=0.0,
    )
    values.update(kw)
    return SleepSession(**values)


def test_completeness_score():
    assert completeness_score(_sparse()) == 10
    assert completeness_score(_rich()) == 45
    assert completeness_score(SleepSession(id="x", user_id="u1", source_id="a", date="2024-03-01")) == 0


def test_richer_reimport_merges_into_existing_id():
    result = deduplicate_sessions([_rich()], "u1", existing=[_sparse()])

    assert result.merged_count == 1
    assert result.skipped_count == 0
    merged = result.sessions[0]
    assert merged.id == "old"
    assert merged.duration_seconds == 26000
    assert merged.avg_hrv == 52
    assert merged.deep_seconds == 5000
    assert result.id_map == {"new": "old"}


def test_thinner_reimport_is_skipped():
    result = deduplicate_sessions([_sparse(id="new")], "u1", existing=[_rich(id="old")])
    assert result.sessions == []
    assert result.skipped_count == 1
    assert result.id_map == {"new": None}


def test_identical_reimport_is_skipped():
    result = deduplicate_sessions([_rich(id="again")], "u1", existing=[_rich(id="old")])
    assert result.skipped_count == 1
    assert result.merged_count == 0


def test_new_date_is_kept_as_is():
    result = deduplicate_sessions([_rich(date="2024-03-02")], "u1", existing=[_sparse()])
    assert [s.id for s in result.sessions] == ["new"]
    assert result.id_map == {"new": "new"}


def test_other_users_are_ignored():
    other = _rich(id="theirs")
    other.user_id = "u2"
    result = deduplicate_sessions([_sparse(id="mine")], "u1", existing=[other])
    assert [s.id for s in result.sessions] == ["mine"]


def test_same_date_in_one_batch_collapses():
    result = deduplicate_sessions([_sparse(id="a"), _rich(id="b")], "u1")
    assert len(result.sessions) == 1
    assert result.sessions[0].id == "b"
    assert result.id_map == {"a": "b", "b": "b"}


def test_merge_never_loses_completeness():
    first, second = _sparse(), _rich(min_heart_rate=None, awake_seconds=0)
    merged = merge_sessions(first, second)
    assert completeness_score(merged) >= max(completeness_score(first), completeness_score(second))


def test_merge_fills_from_supplement_and_keeps_zero_temperature():
    base = _rich(avg_hrv=None, avg_room_temp_c=None)
    supplement = _sparse(avg_hrv=61, avg_room_temp_c=19.5, avg_bed_temp_c=33.0)
    merged = merge_sessions(base, supplement)
    assert merged.id == "new"
    assert merged.avg_hrv == 61
    assert merged.avg_room_temp_c == 19.5
    assert merged.avg_bed_temp_c == 0.0


def test_merge_prefers_valid_efficiency():
    merged = merge_sessions(_rich(efficiency=140), _sparse(efficiency=91))
    assert merged.efficiency == 91


def test_manual_exclusion_survives_merge():
    stored = _sparse(data_quality=DataQualityFlags(manually_excluded=True, exclusion_reason="travel"))
    result = deduplicate_sessions([_rich()], "u1", existing=[stored])
    merged = result.sessions[0]
    assert merged.id == "old"
    assert merged.data_quality.manually_excluded
    assert merged.data_quality.exclusion_reason == "travel"


def test_merged_sources_are_recorded():
    merged = merge_sessions(_rich(vendor_data={"source": "Apple Watch"}), _sparse(vendor_data={"source": "iPhone"}))
    assert merged.vendor_data["mergedSources"] == ["Apple Watch", "iPhone"]
