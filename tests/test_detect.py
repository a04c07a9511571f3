import json

from health_ingest.detect import detect_file_type, json_path_values
from health_ingest.models import Confidence, FileType, ImportFile, VendorType
from health_ingest.profiles import BUILTIN_PROFILES, ImporterProfile

STAGES = [{"stage": "deep", "duration": 1800}, {"stage": "light", "duration": 9000}]


def _file(name, content):
    return ImportFile.from_content(name, content)


def _json(name, data):
    return _file(name, json.dumps(data))


def test_eight_sleep_array_and_wrapped():
    for data in ([{"ts": 1709334000, "stages": STAGES}], {"sessions": [{"ts": 1709334000, "stages": STAGES}]}):
        result = detect_file_type(_json("export.json", data))
        assert result.file_type == FileType.JSON
        assert result.suggested_vendor == VendorType.EIGHT_SLEEP
        assert result.confidence == Confidence.HIGH
        assert result.manifest["entry_count"] == 1


def test_eight_sleep_needs_stages_on_every_entry():
    data = [{"ts": 1709334000, "stages": STAGES}, {"ts": 1709420400}]
    assert detect_file_type(_json("export.json", data)).suggested_vendor == VendorType.GENERIC_JSON


def test_oura_json():
    result = detect_file_type(_json("oura.json", {"sleep": [], "daily_readiness": []}))
    assert result.suggested_vendor == VendorType.OURA
    assert result.confidence == Confidence.HIGH


def test_dashboard_export_counts_as_eight_sleep():
    data = {"sessions": [{"date": "2024-03-01", "sleepHours": 7}], "baselines": {}, "debtStats": {}}
    result = detect_file_type(_json("dashboard.json", data))
    assert result.suggested_vendor == VendorType.EIGHT_SLEEP
    assert result.confidence == Confidence.HIGH


def test_pre_parsed_apple_snapshot():
    data = {"sleepSessions": [], "workoutSessions": [], "dailyMetrics": [], "sources": ["Apple Watch"]}
    result = detect_file_type(_json("apple.json", data))
    assert result.suggested_vendor == VendorType.APPLE_HEALTH
    assert result.confidence == Confidence.HIGH


def test_unknown_json_array_is_generic_with_low_confidence():
    result = detect_file_type(_json("things.json", [{"a": 1, "b": 2}]))
    assert result.suggested_vendor == VendorType.GENERIC_JSON
    assert result.confidence == Confidence.LOW
    assert result.manifest["sample_fields"] == ["a", "b"]


def test_profile_signature_match():
    profile = ImporterProfile.model_validate({
        "id": "acme",
        "vendor": "generic_json",
        "name": "Acme",
        "filePatterns": [{"fileType": "json", "jsonSignature": "$.nights[*].sleepScore"}],
    })
    result = detect_file_type(_json("acme.json", {"nights": [{"sleepScore": 80}]}), [profile])
    assert result.matched_profile is profile
    assert result.confidence == Confidence.MEDIUM


def test_orangetheory_csv_by_header():
    result = detect_file_type(_file("workouts.csv", "Date,Splat Points,Avg HR\n2024-01-15,12,150\n"))
    assert result.file_type == FileType.CSV
    assert result.suggested_vendor == VendorType.ORANGETHEORY
    assert result.confidence == Confidence.MEDIUM
    assert result.manifest["row_count"] == 1
    assert result.manifest["sample_fields"] == ["Date", "Splat Points", "Avg HR"]


def test_orangetheory_csv_by_file_name_only_is_low():
    result = detect_file_type(_file("otf_history.csv", "a,b,c\n1,2,3\n"))
    assert result.suggested_vendor == VendorType.ORANGETHEORY
    assert result.confidence == Confidence.LOW


def test_builtin_profile_name_pattern_does_not_beat_content():
    result = detect_file_type(_file("data.csv", "a,b,c\n1,2,3\n"), list(BUILTIN_PROFILES.values()))
    assert result.suggested_vendor == VendorType.GENERIC_CSV
    assert result.matched_profile is None


def test_oura_csv():
    result = detect_file_type(_file("oura.csv", "date,readiness,hrv\n2024-01-01,80,45\n"))
    assert result.suggested_vendor == VendorType.OURA
    assert result.confidence == Confidence.MEDIUM


def test_apple_health_xml():
    xml = '<?xml version="1.0"?>\n<!DOCTYPE HealthData>\n<HealthData locale="en_US">\n</HealthData>\n'
    result = detect_file_type(_file("export.xml", xml))
    assert result.file_type == FileType.XML
    assert result.suggested_vendor == VendorType.APPLE_HEALTH
    assert result.confidence == Confidence.HIGH


def test_other_xml_uses_name_hint():
    assert detect_file_type(_file("apple_dump.xml", "<foo></foo>")).suggested_vendor == VendorType.APPLE_HEALTH
    other = detect_file_type(_file("feed.xml", "<foo></foo>"))
    assert other.file_type == FileType.XML
    assert other.suggested_vendor == VendorType.UNKNOWN


def test_zip_and_unknown():
    assert detect_file_type(_file("export.zip", b"PK\x03\x04rest-of-archive")).file_type == FileType.ZIP
    assert detect_file_type(_file("notes.txt", "hello world")).file_type == FileType.UNKNOWN
    assert detect_file_type(_file("broken.json", "{not json")).file_type == FileType.UNKNOWN


def test_detection_from_disk(tmp_path):
    path = tmp_path / "sleep.json"
    path.write_text(json.dumps([{"ts": 1709334000, "stages": STAGES}]), encoding="utf-8")
    result = detect_file_type(ImportFile.from_path(path))
    assert result.suggested_vendor == VendorType.EIGHT_SLEEP


def test_json_path_values():
    data = {"sessions": [{"stages": [{"stage": "deep"}, {"stage": "rem"}]}, {"stages": []}]}
    assert json_path_values(data, "$.sessions[*].stages[*].stage") == ["deep", "rem"]
    assert json_path_values(data, "$.sessions[1].stages[*].stage") == []
