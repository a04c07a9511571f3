import datetime as dt

import pytest

from health_ingest.models import WorkoutType
from health_ingest.pipeline import parse_csv
from health_ingest.sources.orangetheory import (
    OrangetheoryParser,
    analyze_columns,
    build_column_map,
    classify_class,
    parse_date,
)

SCENARIO_CSV = "Date, Splat Points, Avg HR\n2024-01-15, 12, 150\n01/16/2024, 9, 145\n"


def test_two_rows_with_mixed_date_formats():
    result = OrangetheoryParser().parse(parse_csv(SCENARIO_CSV), "src", "u1")

    assert [w.date for w in result.workout_sessions] == ["2024-01-15", "2024-01-16"]
    first = result.workout_sessions[0]
    assert first.workout_type == WorkoutType.HIIT
    assert first.workout_subtype == "Orange 60"
    assert first.calories is None
    assert first.splat_points == 12
    assert first.avg_heart_rate == 150
    assert first.duration_seconds == 3600
    assert first.distance_unit == "miles"
    # no time of day in the export: anchored at 09:00 local
    assert first.started_at == dt.datetime(2024, 1, 15, 9, tzinfo=dt.timezone.utc)
    assert first.vendor_data["originalRow"]["Splat Points"] == "12"
    assert result.warnings == []


def test_duration_and_zones():
    text = "Class Date,Class Type,Duration,Calories Burned,Orange Zone\n2024-02-01,Strength 50,50 min,480,12\n"
    workout = OrangetheoryParser().parse(parse_csv(text), "src", "u1").workout_sessions[0]

    assert workout.duration_seconds == 3000
    assert workout.workout_type == WorkoutType.STRENGTH
    assert workout.calories == 480
    assert workout.zone4_minutes == 12


def test_rows_without_date_are_skipped():
    text = "Date,Splat Points\nnot a date,10\n2024-01-20,8\n"
    result = OrangetheoryParser().parse(parse_csv(text), "src", "u1")
    assert [w.date for w in result.workout_sessions] == ["2024-01-20"]


@pytest.mark.parametrize("value,expected", [
    ("2024-01-15", "2024-01-15"),
    ("2024-01-15T06:00:00", "2024-01-15"),
    ("1/16/2024", "2024-01-16"),
    ("1/16/24", "2024-01-16"),
    ("3/4/99", "1999-03-04"),
    ("15.01.2024", "2024-01-15"),
    ("Jan 15, 2024", "2024-01-15"),
    ("2024-02-30", None),
    ("soon", None),
    ("", None),
])
def test_parse_date(value, expected):
    assert parse_date(value) == expected


def test_classify_class():
    assert classify_class("Strength 50") == WorkoutType.STRENGTH
    assert classify_class("Tread 50") == WorkoutType.RUNNING
    assert classify_class("Row Power") == WorkoutType.CARDIO
    assert classify_class("Orange 60") == WorkoutType.HIIT


def test_column_map_is_case_insensitive():
    column_map = build_column_map(["DATE", "Avg HR", "Max HR", "Splats"])
    assert column_map["date"] == "DATE"
    assert column_map["avg_hr"] == "Avg HR"
    assert column_map["max_hr"] == "Max HR"
    assert column_map["splat_points"] == "Splats"


def test_analyze_columns():
    analysis = analyze_columns(["Date", "Class Type", "Calories Burned", "Workout Date"])

    assert analysis["detected_mappings"] == {
        "Date": "date",
        "Class Type": "class_type",
        "Calories Burned": "calories",
    }
    assert analysis["unmapped_headers"] == ["Workout Date"]
    assert analysis["suggestions"][0]["header"] == "Workout Date"
    assert analysis["suggestions"][0]["suggested_field"] == "date"


def test_parser_warns_on_bad_payload():
    assert OrangetheoryParser().parse({"rows": []}, "src", "u1").warnings[0].message == "Expected array of CSV rows"
    assert OrangetheoryParser().parse([], "src", "u1").warnings[0].message == "No workout data found in file"


def test_parse_csv_tabs_and_blank_lines():
    rows = parse_csv("Date\tSplat Points\n\n2024-01-15\t 7 \n")
    assert rows == [{"Date": "2024-01-15", "Splat Points": "7"}]
