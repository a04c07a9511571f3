import csv
import json

from typer.testing import CliRunner

from health_ingest import SLEEP_EXPORT_HEADER
from health_ingest.cli import app
from health_ingest.store import JsonFileStore

from test_pipeline import EIGHT_SLEEP, OTF_CSV

runner = CliRunner()


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_detect(tmp_path):
    result = runner.invoke(app, ["detect", _write(tmp_path, "sleep.json", json.dumps(EIGHT_SLEEP))])
    assert result.exit_code == 0
    assert "eight_sleep" in result.output
    assert "high" in result.output


def test_import_exclude_and_quality(tmp_path, monkeypatch):
    store_path = tmp_path / "cli-store.json"
    monkeypatch.setenv("STORE_PATH", str(store_path))
    sleep_file = _write(tmp_path, "sleep.json", json.dumps(EIGHT_SLEEP))

    result = runner.invoke(app, ["import", sleep_file, "--quiet"])
    assert result.exit_code == 0, result.output
    assert "1 sleep" in result.output
    assert JsonFileStore(store_path).count("sleepSessions") == 1

    result = runner.invoke(app, ["exclude", "2024-03-01", "--reason", "travel"])
    assert result.exit_code == 0, result.output
    session = JsonFileStore(store_path).get_all("sleepSessions")[0]
    assert session.data_quality.manually_excluded

    result = runner.invoke(app, ["quality"])
    assert result.exit_code == 0
    assert "1 sessions" in result.output


def test_exclude_unknown_night_fails():
    result = runner.invoke(app, ["exclude", "2030-01-01"])
    assert result.exit_code != 0


def test_import_failure_exits_non_zero(tmp_path):
    result = runner.invoke(app, ["import", _write(tmp_path, "notes.txt", "hello world")])
    assert result.exit_code == 1
    assert "invalid_format" in result.output


def test_invalid_profile_is_rejected(tmp_path):
    data = _write(tmp_path, "rows.json", json.dumps([{"a": 1}]))
    profile = _write(tmp_path, "profile.json", json.dumps({"id": "x", "vendor": "martian", "name": "X"}))
    result = runner.invoke(app, ["import", data, "--profile", profile])
    assert result.exit_code != 0


def test_columns(tmp_path):
    result = runner.invoke(app, ["columns", _write(tmp_path, "otf.csv", OTF_CSV)])
    assert result.exit_code == 0
    assert "'Splat Points' -> splat_points" in result.output


def test_profiles_lists_builtins():
    result = runner.invoke(app, ["profiles"])
    assert result.exit_code == 0
    assert "eight_sleep_v1" in result.output


def test_export_writes_sleep_rows(tmp_path, monkeypatch):
    monkeypatch.setenv("STORE_PATH", str(tmp_path / "cli-store.json"))
    runner.invoke(app, ["import", _write(tmp_path, "sleep.json", json.dumps(EIGHT_SLEEP)), "--quiet"])
    out = tmp_path / "sleep.csv"

    result = runner.invoke(app, ["export", str(out), "--since", "2024-01-01"])
    assert result.exit_code == 0, result.output
    assert "1 sleep sessions" in result.output

    with out.open(newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == SLEEP_EXPORT_HEADER
    assert len(rows) == 2
    assert rows[1][0] == "2024-03-01"
    assert float(rows[1][SLEEP_EXPORT_HEADER.index("duration_seconds")]) == 13500

    result = runner.invoke(app, ["export", str(out), "--since", "2024-03-02"])
    assert "0 sleep sessions" in result.output


def test_export_rejects_bad_dates(tmp_path):
    result = runner.invoke(app, ["export", str(tmp_path / "x.csv"), "--since", "yesterday"])
    assert result.exit_code != 0
