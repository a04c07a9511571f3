# health_ingest/cli.py
from __future__ import annotations

import asyncio
import csv
import datetime as dt
import json
from pathlib import Path
from typing import Optional

import typer
import structlog
from pydantic import ValidationError

from .config import get_settings
from .detect import detect_file_type
from .models import SLEEP_EXPORT_HEADER, ImportFile, ImportProgress, SleepSession
from .pipeline import import_file, parse_csv
from .profiles import BUILTIN_PROFILES, ImporterProfile, load_profile
from .quality import assess_data_quality, set_manual_exclusion
from .sources.orangetheory import analyze_columns
from .store import JsonFileStore, KeyRange, StoreError
from .utils import configure_logging, format_bytes

app = typer.Typer(no_args_is_help=True, help="health-ingest CLI")
log = structlog.get_logger()


# ---------- helpers ----------

@app.callback()
def main(log_level: Optional[str] = typer.Option(None, help="DEBUG|INFO|WARNING|ERROR")) -> None:
    configure_logging(log_level)


def _open_store() -> JsonFileStore:
    path = get_settings().STORE_PATH
    try:
        return JsonFileStore(path)
    except StoreError as e:
        log.error("store_open_failed", path=path, error=str(e))
        typer.echo(f"[ERR] {e}")
        raise typer.Exit(code=1)


def _load_import_file(path: Path) -> ImportFile:
    if not path.is_file():
        raise typer.BadParameter(f"file not found: {path}")
    return ImportFile.from_path(path)


def _read_profile(path: Optional[Path]) -> Optional[ImporterProfile]:
    if path is None:
        return None
    try:
        return load_profile(path)
    except (OSError, ValueError) as e:
        # pydantic.ValidationError is a ValueError subclass
        kind = "invalid profile" if isinstance(e, ValidationError) else "cannot read profile"
        raise typer.BadParameter(f"{kind} {path}: {e}")


def _print_progress(progress: ImportProgress) -> None:
    typer.echo(f"[{progress.percent:5.1f}%] {progress.stage.value}: {progress.message}")


def _parse_since(since: str) -> dt.date:
    s = since.strip().lower()
    if s.endswith("d") and s[:-1].isdigit():
        return dt.date.today() - dt.timedelta(days=int(s[:-1]))
    try:
        return dt.date.fromisoformat(s)
    except ValueError:
        raise typer.BadParameter(f"expected YYYY-MM-DD or Nd, got {since!r}")


# ---------- commands ----------

@app.command()
def detect(file: Path = typer.Argument(..., help="Export file to inspect")) -> None:
    """Show detected file type, vendor and confidence."""
    result = detect_file_type(_load_import_file(file), list(BUILTIN_PROFILES.values()))
    typer.echo(f"file_type:  {result.file_type.value}")
    typer.echo(f"vendor:     {result.suggested_vendor.value}")
    typer.echo(f"confidence: {result.confidence.value}")
    if result.matched_profile:
        typer.echo(f"profile:    {result.matched_profile.id}")
    if result.manifest:
        typer.echo(f"manifest:   {json.dumps(result.manifest, default=str)}")


@app.command("import")
def import_(
    file: Path = typer.Argument(..., help="Export file (JSON, CSV or Apple Health export.xml)"),
    user: Optional[str] = typer.Option(None, help="User id (default: USER_ID from .env)"),
    profile: Optional[Path] = typer.Option(None, help="Importer profile JSON for generic formats"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No progress output"),
) -> None:
    """Import an export file into the local store."""
    import_file_ = _load_import_file(file)
    importer_profile = _read_profile(profile)
    store = _open_store()
    user_id = user or get_settings().USER_ID

    typer.echo(f"Importing {file.name} ({format_bytes(import_file_.size)}) for {user_id}")
    result = asyncio.run(import_file(
        import_file_,
        user_id,
        profile=importer_profile,
        on_progress=None if quiet else _print_progress,
        store=store,
    ))

    for w in result.warnings:
        typer.echo(f"[WARN] {w.kind.value}: {w.message}")
    if not result.success:
        for err in result.errors:
            typer.echo(f"[ERR] {err.kind.value}: {err.message}")
        raise typer.Exit(code=1)

    c = result.record_counts
    q = result.quality_summary
    typer.echo(
        f"OK — {result.vendor.value}: {c.sleep_sessions} sleep, {c.workout_sessions} workouts, "
        f"{c.daily_metrics} metrics, {c.time_series} series (source {result.source_id})"
    )
    typer.echo(f"Quality: {q.good} good, {q.warning} warning, {q.bad} bad")


@app.command()
def quality(user: Optional[str] = typer.Option(None, help="User id (default: USER_ID from .env)")) -> None:
    """Data quality report over the stored sleep sessions."""
    store = _open_store()
    user_id = user or get_settings().USER_ID
    sessions: list[SleepSession] = store.get_by_index("sleepSessions", "userId", user_id)
    if not sessions:
        typer.echo(f"No sleep sessions stored for {user_id}.")
        return

    summary = assess_data_quality(sessions)
    typer.echo(
        f"{summary.total_sessions} sessions: {summary.good_sessions} good, "
        f"{summary.warning_sessions} warning, {summary.bad_sessions} bad"
    )
    for name, baseline in summary.baselines.items():
        if baseline.sample_size:
            typer.echo(
                f"  {name}: median {baseline.median:.1f}, MAD {baseline.mad:.1f}, "
                f"n={baseline.sample_size} (excluded {baseline.excluded_count})"
            )
    for issue, count in summary.common_issues:
        typer.echo(f"  issue: {issue} x{count}")
    if summary.outlier_dates:
        typer.echo(f"  review: {', '.join(sorted(summary.outlier_dates))}")
    for rec in summary.recommendations:
        typer.echo(f"  → {rec}")


@app.command()
def exclude(
    date: str = typer.Argument(..., help="Night to exclude, YYYY-MM-DD"),
    reason: Optional[str] = typer.Option(None, help="Why the night is excluded"),
    include: bool = typer.Option(False, "--include", help="Clear the exclusion instead"),
    user: Optional[str] = typer.Option(None, help="User id (default: USER_ID from .env)"),
) -> None:
    """Exclude (or re-include) one night from baselines."""
    store = _open_store()
    user_id = user or get_settings().USER_ID
    try:
        changed = set_manual_exclusion(store, user_id, date, excluded=not include, reason=reason)
    except StoreError as e:
        typer.echo(f"[ERR] {e}")
        raise typer.Exit(code=1)
    if not changed:
        raise typer.BadParameter(f"no sleep session stored for {date}")
    typer.echo(f"OK — {date} {'included' if include else 'excluded'} ({changed} session(s)).")


@app.command()
def columns(file: Path = typer.Argument(..., help="Orangetheory CSV export")) -> None:
    """Show how CSV headers map onto workout fields."""
    rows = parse_csv(_load_import_file(file).read_text())
    if not rows:
        raise typer.BadParameter("CSV has no data rows")
    analysis = analyze_columns(list(rows[0].keys()))
    for header, target in analysis["detected_mappings"].items():
        typer.echo(f"  {header!r} -> {target}")
    for suggestion in analysis["suggestions"]:
        typer.echo(
            f"  ? {suggestion['header']!r} might be {suggestion['suggested_field']} ({suggestion['confidence']})"
        )
    if analysis["unmapped_headers"]:
        typer.echo(f"  unmapped: {', '.join(analysis['unmapped_headers'])}")


@app.command()
def export(
    out: Path = typer.Argument(..., help="CSV file to write"),
    since: Optional[str] = typer.Option(None, help="YYYY-MM-DD or 30d"),
    until: Optional[str] = typer.Option(None, help="YYYY-MM-DD (default: today)"),
    user: Optional[str] = typer.Option(None, help="User id (default: USER_ID from .env)"),
) -> None:
    """Write stored sleep sessions to CSV, one row per night."""
    store = _open_store()
    user_id = user or get_settings().USER_ID
    first = _parse_since(since).isoformat() if since else ""
    last = _parse_since(until).isoformat() if until else dt.date.today().isoformat()

    nights = KeyRange((user_id, first), (user_id, last))
    sessions: list[SleepSession] = store.get_by_index("sleepSessions", "userId_date", nights)
    sessions.sort(key=lambda s: s.date)
    with out.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(SLEEP_EXPORT_HEADER)
        for session in sessions:
            writer.writerow(session.as_row())
    log.info("sleep_exported", path=str(out), sessions=len(sessions), since=first or None, until=last)
    typer.echo(f"OK — {len(sessions)} sleep sessions -> {out}")


@app.command()
def profiles() -> None:
    """List built-in importer profiles."""
    for p in BUILTIN_PROFILES.values():
        typer.echo(f"{p.id:<22} {p.vendor.value:<14} {p.name}")


if __name__ == "__main__":
    app()
