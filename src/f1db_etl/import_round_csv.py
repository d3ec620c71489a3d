"""f1db_etl.import_round_csv

CLI entrypoint and transactional loader for one championship round.

Loads the per-round CSV snapshots from --csv-dir into the f1db schema in a
single transaction.  Stages run in a fixed order:

  1. lap_times              → lapTimes      (duplicate keys skipped)
  2. pit_stops              → pitStops
  3. qualifying             → qualifying
  4. results                → results
  5. driver_standings       → driverStandings
  6. constructor_standings  → constructorStandings
  7. constructor_results    → constructorResults

Any failure rolls the whole round back; the transaction is committed once,
after the last stage.

Sprint weekends (IS_SPRINT=true) with --enable-sprint-stage additionally run:

  8. constructor_race_result.csv → constructorResults
  9. sprint_laps_analysis.csv    → sprintLapTimes
 10. driver_sprint_result.csv    → sprintResults  (driver/constructor lookups)

Usage:
    python -m f1db_etl.import_round_csv 12 false \\
        --db-dsn "$F1DB_DSN" \\
        --csv-dir csv
"""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import click
import psycopg

from f1db_etl.records import iter_records
from f1db_etl.shared import (
    DUPLICATE_TOLERANT,
    InsertError,
    LoadError,
    ResourceNotFoundError,
    RunCounters,
    execute_insert,
    resolve_constructor_id,
    resolve_driver_id,
    resolve_race_id,
    write_run_report,
)
from f1db_etl.tables import ResolvedSprintResult, build_insert

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ROUND_STAGES: tuple[str, ...] = (
    "lap_times",
    "pit_stops",
    "qualifying",
    "results",
    "driver_standings",
    "constructor_standings",
    "constructor_results",
)

SPRINT_STAGES: tuple[str, ...] = (
    "constructor_sprint_results",
    "sprint_lap_times",
    "driver_sprint_results",
)

INPUT_FILES: dict[str, str] = {
    **{kind: f"{kind}.csv" for kind in ROUND_STAGES},
    "constructor_sprint_results": "constructor_race_result.csv",
    "sprint_lap_times": "sprint_laps_analysis.csv",
    "driver_sprint_results": "driver_sprint_result.csv",
}

STATE_IDLE = "idle"
STATE_LOADING = "loading"
STATE_COMMITTED = "committed"
STATE_ABORTED = "aborted"
STATE_ROLLED_BACK = "rolled_back"  # dry run


# ---------------------------------------------------------------------------
# Run configuration and progress
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoadConfig:
    """Everything a round load needs, resolved once at process start."""

    db_dsn: str
    csv_dir: Path
    round_number: int
    year: int
    is_sprint: bool
    sprint_stage_enabled: bool = False
    dry_run: bool = False


@dataclass
class RunProgress:
    """Where the loader is: idle → loading(entity)… → committed | aborted."""

    state: str = STATE_IDLE
    entity: str | None = None
    visited: list[str] = field(default_factory=list)

    def enter(self, entity: str) -> None:
        if self.state not in (STATE_IDLE, STATE_LOADING):
            raise RuntimeError(f"cannot load {entity!r} from state {self.state!r}")
        self.state = STATE_LOADING
        self.entity = entity
        self.visited.append(entity)

    def finish(self, state: str) -> None:
        self.state = state


def _input_path(csv_dir: Path, kind: str) -> Path:
    return csv_dir / INPUT_FILES[kind]


# ---------------------------------------------------------------------------
# Stage runner
# ---------------------------------------------------------------------------

def _load_stage(
    conn: psycopg.Connection,
    kind: str,
    race_id: int,
    csv_dir: Path,
    run_id: str,
    counters: RunCounters,
    prepare: Callable[[Any], Any] | None = None,
) -> None:
    """Decode one CSV and insert every row.  Caller manages the transaction.

    prepare, when given, turns a decoded record into the value build_insert
    expects (used for lookups).
    """
    path = _input_path(csv_dir, kind)
    tolerant = kind in DUPLICATE_TOLERANT

    try:
        fh = path.open(encoding="utf-8-sig", errors="surrogateescape", newline="")
    except FileNotFoundError as exc:
        raise ResourceNotFoundError(kind, path) from exc

    inserted_before = counters.inserted_by_entity.get(kind, 0)
    skipped_before = counters.duplicates_skipped
    with fh:
        for idx, record in enumerate(iter_records(fh, kind), start=1):
            counters.rows_read += 1
            if prepare is not None:
                record = prepare(record)
            click.echo(f"[{run_id}] {kind}[{idx}] inserting {record}")
            statement = build_insert(kind, race_id, record)
            try:
                inserted = execute_insert(conn, statement, tolerant)
            except psycopg.Error as exc:
                raise InsertError(kind, idx, exc) from exc
            counters.record_insert(kind, inserted)
            if not inserted:
                click.echo(f"[{run_id}] {kind}[{idx}] already present; skipped")

    inserted = counters.inserted_by_entity.get(kind, 0) - inserted_before
    skipped = counters.duplicates_skipped - skipped_before
    click.echo(f"[{run_id}] {kind} inserted={inserted} skipped={skipped}")


def _sprint_result_resolver(conn: psycopg.Connection) -> Callable[[Any], ResolvedSprintResult]:
    def resolve(rec: Any) -> ResolvedSprintResult:
        return ResolvedSprintResult(
            driver_id=resolve_driver_id(conn, rec.no),
            constructor_id=resolve_constructor_id(conn, rec.entrant),
            result=rec,
        )
    return resolve


def _stages_for(config: LoadConfig, run_id: str) -> list[str]:
    stages = list(ROUND_STAGES)
    if config.is_sprint:
        if config.sprint_stage_enabled:
            stages.extend(SPRINT_STAGES)
        else:
            click.echo(f"[{run_id}] Sprint weekend: sprint stage disabled, skipping")
    return stages


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def run_round(
    conn: psycopg.Connection,
    config: LoadConfig,
    race_id: int,
    run_id: str,
    counters: RunCounters,
    progress: RunProgress | None = None,
) -> RunProgress:
    """Load every stage for race_id and commit once.

    On any failure the transaction is rolled back, progress ends in
    'aborted' and the error is re-raised.  With config.dry_run the
    completed load is rolled back instead of committed.
    """
    if progress is None:
        progress = RunProgress()
    stages = _stages_for(config, run_id)

    try:
        for kind in stages:
            progress.enter(kind)
            prepare = _sprint_result_resolver(conn) if kind == "driver_sprint_results" else None
            _load_stage(conn, kind, race_id, config.csv_dir, run_id, counters, prepare)
            counters.stages_completed.append(kind)
    except Exception:
        counters.failed_stage = progress.entity
        progress.finish(STATE_ABORTED)
        if not conn.closed:
            conn.rollback()
        raise

    if config.dry_run:
        conn.rollback()
        progress.finish(STATE_ROLLED_BACK)
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
    else:
        conn.commit()
        progress.finish(STATE_COMMITTED)
        click.echo(f"[{run_id}] Transaction committed.")
    return progress


# ---------------------------------------------------------------------------
# Main run entry point
# ---------------------------------------------------------------------------

def _run_round_import(
    run_id: str,
    started_at: str,
    config: LoadConfig,
    counters: RunCounters,
    report_dir: Path,
) -> None:
    click.echo(
        f"[{run_id}] Loading round {config.round_number} of {config.year} "
        f"from {str(config.csv_dir)!r} (sprint={config.is_sprint}, dry_run={config.dry_run})"
    )

    outcome = STATE_ABORTED
    failure: Exception | None = None
    conn = psycopg.connect(config.db_dsn, autocommit=False)
    try:
        race_id = resolve_race_id(conn, config.round_number, config.year)
        click.echo(f"[{run_id}] Resolved race_id={race_id}")
        progress = run_round(conn, config, race_id, run_id, counters)
        outcome = progress.state
    except (LoadError, psycopg.Error) as exc:
        failure = exc
        stage = counters.failed_stage or "bootstrap"
        click.echo(f"[{run_id}] FATAL: stage {stage}: {exc}", err=True)
    except Exception as exc:
        failure = exc
        stage = counters.failed_stage or "bootstrap"
        click.echo(
            f"[{run_id}] FATAL: stage {stage}: unexpected error: {type(exc).__name__}: {exc}",
            err=True,
        )
    finally:
        if not conn.closed:
            conn.rollback()
            conn.close()

    report_path = write_run_report(
        run_id, started_at, outcome, config.dry_run,
        {
            "round": config.round_number,
            "year": config.year,
            "csv_dir": str(config.csv_dir),
            "is_sprint": config.is_sprint,
        },
        counters,
        report_dir=report_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if failure is not None:
        sys.exit(1)

    click.echo(
        f"[{run_id}] Done: rows_read={counters.rows_read} "
        f"inserted={counters.rows_inserted} "
        f"duplicates_skipped={counters.duplicates_skipped}"
    )


def current_year() -> int:
    return datetime.now(timezone.utc).year


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.argument("round_number", metavar="ROUND", type=click.IntRange(min=1))
@click.argument("is_sprint", metavar="IS_SPRINT", type=click.BOOL)
@click.option(
    "--db-dsn",
    envvar="F1DB_DSN",
    required=True,
    help="PostgreSQL DSN (env: F1DB_DSN)",
)
@click.option(
    "--csv-dir",
    envvar="F1_SQL_UPDATER_CSV_FOLDER",
    default="csv",
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding the round's CSV files (env: F1_SQL_UPDATER_CSV_FOLDER)",
)
@click.option(
    "--enable-sprint-stage",
    is_flag=True,
    default=False,
    help=(
        "On sprint weekends, also load sprint results and sprint lap times. "
        "Requires the sprintLapTimes table from migrations/0001_f1db_schema.sql; "
        "a stock f1db database lacks it and the run fails with an undefined-table error."
    ),
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
)
def main(
    round_number: int,
    is_sprint: bool,
    db_dsn: str,
    csv_dir: Path,
    enable_sprint_stage: bool,
    dry_run: bool,
    run_id: str | None,
    report_dir: Path,
) -> None:
    """Load one round's CSV snapshots into f1db."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    config = LoadConfig(
        db_dsn=db_dsn,
        csv_dir=csv_dir,
        round_number=round_number,
        year=current_year(),
        is_sprint=is_sprint,
        sprint_stage_enabled=enable_sprint_stage,
        dry_run=dry_run,
    )
    _run_round_import(run_id, started_at, config, RunCounters(), report_dir)


if __name__ == "__main__":
    main()
