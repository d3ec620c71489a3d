"""f1db_etl.shared

Shared pieces used by the round loader and its stages.
Includes the error taxonomy, RunCounters, the duplicate-key conflict
policy, reference lookups, and report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psycopg
from psycopg import errors

if TYPE_CHECKING:
    from f1db_etl.tables import InsertStatement


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class LoadError(Exception):
    """Base class for every failure that aborts a round load."""


class ResourceNotFoundError(LoadError):
    """Raised when an expected input CSV is missing."""

    def __init__(self, kind: str, path: Path) -> None:
        super().__init__(f"{kind}: input file not found: {str(path)!r}")
        self.kind = kind
        self.path = path


class DecodeError(LoadError):
    """Raised when a CSV row cannot be decoded into its record shape.

    row_index is the 1-based data row (header excluded); 0 means the
    header itself is unusable.
    """

    def __init__(self, kind: str, row_index: int, field: str | None, reason: str) -> None:
        where = f"row {row_index}" if row_index else "header"
        col = f" field {field!r}" if field else ""
        super().__init__(f"{kind}[{where}]{col}: {reason}")
        self.kind = kind
        self.row_index = row_index
        self.field = field
        self.reason = reason


class InsertError(LoadError):
    """Raised when the destination rejects an insert for a decoded row."""

    def __init__(self, kind: str, row_index: int, cause: psycopg.Error) -> None:
        super().__init__(f"{kind}[row {row_index}]: insert failed: {cause}")
        self.kind = kind
        self.row_index = row_index


class ReferenceLookupError(LoadError):
    """Raised when a referenced driver/constructor/race cannot be resolved."""

    def __init__(self, kind: str, value: Any) -> None:
        super().__init__(f"{kind} not found: {value!r}")
        self.kind = kind
        self.value = value


class RaceNotFoundError(ReferenceLookupError):
    def __init__(self, round_number: int, year: int) -> None:
        super().__init__("race", f"round={round_number} year={year}")
        self.round_number = round_number
        self.year = year


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_inserted: int = 0
    duplicates_skipped: int = 0
    inserted_by_entity: dict[str, int] = field(default_factory=dict)
    stages_completed: list[str] = field(default_factory=list)
    failed_stage: str | None = None

    def record_insert(self, kind: str, inserted: bool) -> None:
        if inserted:
            self.rows_inserted += 1
            self.inserted_by_entity[kind] = self.inserted_by_entity.get(kind, 0) + 1
        else:
            self.duplicates_skipped += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_inserted": self.rows_inserted,
            "duplicates_skipped": self.duplicates_skipped,
            "inserted_by_entity": dict(self.inserted_by_entity),
            "stages_completed": list(self.stages_completed),
            "failed_stage": self.failed_stage,
        }


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str | None, Any]) -> dict[str | None, Any]:
    """Return a new dict with header keys whitespace-stripped.

    The DictReader restkey (None) is kept as-is so over-long rows stay
    detectable.
    """
    return {(k.strip() if k is not None else None): v for k, v in raw.items()}


# ---------------------------------------------------------------------------
# Conflict policy
# ---------------------------------------------------------------------------

# Lap-time files are resubmitted as supersets; every other entity loads once.
DUPLICATE_TOLERANT: frozenset[str] = frozenset({"lap_times"})


def is_duplicate_key(exc: BaseException) -> bool:
    """True when exc is a uniqueness/primary-key violation (SQLSTATE 23505)."""
    return isinstance(exc, errors.UniqueViolation)


def execute_insert(
    conn: psycopg.Connection,
    statement: InsertStatement,
    tolerant: bool,
) -> bool:
    """Execute one insert under the conflict policy.

    Returns True when the row was inserted and False when a duplicate-key
    conflict was suppressed.  Tolerant inserts run inside a savepoint so the
    suppressed error does not abort the enclosing transaction.  Any other
    error propagates unchanged.
    """
    query = statement.as_sql()
    if not tolerant:
        conn.execute(query, statement.params)
        return True

    conn.execute("SAVEPOINT tolerant_insert")
    try:
        conn.execute(query, statement.params)
    except psycopg.Error as exc:
        conn.execute("ROLLBACK TO SAVEPOINT tolerant_insert")
        conn.execute("RELEASE SAVEPOINT tolerant_insert")
        if is_duplicate_key(exc):
            return False
        raise
    conn.execute("RELEASE SAVEPOINT tolerant_insert")
    return True


# ---------------------------------------------------------------------------
# Reference lookups
# ---------------------------------------------------------------------------

# Car number 1 is carried by the reigning champion; drivers.number keeps
# the driver's permanent number.
_CAR_NUMBER_REMAP = {1: 33}


def driver_number(car_number: int) -> int:
    """Map a car number as entered to drivers.number."""
    return _CAR_NUMBER_REMAP.get(car_number, car_number)


def resolve_race_id(conn: psycopg.Connection, round_number: int, year: int) -> int:
    row = conn.execute(
        'SELECT "raceId" FROM races WHERE round = %s AND year = %s',
        (round_number, year),
    ).fetchone()
    if row is None:
        raise RaceNotFoundError(round_number, year)
    return int(row[0])


def resolve_driver_id(conn: psycopg.Connection, car_number: int) -> int:
    number = driver_number(car_number)
    row = conn.execute(
        'SELECT "driverId" FROM drivers WHERE number = %s ORDER BY "driverId" ASC LIMIT 1',
        (number,),
    ).fetchone()
    if row is None:
        raise ReferenceLookupError("driver", number)
    return int(row[0])


def resolve_constructor_id(conn: psycopg.Connection, name: str) -> int:
    row = conn.execute(
        'SELECT "constructorId" FROM constructors WHERE name = %s ORDER BY "constructorId" ASC LIMIT 1',
        (name,),
    ).fetchone()
    if row is None:
        raise ReferenceLookupError("constructor", name)
    return int(row[0])


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    outcome: str,
    dry_run: bool,
    context: dict[str, Any],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "outcome": outcome,
        "dry_run": dry_run,
        **context,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
