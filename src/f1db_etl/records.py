"""f1db_etl.records

Record shapes for the per-round CSV snapshots, and the strict decoder that
turns one CSV stream into a generator of records.

Each shape declares its columns in a RecordShape: the CSV column, the
record attribute it fills, the cell parser, and whether the cell may be
blank.  Decoding stops at the first bad row with a DecodeError.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import time, timedelta
from typing import Any, Callable, Iterator, TextIO

from f1db_etl.normalize import (
    parse_float,
    parse_int,
    parse_lap_duration,
    parse_pit_stop_duration,
    parse_wall_time,
    trim,
)
from f1db_etl.shared import DecodeError, normalize_headers


# ---------------------------------------------------------------------------
# Record types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LapTime:
    driver_id: int
    lap: int
    position: int
    time: timedelta


@dataclass(frozen=True)
class PitStop:
    driver_id: int
    stop: int
    lap: int
    time: time
    duration: timedelta


@dataclass(frozen=True)
class QualifyingResult:
    driver_id: int
    constructor_id: int
    number: int
    position: int
    q1: str
    q2: str | None = None
    q3: str | None = None


@dataclass(frozen=True)
class RaceResult:
    driver_id: int
    constructor_id: int
    driver_number: int
    grid: int
    position: int | None
    position_text: str
    position_order: int
    points: float
    laps: int
    time: str | None = None
    milliseconds: int | None = None
    fastest_lap: int | None = None
    rank: int | None = None
    fastest_lap_time: str | None = None
    fastest_lap_speed: float | None = None


@dataclass(frozen=True)
class ConstructorResult:
    constructor_id: int
    points: float


@dataclass(frozen=True)
class DriverStanding:
    driver_id: int
    points: float
    position: int
    position_text: str
    wins: int


@dataclass(frozen=True)
class ConstructorStanding:
    constructor_id: int
    points: float
    position: int
    position_text: str
    wins: int


@dataclass(frozen=True)
class DriverSprintResult:
    no: int
    entrant: str
    grid: int
    position: str
    position_order: int
    points: float
    laps: int
    time: str | None = None
    milliseconds: int | None = None
    fastest_lap: int | None = None
    fastest_lap_time: str | None = None
    fastest_lap_speed: float | None = None


# ---------------------------------------------------------------------------
# Shape declarations
# ---------------------------------------------------------------------------

def _text(value: str | None) -> str | None:
    return trim(value)


def _cell(parser: Callable[[str], Any]) -> Callable[[str | None], Any]:
    """Adapt a str-only parser to the cell protocol (blank → None)."""
    def parse(value: str | None) -> Any:
        v = trim(value)
        return parser(v) if v is not None else None
    return parse


@dataclass(frozen=True)
class Column:
    name: str
    attr: str
    parse: Callable[[str | None], Any]
    optional: bool = False
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class RecordShape:
    kind: str
    record_type: type
    columns: tuple[Column, ...]


SHAPES: dict[str, RecordShape] = {
    "lap_times": RecordShape("lap_times", LapTime, (
        Column("driver_id", "driver_id", parse_int),
        Column("lap", "lap", parse_int),
        Column("position", "position", parse_int),
        Column("time", "time", _cell(parse_lap_duration)),
    )),
    "pit_stops": RecordShape("pit_stops", PitStop, (
        Column("driver_id", "driver_id", parse_int),
        Column("stop", "stop", parse_int),
        Column("lap", "lap", parse_int),
        Column("time", "time", _cell(parse_wall_time)),
        Column("duration", "duration", _cell(parse_pit_stop_duration)),
    )),
    "qualifying": RecordShape("qualifying", QualifyingResult, (
        Column("driver_id", "driver_id", parse_int),
        Column("constructor_id", "constructor_id", parse_int),
        Column("number", "number", parse_int),
        Column("position", "position", parse_int),
        Column("q1", "q1", _text),
        Column("q2", "q2", _text, optional=True),
        Column("q3", "q3", _text, optional=True),
    )),
    "results": RecordShape("results", RaceResult, (
        Column("driver_id", "driver_id", parse_int),
        Column("constructor_id", "constructor_id", parse_int),
        Column("driver_number", "driver_number", parse_int),
        Column("grid", "grid", parse_int),
        Column("position", "position", parse_int, optional=True),
        Column("position_text", "position_text", _text),
        Column("position_order", "position_order", parse_int),
        Column("points", "points", parse_float),
        Column("laps", "laps", parse_int),
        Column("time", "time", _text, optional=True),
        Column("milliseconds", "milliseconds", parse_int, optional=True),
        Column("fastest_lap", "fastest_lap", parse_int, optional=True),
        Column("rank", "rank", parse_int, optional=True),
        Column("fastest_lap_time", "fastest_lap_time", _text, optional=True,
               aliases=("fatest_lap_time",)),
        Column("fastest_lap_speed", "fastest_lap_speed", parse_float, optional=True),
    )),
    "constructor_results": RecordShape("constructor_results", ConstructorResult, (
        Column("constructor_id", "constructor_id", parse_int),
        Column("points", "points", parse_float),
    )),
    "driver_standings": RecordShape("driver_standings", DriverStanding, (
        Column("driver_id", "driver_id", parse_int),
        Column("points", "points", parse_float),
        Column("position", "position", parse_int),
        Column("position_text", "position_text", _text),
        Column("wins", "wins", parse_int),
    )),
    "constructor_standings": RecordShape("constructor_standings", ConstructorStanding, (
        Column("constructor_id", "constructor_id", parse_int),
        Column("points", "points", parse_float),
        Column("position", "position", parse_int),
        Column("position_text", "position_text", _text),
        Column("wins", "wins", parse_int),
    )),
    "driver_sprint_results": RecordShape("driver_sprint_results", DriverSprintResult, (
        Column("no", "no", parse_int),
        Column("entrant", "entrant", _text),
        Column("grid", "grid", parse_int),
        Column("position", "position", _text),
        Column("positionOrder", "position_order", parse_int),
        Column("points", "points", parse_float),
        Column("laps", "laps", parse_int),
        Column("time", "time", _text, optional=True),
        Column("milliseconds", "milliseconds", parse_int, optional=True),
        Column("fastestLap", "fastest_lap", parse_int, optional=True),
        Column("fastestLapTime", "fastest_lap_time", _text, optional=True),
        Column("fastestLapSpeed", "fastest_lap_speed", parse_float, optional=True),
    )),
}

# Sprint stages reuse the race shapes.
SHAPES["sprint_lap_times"] = RecordShape(
    "sprint_lap_times", LapTime, SHAPES["lap_times"].columns,
)
SHAPES["constructor_sprint_results"] = RecordShape(
    "constructor_sprint_results", ConstructorResult, SHAPES["constructor_results"].columns,
)


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

def _resolve_header(shape: RecordShape, headers: set[str]) -> dict[str, str]:
    """Map each column name to the header actually present in the file."""
    resolved: dict[str, str] = {}
    for col in shape.columns:
        for candidate in (col.name, *col.aliases):
            if candidate in headers:
                resolved[col.name] = candidate
                break
        else:
            raise DecodeError(shape.kind, 0, col.name, "missing column")
    return resolved


def _is_utf8(text: str) -> bool:
    """False when text carries bytes smuggled in by errors="surrogateescape"."""
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _decode_row(
    shape: RecordShape,
    header_map: dict[str, str],
    row: dict[str | None, Any],
    row_index: int,
) -> Any:
    if None in row:
        raise DecodeError(shape.kind, row_index, None, "too many fields")

    for key, raw in row.items():
        if raw is not None and not _is_utf8(raw):
            raise DecodeError(shape.kind, row_index, key, "invalid UTF-8")

    values: dict[str, Any] = {}
    for col in shape.columns:
        raw = row.get(header_map[col.name])
        if raw is None:
            raise DecodeError(shape.kind, row_index, col.name, "too few fields")
        try:
            value = col.parse(raw)
        except ValueError as exc:
            raise DecodeError(shape.kind, row_index, col.name, str(exc)) from exc
        if value is None and not col.optional:
            raise DecodeError(shape.kind, row_index, col.name, "required value is blank")
        values[col.attr] = value
    return shape.record_type(**values)


def iter_records(fh: TextIO, kind: str) -> Iterator[Any]:
    """Yield one record per data row of the CSV stream fh.

    The generator is lazy and single-pass: it reads from fh as it is
    consumed and raises DecodeError at the first row that does not fit.

    Invalid UTF-8 is reported against its exact row and field when fh was
    opened with errors="surrogateescape".  A strict stream fails at the
    buffered read that hit the bad bytes, which may be earlier.
    """
    shape = SHAPES[kind]
    reader = csv.DictReader(fh)
    try:
        fieldnames = reader.fieldnames or []
    except UnicodeDecodeError as exc:
        raise DecodeError(kind, 0, None, "invalid UTF-8") from exc
    headers = {k.strip() for k in fieldnames}
    header_map = _resolve_header(shape, headers)

    rows = iter(reader)
    idx = 0
    while True:
        try:
            raw_row = next(rows)
        except StopIteration:
            return
        except UnicodeDecodeError as exc:
            raise DecodeError(kind, idx + 1, None, "invalid UTF-8") from exc
        idx += 1
        row = normalize_headers(raw_row)
        yield _decode_row(shape, header_map, row, idx)
