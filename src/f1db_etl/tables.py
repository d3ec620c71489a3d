"""f1db_etl.tables

Static destination mapping for the f1db schema, and build_insert(), which
turns one decoded record plus its race id into a parameter-bound INSERT.

Table and column identifiers are the camelCase names of the f1db schema.
They are composed with psycopg.sql.Identifier; values only ever travel as
bound parameters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from psycopg import sql

from f1db_etl.normalize import (
    duration_millis,
    format_lap_duration,
    format_pit_stop_duration,
    format_wall_time,
)
from f1db_etl.records import DriverSprintResult

RACE_COLUMN = "raceId"


@dataclass(frozen=True)
class ResolvedSprintResult:
    """A driver sprint row with its driver and constructor ids looked up."""

    driver_id: int
    constructor_id: int
    result: DriverSprintResult


@dataclass(frozen=True)
class TableSpec:
    table: str
    columns: tuple[tuple[str, Callable[[Any], Any]], ...]

    @property
    def column_names(self) -> tuple[str, ...]:
        return (RACE_COLUMN, *(name for name, _ in self.columns))


@dataclass(frozen=True)
class InsertStatement:
    table: str
    columns: tuple[str, ...]
    params: tuple[Any, ...]

    def as_sql(self) -> sql.Composed:
        return sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            sql.Identifier(self.table),
            sql.SQL(", ").join(sql.Identifier(c) for c in self.columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in self.columns),
        )


def _attr(name: str) -> Callable[[Any], Any]:
    return lambda rec: getattr(rec, name)


def _sprint_position(text: str) -> int | None:
    return int(text) if text.isdigit() else None


_LAP_TIME_COLUMNS = (
    ("driverId", _attr("driver_id")),
    ("lap", _attr("lap")),
    ("position", _attr("position")),
    ("time", lambda r: format_lap_duration(r.time)),
    ("milliseconds", lambda r: duration_millis(r.time)),
)

_CONSTRUCTOR_RESULT_COLUMNS = (
    ("constructorId", _attr("constructor_id")),
    ("points", _attr("points")),
)


# ---------------------------------------------------------------------------
# Destination contract: one TableSpec per entity kind
# ---------------------------------------------------------------------------

TABLES: dict[str, TableSpec] = {
    "lap_times": TableSpec("lapTimes", _LAP_TIME_COLUMNS),
    "pit_stops": TableSpec("pitStops", (
        ("driverId", _attr("driver_id")),
        ("stop", _attr("stop")),
        ("lap", _attr("lap")),
        ("time", lambda r: format_wall_time(r.time)),
        ("duration", lambda r: format_pit_stop_duration(r.duration)),
        ("milliseconds", lambda r: duration_millis(r.duration)),
    )),
    "qualifying": TableSpec("qualifying", (
        ("driverId", _attr("driver_id")),
        ("constructorId", _attr("constructor_id")),
        ("number", _attr("number")),
        ("position", _attr("position")),
        ("q1", _attr("q1")),
        ("q2", _attr("q2")),
        ("q3", _attr("q3")),
    )),
    "results": TableSpec("results", (
        ("driverId", _attr("driver_id")),
        ("constructorId", _attr("constructor_id")),
        ("number", _attr("driver_number")),
        ("grid", _attr("grid")),
        ("position", _attr("position")),
        ("positionText", _attr("position_text")),
        ("positionOrder", _attr("position_order")),
        ("points", _attr("points")),
        ("laps", _attr("laps")),
        ("time", _attr("time")),
        ("milliseconds", _attr("milliseconds")),
        ("fastestLap", _attr("fastest_lap")),
        ("rank", _attr("rank")),
        ("fastestLapTime", _attr("fastest_lap_time")),
        ("fastestLapSpeed", _attr("fastest_lap_speed")),
    )),
    "driver_standings": TableSpec("driverStandings", (
        ("driverId", _attr("driver_id")),
        ("points", _attr("points")),
        ("position", _attr("position")),
        ("positionText", _attr("position_text")),
        ("wins", _attr("wins")),
    )),
    "constructor_standings": TableSpec("constructorStandings", (
        ("constructorId", _attr("constructor_id")),
        ("points", _attr("points")),
        ("position", _attr("position")),
        ("positionText", _attr("position_text")),
        ("wins", _attr("wins")),
    )),
    "constructor_results": TableSpec("constructorResults", _CONSTRUCTOR_RESULT_COLUMNS),
    # Sprint weekend stage
    "sprint_lap_times": TableSpec("sprintLapTimes", _LAP_TIME_COLUMNS),
    "constructor_sprint_results": TableSpec("constructorResults", _CONSTRUCTOR_RESULT_COLUMNS),
    "driver_sprint_results": TableSpec("sprintResults", (
        ("driverId", _attr("driver_id")),
        ("constructorId", _attr("constructor_id")),
        ("number", lambda r: r.result.no),
        ("grid", lambda r: r.result.grid),
        ("position", lambda r: _sprint_position(r.result.position)),
        ("positionText", lambda r: r.result.position),
        ("positionOrder", lambda r: r.result.position_order),
        ("points", lambda r: r.result.points),
        ("laps", lambda r: r.result.laps),
        ("time", lambda r: r.result.time),
        ("milliseconds", lambda r: r.result.milliseconds),
        ("fastestLap", lambda r: r.result.fastest_lap),
        ("fastestLapTime", lambda r: r.result.fastest_lap_time),
        ("fastestLapSpeed", lambda r: r.result.fastest_lap_speed),
    )),
}


def build_insert(kind: str, race_id: int, record: Any) -> InsertStatement:
    """Map one record of the given kind to an INSERT for its table.

    The race id always fills the first column; the remaining values follow
    the TableSpec column order.  Optional fields left as None become NULL.
    """
    spec = TABLES[kind]
    params = (race_id, *(value(record) for _, value in spec.columns))
    return InsertStatement(spec.table, spec.column_names, params)
