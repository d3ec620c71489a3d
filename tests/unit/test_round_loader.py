"""Unit tests for the round orchestrator, with a mocked connection."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from f1db_etl.import_round_csv import (
    INPUT_FILES,
    ROUND_STAGES,
    SPRINT_STAGES,
    STATE_ABORTED,
    STATE_COMMITTED,
    STATE_ROLLED_BACK,
    LoadConfig,
    RunProgress,
    _stages_for,
    run_round,
)
from f1db_etl.shared import DecodeError, ResourceNotFoundError, RunCounters


ONE_ROW_FILES = {
    "lap_times.csv": "driver_id,lap,position,time\n1,1,1,1:23.456\n",
    "pit_stops.csv": "driver_id,stop,lap,time,duration\n1,1,14,14:05:09,23.456\n",
    "qualifying.csv": "driver_id,constructor_id,position,number,q1,q2,q3\n1,131,1,44,1:31.000,,\n",
    "results.csv": (
        "driver_id,constructor_id,driver_number,position,grid,position_text,"
        "position_order,points,laps,time,milliseconds,fastest_lap,"
        "fastest_lap_time,rank,fastest_lap_speed\n"
        "1,131,44,1,2,1,1,25,58,,,,,,\n"
    ),
    "driver_standings.csv": "driver_id,points,position,position_text,wins\n1,25,1,1,1\n",
    "constructor_standings.csv": "constructor_id,points,position,position_text,wins\n131,25,1,1,1\n",
    "constructor_results.csv": "constructor_id,points\n131,25\n",
}


def _write_inputs(root: Path, overrides: dict[str, str | None] | None = None) -> Path:
    files = dict(ONE_ROW_FILES)
    files.update(overrides or {})
    for name, body in files.items():
        if body is not None:
            (root / name).write_text(body, encoding="utf-8")
    return root


def _config(csv_dir: Path, **kwargs) -> LoadConfig:
    base = dict(
        db_dsn="unused", csv_dir=csv_dir, round_number=5, year=2024, is_sprint=False,
    )
    base.update(kwargs)
    return LoadConfig(**base)


def _mock_conn() -> MagicMock:
    conn = MagicMock()
    conn.closed = False
    return conn


def _inserted_tables(conn: MagicMock) -> list[str]:
    tables = []
    for c in conn.execute.call_args_list:
        query = c.args[0]
        if not isinstance(query, str):
            tables.append(repr(query))
    return tables


class TestStageSelection:
    def test_input_file_names(self):
        for kind in ROUND_STAGES:
            assert INPUT_FILES[kind] == f"{kind}.csv"

    def test_round_order(self):
        assert ROUND_STAGES == (
            "lap_times", "pit_stops", "qualifying", "results",
            "driver_standings", "constructor_standings", "constructor_results",
        )

    def test_non_sprint(self, tmp_path):
        assert _stages_for(_config(tmp_path), "t") == list(ROUND_STAGES)

    def test_sprint_weekend_stage_disabled_by_default(self, tmp_path):
        assert _stages_for(_config(tmp_path, is_sprint=True), "t") == list(ROUND_STAGES)

    def test_sprint_stage_enabled(self, tmp_path):
        cfg = _config(tmp_path, is_sprint=True, sprint_stage_enabled=True)
        assert _stages_for(cfg, "t") == list(ROUND_STAGES) + list(SPRINT_STAGES)

    def test_enable_flag_alone_does_nothing(self, tmp_path):
        cfg = _config(tmp_path, is_sprint=False, sprint_stage_enabled=True)
        assert _stages_for(cfg, "t") == list(ROUND_STAGES)


class TestRunProgress:
    def test_starts_idle(self):
        assert RunProgress().state == "idle"

    def test_cannot_load_after_terminal_state(self):
        p = RunProgress()
        p.enter("lap_times")
        p.finish(STATE_COMMITTED)
        with pytest.raises(RuntimeError):
            p.enter("pit_stops")


class TestRunRound:
    def test_commits_once_after_all_stages(self, tmp_path):
        conn = _mock_conn()
        counters = RunCounters()
        progress = run_round(conn, _config(_write_inputs(tmp_path)), 42, "t", counters)

        assert progress.state == STATE_COMMITTED
        assert progress.visited == list(ROUND_STAGES)
        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        assert counters.rows_read == 7
        assert counters.rows_inserted == 7
        assert counters.stages_completed == list(ROUND_STAGES)

    def test_dry_run_rolls_back(self, tmp_path):
        conn = _mock_conn()
        progress = run_round(
            conn, _config(_write_inputs(tmp_path), dry_run=True), 42, "t", RunCounters(),
        )
        assert progress.state == STATE_ROLLED_BACK
        conn.commit.assert_not_called()
        conn.rollback.assert_called_once()

    def test_missing_file_aborts(self, tmp_path):
        conn = _mock_conn()
        counters = RunCounters()
        progress = RunProgress()
        _write_inputs(tmp_path, {"qualifying.csv": None})

        with pytest.raises(ResourceNotFoundError) as exc_info:
            run_round(conn, _config(tmp_path), 42, "t", counters, progress)

        assert exc_info.value.kind == "qualifying"
        assert progress.state == STATE_ABORTED
        assert counters.failed_stage == "qualifying"
        conn.commit.assert_not_called()
        conn.rollback.assert_called_once()

    def test_decode_error_stops_before_later_stages(self, tmp_path):
        conn = _mock_conn()
        counters = RunCounters()
        progress = RunProgress()
        bad_results = ONE_ROW_FILES["results.csv"] + "2,131,63,x,3,2,2,18,58,,,,,,\n"
        _write_inputs(tmp_path, {"results.csv": bad_results})

        with pytest.raises(DecodeError) as exc_info:
            run_round(conn, _config(tmp_path), 42, "t", counters, progress)

        assert exc_info.value.row_index == 2
        assert progress.visited == ["lap_times", "pit_stops", "qualifying", "results"]
        assert not any("driverStandings" in t for t in _inserted_tables(conn))
        conn.commit.assert_not_called()

    def test_invalid_utf8_is_decode_error_with_row(self, tmp_path):
        conn = _mock_conn()
        progress = RunProgress()
        _write_inputs(tmp_path)
        bad_row = b"2,131,63,2,3,2,2,18,58,,,,,,\xff\n"
        (tmp_path / "results.csv").write_bytes(
            ONE_ROW_FILES["results.csv"].encode("utf-8") + bad_row
        )

        with pytest.raises(DecodeError) as exc_info:
            run_round(conn, _config(tmp_path), 42, "t", RunCounters(), progress)

        err = exc_info.value
        assert err.kind == "results"
        assert err.row_index == 2
        assert err.field == "fastest_lap_speed"
        assert progress.state == STATE_ABORTED
        conn.commit.assert_not_called()


# ---------------------------------------------------------------------------
# CLI failure reporting (mocked database)
# ---------------------------------------------------------------------------

class TestCliFailures:
    @pytest.fixture
    def cli_conn(self, monkeypatch):
        conn = _mock_conn()
        conn.execute.return_value.fetchone.return_value = (42,)
        monkeypatch.setattr(
            "f1db_etl.import_round_csv.psycopg.connect", lambda *a, **kw: conn,
        )
        return conn

    def _invoke(self, csv_dir: Path, report_dir: Path):
        from click.testing import CliRunner
        from f1db_etl.import_round_csv import main

        return CliRunner().invoke(main, [
            "5", "false",
            "--db-dsn", "unused",
            "--csv-dir", str(csv_dir),
            "--run-id", "cli-fail",
            "--report-dir", str(report_dir),
        ])

    def _report(self, report_dir: Path) -> dict:
        import json

        return json.loads((report_dir / "cli-fail.json").read_text())

    def test_invalid_utf8_prints_fatal_and_writes_report(self, cli_conn, tmp_path):
        csv_dir = _write_inputs(tmp_path)
        (csv_dir / "lap_times.csv").write_bytes(b"driver_id,lap,position,time\n1,1,1,1:2\xff.456\n")

        result = self._invoke(csv_dir, tmp_path / "reports")

        assert result.exit_code == 1
        assert "FATAL: stage lap_times" in result.output
        assert "invalid UTF-8" in result.output
        report = self._report(tmp_path / "reports")
        assert report["outcome"] == STATE_ABORTED
        assert report["counters"]["failed_stage"] == "lap_times"
        cli_conn.commit.assert_not_called()

    def test_unreadable_input_prints_fatal_and_writes_report(self, cli_conn, tmp_path):
        _write_inputs(tmp_path, {"pit_stops.csv": None})
        (tmp_path / "pit_stops.csv").mkdir()

        result = self._invoke(tmp_path, tmp_path / "reports")

        assert result.exit_code == 1
        assert "FATAL: stage pit_stops: unexpected error" in result.output
        report = self._report(tmp_path / "reports")
        assert report["outcome"] == STATE_ABORTED
        assert report["counters"]["failed_stage"] == "pit_stops"
        assert report["counters"]["stages_completed"] == ["lap_times"]
        cli_conn.commit.assert_not_called()

    def test_sprint_stage_help_names_schema_requirement(self):
        from click.testing import CliRunner
        from f1db_etl.import_round_csv import main

        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "sprintLapTimes" in result.output
