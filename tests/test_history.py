"""Tests for stored run history."""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from device_orchestrator.core import history
from device_orchestrator.core.planning import OrchestratorResult, SubTaskResult
from device_orchestrator.core.states import (
    Analyzing,
    Completed,
    Executing,
    Failed,
    FallbackToMain,
    Running,
    TaskProgress,
)
from device_orchestrator.db.engine import get_db, init_db


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    conn = init_db(db_path)
    yield conn
    conn.close()


def _result(success=True, cancelled=False):
    return OrchestratorResult(
        success=success,
        summary="Did the thing",
        flow_diagram="```mermaid\nflowchart TB\n```\n",
        sub_task_results=[
            SubTaskResult("a", True, "ok", steps_executed=3, surface_id=1, execution_time_ms=1200),
            SubTaskResult("b", success, "done" if success else "Error: x", steps_executed=1),
        ],
        is_cancelled=cancelled,
    )


class TestEngine:
    def test_init_creates_tables(self, db):
        tables = {r[0] for r in db.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"runs", "subtask_results", "run_events"} <= tables

    def test_init_is_idempotent(self, db_path):
        init_db(db_path).close()
        conn = init_db(db_path)
        conn.close()

    def test_status_constraint(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            db.execute("INSERT INTO runs (task, status) VALUES ('x', 'exploded')")


class TestRuns:
    def test_create_run(self, db):
        run = history.create_run(db, "Set an alarm")
        assert run.id == 1
        assert run.task == "Set an alarm"
        assert run.status == "running"
        assert run.phase == "idle"
        assert run.started_at is not None
        assert run.results == []

    def test_get_missing_run(self, db):
        assert history.get_run(db, 99) is None

    def test_list_newest_first(self, db):
        history.create_run(db, "first")
        history.create_run(db, "second")
        runs = history.list_runs(db)
        assert [r.task for r in runs] == ["second", "first"]

    def test_list_by_status(self, db):
        done = history.create_run(db, "done")
        history.create_run(db, "still running")
        history.finish_run(db, done.id, _result())
        runs = history.list_runs(db, status="completed")
        assert [r.task for r in runs] == ["done"]

    def test_list_limit(self, db):
        for i in range(5):
            history.create_run(db, f"run {i}")
        assert len(history.list_runs(db, limit=2)) == 2

    def test_list_unknown_status(self, db):
        with pytest.raises(ValueError):
            history.list_runs(db, status="exploded")


class TestFinishRun:
    def test_completed(self, db):
        run = history.create_run(db, "task")
        finished = history.finish_run(db, run.id, _result())
        assert finished.status == "completed"
        assert finished.summary == "Did the thing"
        assert finished.flow_diagram.startswith("```mermaid")
        assert finished.completed_at is not None
        assert [r.task_id for r in finished.results] == ["a", "b"]
        assert finished.results[0].surface_id == 1
        assert finished.results[0].execution_time_ms == 1200

    def test_failed(self, db):
        run = history.create_run(db, "task")
        finished = history.finish_run(db, run.id, _result(success=False))
        assert finished.status == "failed"
        assert finished.results[1].success is False

    def test_cancelled(self, db):
        run = history.create_run(db, "task")
        finished = history.finish_run(db, run.id, _result(success=False, cancelled=True))
        assert finished.status == "cancelled"

    def test_to_dict(self, db):
        run = history.create_run(db, "task")
        data = history.finish_run(db, run.id, _result()).to_dict()
        assert data["status"] == "completed"
        assert data["results"][0]["task_id"] == "a"
        assert "started_at" in data


class TestEvents:
    def test_created_and_finished_events(self, db):
        run = history.create_run(db, "task")
        history.finish_run(db, run.id, _result())
        types = [e.event_type for e in history.get_run_events(db, run.id)]
        assert types == ["created", "finished"]

    def test_update_phase(self, db):
        run = history.create_run(db, "task")
        history.update_phase(db, run.id, "executing")
        assert history.get_run(db, run.id).phase == "executing"
        events = history.get_run_events(db, run.id)
        assert events[-1].event_type == "phase"
        assert events[-1].detail == "executing"


class TestPhaseRecorder:
    def test_records_phases_once(self, db_path):
        with get_db(db_path) as db:
            run = history.create_run(db, "task")
        recorder = history.PhaseRecorder(db_path, run.id)
        recorder(Analyzing("task"))
        recorder(Executing(2, 0, 2))
        recorder(Executing(1, 1, 2))
        with get_db(db_path) as db:
            phases = [e.detail for e in history.get_run_events(db, run.id) if e.event_type == "phase"]
            assert phases == ["analyzing", "executing"]
            assert history.get_run(db, run.id).phase == "executing"

    def test_records_task_outcomes(self, db_path):
        with get_db(db_path) as db:
            run = history.create_run(db, "task")
        recorder = history.PhaseRecorder(db_path, run.id)
        recorder(TaskProgress("a", Running(0, 1)))
        recorder(TaskProgress("a", FallbackToMain("No execution surface available")))
        recorder(TaskProgress("a", Completed("ok")))
        recorder(TaskProgress("b", Failed("boom")))
        with get_db(db_path) as db:
            events = [(e.event_type, e.task_id, e.detail) for e in history.get_run_events(db, run.id)]
        assert events[1:] == [
            ("fallback", "a", "No execution surface available"),
            ("completed", "a", "ok"),
            ("failed", "b", "boom"),
        ]

    def test_ignores_unknown_events(self, db_path):
        with get_db(db_path) as db:
            run = history.create_run(db, "task")
        history.PhaseRecorder(db_path, run.id)("something else")
        with get_db(db_path) as db:
            assert len(history.get_run_events(db, run.id)) == 1
