"""Run history: stored runs, their sub-task results and phase events."""

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from device_orchestrator.core.planning import OrchestratorResult
from device_orchestrator.core.states import (
    TaskProgress,
    is_terminal,
    phase_name,
    state_name,
)
from device_orchestrator.db.engine import get_db
from device_orchestrator.db.models import Run, RunEvent, StoredResult

logger = logging.getLogger(__name__)

RUN_STATUSES = ("running", "completed", "failed", "cancelled")


def create_run(db: sqlite3.Connection, task: str) -> Run:
    """Create a new run in the 'running' state."""
    cursor = db.execute("INSERT INTO runs (task) VALUES (?)", (task,))
    run_id = cursor.lastrowid
    _log_event(db, run_id, "created", None, task)
    db.commit()
    return get_run(db, run_id)


def get_run(db: sqlite3.Connection, run_id: int) -> Run | None:
    """Get a run by ID with its sub-task results."""
    row = db.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    run = _row_to_run(row)
    run.results = get_run_results(db, run_id)
    return run


def list_runs(
    db: sqlite3.Connection,
    status: str | None = None,
    limit: int = 20,
) -> list[Run]:
    """List the most recent runs, newest first."""
    query = "SELECT * FROM runs"
    params: list = []
    if status:
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status}")
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    return [_row_to_run(r) for r in db.execute(query, params).fetchall()]


def record_event(
    db: sqlite3.Connection,
    run_id: int,
    event_type: str,
    task_id: str | None = None,
    detail: str | None = None,
):
    _log_event(db, run_id, event_type, task_id, detail)
    db.commit()


def update_phase(db: sqlite3.Connection, run_id: int, phase: str):
    db.execute("UPDATE runs SET phase = ? WHERE id = ?", (phase, run_id))
    _log_event(db, run_id, "phase", None, phase)
    db.commit()


def finish_run(db: sqlite3.Connection, run_id: int, result: OrchestratorResult) -> Run | None:
    """Store the outcome of an orchestration and close the run."""
    if result.is_cancelled:
        status = "cancelled"
    elif result.success:
        status = "completed"
    else:
        status = "failed"

    for r in result.sub_task_results:
        db.execute(
            """INSERT INTO subtask_results
               (run_id, task_id, success, result, steps_executed, surface_id, execution_time_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (run_id, r.task_id, int(r.success), r.result, r.steps_executed,
             r.surface_id, r.execution_time_ms),
        )
    db.execute(
        """UPDATE runs SET status = ?, summary = ?, flow_diagram = ?,
           completed_at = datetime('now') WHERE id = ?""",
        (status, result.summary, result.flow_diagram, run_id),
    )
    _log_event(db, run_id, "finished", None, status)
    db.commit()
    return get_run(db, run_id)


def get_run_results(db: sqlite3.Connection, run_id: int) -> list[StoredResult]:
    rows = db.execute(
        "SELECT * FROM subtask_results WHERE run_id = ? ORDER BY id",
        (run_id,),
    ).fetchall()
    return [
        StoredResult(
            id=r["id"],
            run_id=r["run_id"],
            task_id=r["task_id"],
            success=bool(r["success"]),
            result=r["result"],
            steps_executed=r["steps_executed"],
            surface_id=r["surface_id"],
            execution_time_ms=r["execution_time_ms"],
        )
        for r in rows
    ]


def get_run_events(db: sqlite3.Connection, run_id: int) -> list[RunEvent]:
    """Get the event history for a run."""
    rows = db.execute(
        "SELECT * FROM run_events WHERE run_id = ? ORDER BY id",
        (run_id,),
    ).fetchall()
    return [
        RunEvent(
            id=r["id"],
            run_id=r["run_id"],
            event_type=r["event_type"],
            task_id=r["task_id"],
            detail=r["detail"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


class PhaseRecorder:
    """Progress-bus observer that writes phase changes and task outcomes.

    Events arrive from task worker threads, so every write opens its own
    connection.
    """

    def __init__(self, db_path: Path, run_id: int):
        self.db_path = db_path
        self.run_id = run_id
        self._lock = threading.Lock()
        self._last_phase: str | None = None

    def __call__(self, event: object):
        if isinstance(event, TaskProgress):
            if is_terminal(event.state) or state_name(event.state) == "fallback":
                self._write(lambda db: record_event(
                    db, self.run_id, state_name(event.state), event.task_id, _describe(event.state),
                ))
            return

        try:
            phase = phase_name(event)
        except TypeError:
            return
        with self._lock:
            if phase == self._last_phase:
                return
            self._last_phase = phase
        self._write(lambda db: update_phase(db, self.run_id, phase))

    def _write(self, operation):
        with self._lock:
            try:
                with get_db(self.db_path) as db:
                    operation(db)
            except sqlite3.Error:
                logger.exception("Failed to record event for run %s", self.run_id)


def _describe(state) -> str | None:
    for attr in ("message", "error", "reason"):
        if hasattr(state, attr):
            return getattr(state, attr)
    return None


def _log_event(
    db: sqlite3.Connection,
    run_id: int,
    event_type: str,
    task_id: str | None,
    detail: str | None,
):
    db.execute(
        "INSERT INTO run_events (run_id, event_type, task_id, detail) VALUES (?, ?, ?, ?)",
        (run_id, event_type, task_id, detail),
    )


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        id=row["id"],
        task=row["task"],
        status=row["status"],
        phase=row["phase"] or "idle",
        summary=row["summary"],
        flow_diagram=row["flow_diagram"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
