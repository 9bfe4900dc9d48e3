"""Shared per-run task state guarded by a single lock.

Task loops run on their own threads and all of them write here: state
transitions, step counts, conversation context, results and surface
assignments. Every read-modify-write happens inside one critical section
on ``RunState._lock``; readers get copies.
"""

import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from device_orchestrator.core.states import (
    MAIN_SURFACE,
    Completed,
    Failed,
    Paused,
    Pending,
    Running,
    TaskState,
    WaitingForDependencies,
    is_terminal,
)
from device_orchestrator.core.tasks import TaskDefinition


@dataclass
class TaskRecord:
    task: TaskDefinition
    state: TaskState
    step_count: int = 0
    context: list[dict] = field(default_factory=list)
    result: str | None = None
    surface_id: int = MAIN_SURFACE
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def execution_time_ms(self) -> int:
        if self.started_at is None:
            return 0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return int((end - self.started_at) * 1000)


def result_text(state: TaskState) -> str:
    """Result string reported for a terminal state."""
    if isinstance(state, Completed):
        return state.message
    if isinstance(state, Failed):
        return f"Error: {state.error}"
    raise ValueError(f"Not a terminal state: {state!r}")


class RunState:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, TaskRecord] = {}
        self._surfaces: dict[str, int] = {}

    # ── Lifecycle ────────────────────────────────────────────────────────

    def reset(self, tasks: Iterable[TaskDefinition] = ()):
        """Forget everything and register ``tasks`` as not yet started."""
        with self._lock:
            self._records.clear()
            self._surfaces.clear()
            for task in tasks:
                initial = WaitingForDependencies() if task.depends_on else Pending()
                self._records[task.id] = TaskRecord(task=task, state=initial)

    def mark_started(self, task_id: str):
        with self._lock:
            self._records[task_id].started_at = time.monotonic()

    def finish(self, task_id: str, state: TaskState) -> str:
        """Record the terminal state of a task and return its result text."""
        text = result_text(state)
        with self._lock:
            record = self._records[task_id]
            record.state = state
            record.result = text
            record.finished_at = time.monotonic()
        return text

    # ── States ───────────────────────────────────────────────────────────

    def set_state(self, task_id: str, state: TaskState) -> TaskState:
        """Replace the task's state; returns the previous one."""
        with self._lock:
            record = self._records[task_id]
            previous = record.state
            if isinstance(state, (Running, Paused)):
                record.surface_id = state.surface_id
            record.state = state
            return previous

    def mark_paused(self, task_id: str, surface_id: int) -> Paused | None:
        """Atomically move an unfinished task to Paused, keeping its step count."""
        with self._lock:
            record = self._records[task_id]
            if is_terminal(record.state) or isinstance(record.state, Paused):
                return None
            record.state = Paused(surface_id, record.step_count)
            record.surface_id = surface_id
            return record.state

    def get_state(self, task_id: str) -> TaskState | None:
        with self._lock:
            record = self._records.get(task_id)
            return record.state if record else None

    def all_states(self) -> dict[str, TaskState]:
        with self._lock:
            return {tid: r.state for tid, r in self._records.items()}

    def counts(self) -> tuple[int, int, int]:
        """(active, finished, total) across registered tasks."""
        with self._lock:
            states = [r.state for r in self._records.values()]
        active = sum(1 for s in states if isinstance(s, (Running, Paused)))
        finished = sum(1 for s in states if is_terminal(s))
        return active, finished, len(states)

    # ── Steps and context ────────────────────────────────────────────────

    def record_step(self, task_id: str) -> int:
        with self._lock:
            record = self._records[task_id]
            record.step_count += 1
            return record.step_count

    def step_count(self, task_id: str) -> int:
        with self._lock:
            record = self._records.get(task_id)
            return record.step_count if record else 0

    def context(self, task_id: str) -> list[dict]:
        """The live context list; only the task's own loop may mutate it."""
        with self._lock:
            return self._records[task_id].context

    def snapshot(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            record = self._records.get(task_id)
            if record is None:
                return None
            return replace(record, context=list(record.context))

    # ── Results ──────────────────────────────────────────────────────────

    def results(self) -> dict[str, str]:
        with self._lock:
            return {
                tid: r.result for tid, r in self._records.items() if r.result is not None
            }

    def result(self, task_id: str) -> str | None:
        with self._lock:
            record = self._records.get(task_id)
            return record.result if record else None

    # ── Surfaces ─────────────────────────────────────────────────────────

    def assign_surface(self, task_id: str, surface_id: int):
        with self._lock:
            if surface_id in self._surfaces.values():
                owner = next(t for t, s in self._surfaces.items() if s == surface_id)
                raise ValueError(f"Surface {surface_id} is already assigned to task {owner}")
            self._surfaces[task_id] = surface_id

    def release_surface(self, task_id: str) -> int | None:
        with self._lock:
            return self._surfaces.pop(task_id, None)

    def assigned_surfaces(self) -> dict[str, int]:
        with self._lock:
            return dict(self._surfaces)

    def drain_surfaces(self) -> list[int]:
        """Remove and return every surface still assigned."""
        with self._lock:
            surfaces = list(self._surfaces.values())
            self._surfaces.clear()
            return surfaces
