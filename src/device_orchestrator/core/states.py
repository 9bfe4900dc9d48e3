"""Task and orchestrator state variants, and progress snapshots."""

from dataclasses import dataclass, field
from typing import Union

MAIN_SURFACE = 0


# ── Task states ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class WaitingForDependencies:
    pass


@dataclass(frozen=True)
class Running:
    surface_id: int
    step_count: int


@dataclass(frozen=True)
class Paused:
    surface_id: int
    step_count: int


@dataclass(frozen=True)
class Completed:
    message: str


@dataclass(frozen=True)
class Failed:
    error: str


@dataclass(frozen=True)
class FallbackToMain:
    reason: str


TaskState = Union[
    Pending, WaitingForDependencies, Running, Paused, Completed, Failed, FallbackToMain
]


def is_terminal(state: TaskState) -> bool:
    return isinstance(state, (Completed, Failed))


def state_name(state: TaskState) -> str:
    """Stable lowercase name used in logs, JSON and the progress stream."""
    if isinstance(state, Pending):
        return "pending"
    if isinstance(state, WaitingForDependencies):
        return "waiting"
    if isinstance(state, Running):
        return "running"
    if isinstance(state, Paused):
        return "paused"
    if isinstance(state, Completed):
        return "completed"
    if isinstance(state, Failed):
        return "failed"
    if isinstance(state, FallbackToMain):
        return "fallback"
    raise TypeError(f"Unknown task state: {state!r}")


@dataclass(frozen=True)
class TaskProgress:
    task_id: str
    state: TaskState
    step_count: int = 0
    max_steps: int = 0
    current_thinking: str = ""
    surface_id: int = MAIN_SURFACE
    screenshot: bytes | None = None


# ── Orchestrator states ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Analyzing:
    task: str


@dataclass(frozen=True)
class Decomposing:
    analysis: object


@dataclass(frozen=True)
class Executing:
    active_tasks: int
    completed_tasks: int
    total_tasks: int


@dataclass(frozen=True)
class Deciding:
    results: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class Summarizing:
    results: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class RunCompleted:
    summary: str
    flow_diagram: str


@dataclass(frozen=True)
class RunFailed:
    error: str


OrchestratorState = Union[
    Idle, Analyzing, Decomposing, Executing, Deciding, Summarizing, RunCompleted, RunFailed
]


def phase_name(state: OrchestratorState) -> str:
    if isinstance(state, Idle):
        return "idle"
    if isinstance(state, Analyzing):
        return "analyzing"
    if isinstance(state, Decomposing):
        return "decomposing"
    if isinstance(state, Executing):
        return "executing"
    if isinstance(state, Deciding):
        return "deciding"
    if isinstance(state, Summarizing):
        return "summarizing"
    if isinstance(state, RunCompleted):
        return "completed"
    if isinstance(state, RunFailed):
        return "failed"
    raise TypeError(f"Unknown orchestrator state: {state!r}")
