"""Data models for stored run history."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Run:
    id: int
    task: str
    status: str = "running"
    phase: str = "idle"
    summary: str | None = None
    flow_diagram: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    results: list["StoredResult"] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task": self.task,
            "status": self.status,
            "phase": self.phase,
            "summary": self.summary,
            "flow_diagram": self.flow_diagram,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class StoredResult:
    id: int | None = None
    run_id: int = 0
    task_id: str = ""
    success: bool = False
    result: str = ""
    steps_executed: int = 0
    surface_id: int = 0
    execution_time_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "success": self.success,
            "result": self.result,
            "steps_executed": self.steps_executed,
            "surface_id": self.surface_id,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class RunEvent:
    id: int | None = None
    run_id: int = 0
    event_type: str = ""
    task_id: str | None = None
    detail: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "task_id": self.task_id,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
