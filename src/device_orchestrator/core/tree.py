"""Execution tree of a run and its Mermaid rendering.

The tree is a record for the user, not an input to scheduling: the root is
the user's task and every dispatched sub-task gets one child per iteration.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from device_orchestrator.core.states import (
    MAIN_SURFACE,
    Completed,
    Failed,
    Paused,
    Running,
    TaskProgress,
)


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


STATUS_EMOJI = {
    NodeStatus.COMPLETED: "✅",
    NodeStatus.FAILED: "❌",
    NodeStatus.RUNNING: "🔄",
    NodeStatus.PENDING: "⏳",
    NodeStatus.SKIPPED: "⏭️",
}

MAX_LABEL_LENGTH = 50


@dataclass
class ExecutionNode:
    task_id: str
    description: str
    status: NodeStatus = NodeStatus.PENDING
    surface_id: int = MAIN_SURFACE
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    result: str | None = None
    children: list["ExecutionNode"] = field(default_factory=list)

    @property
    def duration(self) -> float | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "status": self.status.value,
            "surface_id": self.surface_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "result": self.result,
            "children": [c.to_dict() for c in self.children],
        }


class ExecutionTree:
    """Thread-safe tree; progress updates arrive from task worker threads."""

    def __init__(self, description: str):
        self._lock = threading.Lock()
        self.root = ExecutionNode(
            task_id="root", description=description, status=NodeStatus.RUNNING
        )
        # Children for the current iteration, keyed by task id.
        self._current: dict[str, ExecutionNode] = {}

    def add_child(self, task_id: str, description: str) -> ExecutionNode:
        """Append a node for a newly dispatched sub-task.

        A retried task gets a fresh node; the earlier one stays in the tree.
        """
        node = ExecutionNode(task_id=task_id, description=description)
        with self._lock:
            self.root.children.append(node)
            self._current[task_id] = node
        return node

    def update_from_progress(self, progress: TaskProgress):
        with self._lock:
            node = self._current.get(progress.task_id)
            if node is None or node.end_time is not None:
                return
            if isinstance(progress.state, (Running, Paused)):
                node.status = NodeStatus.RUNNING
                node.surface_id = progress.surface_id
            elif isinstance(progress.state, Completed):
                node.status = NodeStatus.COMPLETED
            elif isinstance(progress.state, Failed):
                node.status = NodeStatus.FAILED

    def finish_child(self, task_id: str, success: bool, result: str, surface_id: int | None = None):
        with self._lock:
            node = self._current.get(task_id)
            if node is None:
                return
            node.status = NodeStatus.COMPLETED if success else NodeStatus.FAILED
            node.result = result
            node.end_time = time.time()
            if surface_id is not None:
                node.surface_id = surface_id

    def skip_child(self, task_id: str, reason: str = ""):
        """Mark a dispatched task that never ran, e.g. after a stop."""
        with self._lock:
            node = self._current.get(task_id)
            if node is None or node.end_time is not None:
                return
            node.status = NodeStatus.SKIPPED
            node.result = reason or None
            node.end_time = time.time()

    def finish_root(self, success: bool, summary: str):
        with self._lock:
            self.root.status = NodeStatus.COMPLETED if success else NodeStatus.FAILED
            self.root.result = summary
            self.root.end_time = time.time()

    def children(self) -> list[ExecutionNode]:
        with self._lock:
            return list(self.root.children)

    def to_dict(self) -> dict:
        with self._lock:
            return self.root.to_dict()


# ── Rendering ────────────────────────────────────────────────────────────


def escape_label(text: str) -> str:
    escaped = text.replace('"', "'").replace("\n", " ")
    if len(escaped) > MAX_LABEL_LENGTH:
        return escaped[:MAX_LABEL_LENGTH] + "..."
    return escaped


def _style_class(status: NodeStatus) -> str:
    if status in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.RUNNING):
        return status.value
    return "pending"


def render_flow_diagram(tree: ExecutionTree | None) -> str:
    """Render the tree as a fenced Mermaid ``flowchart TB`` block."""
    if tree is None:
        return ""
    root = tree.root
    children = tree.children()

    lines = ["```mermaid", "flowchart TB"]
    lines.append(f'    root["{STATUS_EMOJI[root.status]} {escape_label(root.description)}"]')

    for i, child in enumerate(children):
        node_id = f"task_{i}"
        surface = f" [Surface #{child.surface_id}]" if child.surface_id > 0 else ""
        duration = f"{child.duration:.1f}s" if child.duration is not None else "..."
        lines.append(
            f'    {node_id}["{STATUS_EMOJI[child.status]} '
            f'{escape_label(child.description)}{surface}\\n⏱️ {duration}"]'
        )
        lines.append(f"    root --> {node_id}")
        lines.append(f"    class {node_id} {_style_class(child.status)}")

    lines.extend([
        "",
        "    classDef completed fill:#1a472a,stroke:#2ecc71,color:#fff",
        "    classDef failed fill:#641e16,stroke:#e74c3c,color:#fff",
        "    classDef running fill:#1a3a5c,stroke:#3498db,color:#fff",
        "    classDef pending fill:#2c2c2c,stroke:#95a5a6,color:#fff",
        "```",
    ])
    return "\n".join(lines) + "\n"
