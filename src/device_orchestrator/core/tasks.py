"""Task definitions and dependency-wave grouping."""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class TaskDefinition:
    id: str
    description: str
    target_app: str | None = None
    priority: int = 0
    depends_on: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        # Accept any iterable of ids from callers; store an immutable set.
        if not isinstance(self.depends_on, frozenset):
            object.__setattr__(self, "depends_on", frozenset(self.depends_on))


def slugify(title: str) -> str:
    """Convert a description to a short identifier."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:40]


def validate_tasks(tasks: Iterable[TaskDefinition]) -> None:
    """Raise ValueError if two tasks share an id."""
    seen: set[str] = set()
    for task in tasks:
        if not task.id:
            raise ValueError("Task id must not be empty")
        if task.id in seen:
            raise ValueError(f"Duplicate task id: {task.id}")
        seen.add(task.id)


def sort_by_priority(tasks: Iterable[TaskDefinition]) -> list[TaskDefinition]:
    """Highest priority first; ties keep their input order."""
    return sorted(tasks, key=lambda t: t.priority, reverse=True)


def group_by_dependency(tasks: Iterable[TaskDefinition]) -> list[list[TaskDefinition]]:
    """Partition tasks into waves whose dependencies are met by earlier waves.

    A dependency counts as met once the task it names has been placed in an
    earlier wave, whatever that task's outcome turns out to be. When no
    remaining task is ready (a cycle, or a dependency on an id outside the
    set) the remainder is emitted as one final wave.
    """
    completed: set[str] = set()
    waves: list[list[TaskDefinition]] = []
    remaining = list(tasks)

    while remaining:
        ready = [t for t in remaining if t.depends_on <= completed]

        if not ready:
            waves.append(remaining)
            break

        waves.append(ready)
        completed.update(t.id for t in ready)
        ready_ids = {t.id for t in ready}
        remaining = [t for t in remaining if t.id not in ready_ids]

    return waves

