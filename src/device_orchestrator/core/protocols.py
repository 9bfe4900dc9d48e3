"""Interfaces of the external collaborators the core drives.

Perception, actuation, surface allocation, the reasoning model and user
interaction all live outside the orchestration core. Concrete adapters for
a device reached over adb and for an OpenAI-compatible model endpoint live
in ``device_orchestrator.integrations``; tests use scripted fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from device_orchestrator.core.actions import ActionResult, ParsedAction

if TYPE_CHECKING:
    from device_orchestrator.core.planning import SubTaskResult, TaskAnalysis


@dataclass(frozen=True)
class ModelResponse:
    thinking: str
    action: str
    raw: str = ""


@dataclass(frozen=True)
class Screenshot:
    image: bytes
    width: int
    height: int


@dataclass(frozen=True)
class CompatibilityResult:
    fell_back_to_main: bool
    reason: str = ""


class Reasoner(Protocol):
    def request(self, messages: list[dict]) -> ModelResponse: ...


@runtime_checkable
class Planner(Protocol):
    """Returns raw model text; parsing and fail-safe defaults are the core's job."""

    def plan(self, task: str) -> str: ...

    def decide(
        self, task: str, analysis: TaskAnalysis, results: list[SubTaskResult]
    ) -> str: ...


@runtime_checkable
class Summarizer(Protocol):
    def summarize(self, task: str, results: list[SubTaskResult]) -> str: ...


class Perception(Protocol):
    def capture(self, surface_id: int) -> Screenshot | None: ...


class Actuator(Protocol):
    def dispatch(
        self, action: ParsedAction, surface_id: int, width: int, height: int
    ) -> ActionResult: ...


class SurfaceAllocator(Protocol):
    def acquire(self, width: int, height: int, density: int) -> int | None: ...

    def release(self, surface_id: int) -> None: ...

    def check_compatibility(self, app: str, surface_id: int) -> CompatibilityResult: ...


class InteractionHandler(Protocol):
    def confirm(self, message: str) -> bool: ...

    def takeover(self, message: str) -> None: ...


class AutoApprove:
    """Interaction handler for unattended runs: confirms everything."""

    def confirm(self, message: str) -> bool:
        return True

    def takeover(self, message: str) -> None:
        return None


class NullSurfaceAllocator:
    """Allocator for devices without isolated surfaces; tasks fall back to main."""

    def acquire(self, width: int, height: int, density: int) -> int | None:
        return None

    def release(self, surface_id: int) -> None:
        return None

    def check_compatibility(self, app: str, surface_id: int) -> CompatibilityResult:
        return CompatibilityResult(fell_back_to_main=True, reason="No isolated surfaces")
