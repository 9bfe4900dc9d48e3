"""Dependency-aware wave scheduler."""

import logging
import threading

from device_orchestrator.config import Config
from device_orchestrator.core.control import ProgressBus, RunControl
from device_orchestrator.core.gate import ConcurrencyGate
from device_orchestrator.core.loop import STOPPED_MESSAGE, TaskExecutionLoop
from device_orchestrator.core.protocols import (
    Actuator,
    InteractionHandler,
    NullSurfaceAllocator,
    Perception,
    Reasoner,
    SurfaceAllocator,
)
from device_orchestrator.core.state import RunState
from device_orchestrator.core.states import Completed, TaskState
from device_orchestrator.core.tasks import (
    TaskDefinition,
    group_by_dependency,
    sort_by_priority,
    validate_tasks,
)

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Runs a task set wave by wave through a ConcurrencyGate.

    Every task of a wave gets its own worker thread; the thread blocks on
    the gate before its loop starts, so at most ``max_concurrent_tasks``
    loops are ever past admission. The scheduler joins the whole wave
    before starting the next one.
    """

    def __init__(
        self,
        config: Config,
        *,
        reasoner: Reasoner,
        perception: Perception,
        actuator: Actuator,
        allocator: SurfaceAllocator | None = None,
        interaction: InteractionHandler | None = None,
        control: RunControl | None = None,
        bus: ProgressBus | None = None,
        gate: ConcurrencyGate | None = None,
    ):
        self.config = config
        self.reasoner = reasoner
        self.perception = perception
        self.actuator = actuator
        self.allocator = allocator or NullSurfaceAllocator()
        self.interaction = interaction
        self.control = control or RunControl(config.pause_poll_interval)
        self.bus = bus
        self.gate = gate or ConcurrencyGate(config.max_concurrent_tasks)
        self.state = RunState()

    # ── Entry points ─────────────────────────────────────────────────────

    def run_tasks(self, tasks: list[TaskDefinition]) -> dict[str, str]:
        """Run every task and return {task_id: result}.

        Failed tasks report ``"Error: <reason>"``. Tasks never started
        because the run was stopped have no entry.
        """
        if not tasks:
            return {}
        validate_tasks(tasks)
        self.state.reset(tasks)

        try:
            if self.config.enable_virtual_displays and len(tasks) > 1:
                self._run_concurrently(tasks)
            else:
                self._run_sequentially(tasks)
        finally:
            self.release_surfaces()

        return self.state.results()

    def run_single(self, task: TaskDefinition) -> TaskState:
        """Run one task on the shared surface, outside any wave."""
        self.state.reset([task])
        try:
            return self._make_loop(task, use_surface=False).run()
        finally:
            self.release_surfaces()

    def run_wave(self, wave: list[TaskDefinition]):
        """Dispatch every task of the wave and block until all are terminal."""
        threads = [
            threading.Thread(
                target=self._admit_and_run,
                args=(task,),
                name=f"task-{task.id}",
                daemon=True,
            )
            for task in wave
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    # ── Control ──────────────────────────────────────────────────────────

    def stop(self):
        self.control.stop()

    def pause(self):
        self.control.pause()

    def resume(self):
        self.control.resume()

    def reset(self):
        self.control.reset()
        self.state.reset()

    def get_task_state(self, task_id: str) -> TaskState | None:
        return self.state.get_state(task_id)

    def get_all_task_states(self) -> dict[str, TaskState]:
        return self.state.all_states()

    def release_surfaces(self):
        """Give back every surface still held by this scheduler's tasks."""
        for surface_id in self.state.drain_surfaces():
            try:
                self.allocator.release(surface_id)
            except Exception:
                logger.exception("Failed to release surface %s", surface_id)

    # ── Internals ────────────────────────────────────────────────────────

    def _run_concurrently(self, tasks: list[TaskDefinition]):
        waves = group_by_dependency(sort_by_priority(tasks))
        logger.info(
            "Running %d tasks in %d waves (max %d concurrent)",
            len(tasks), len(waves), self.gate.limit,
        )
        for i, wave in enumerate(waves):
            if self.control.is_stopped:
                logger.info("Run stopped before wave %d", i + 1)
                break
            logger.debug("Wave %d: %s", i + 1, [t.id for t in wave])
            self.run_wave(wave)

    def _run_sequentially(self, tasks: list[TaskDefinition]):
        ordered = [task for wave in group_by_dependency(sort_by_priority(tasks)) for task in wave]
        logger.info("Running %d tasks one at a time on the main surface", len(ordered))
        for task in ordered:
            if self.control.is_stopped:
                logger.info("Run stopped before task %s", task.id)
                break
            self._make_loop(task, use_surface=False).run()

    def _admit_and_run(self, task: TaskDefinition):
        with self.gate:
            if self.control.is_stopped:
                self.state.finish(task.id, Completed(STOPPED_MESSAGE))
                return
            self._make_loop(task).run()

    def _make_loop(self, task: TaskDefinition, use_surface: bool = True) -> TaskExecutionLoop:
        dependency_results = {
            dep_id: result
            for dep_id in task.depends_on
            if (result := self.state.result(dep_id)) is not None
        }
        return TaskExecutionLoop(
            task,
            self.config,
            reasoner=self.reasoner,
            perception=self.perception,
            actuator=self.actuator,
            state=self.state,
            control=self.control,
            allocator=self.allocator,
            interaction=self.interaction,
            bus=self.bus,
            use_surface=use_surface,
            dependency_results=dependency_results,
        )
