"""Per-task perceive → reason → act loop."""

import logging

from device_orchestrator.config import Config
from device_orchestrator.core import messages
from device_orchestrator.core.actions import ActionResult, ParsedAction, finish_action, parse_action
from device_orchestrator.core.control import ProgressBus, RunControl
from device_orchestrator.core.protocols import (
    Actuator,
    AutoApprove,
    InteractionHandler,
    NullSurfaceAllocator,
    Perception,
    Reasoner,
    SurfaceAllocator,
)
from device_orchestrator.core.state import RunState
from device_orchestrator.core.states import (
    MAIN_SURFACE,
    Completed,
    Failed,
    FallbackToMain,
    Running,
    TaskProgress,
    TaskState,
)
from device_orchestrator.core.tasks import TaskDefinition

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Task stopped by user"
MAX_STEPS_MESSAGE = "Max steps reached"
DEFAULT_FINISH_MESSAGE = "Task completed"
CANCELLED_MESSAGE = "User cancelled sensitive operation"
NO_SURFACE_REASON = "No execution surface available"
INCOMPATIBLE_REASON = "App does not support isolated surfaces"


class TaskExecutionLoop:
    """Drives one task until it completes, fails, or the run is stopped.

    The loop is strictly sequential; concurrency comes from running several
    loops on separate threads. All shared bookkeeping goes through
    ``RunState``; stop and pause are read from the ``RunControl`` token at
    the top of every iteration.
    """

    def __init__(
        self,
        task: TaskDefinition,
        config: Config,
        *,
        reasoner: Reasoner,
        perception: Perception,
        actuator: Actuator,
        state: RunState,
        control: RunControl,
        allocator: SurfaceAllocator | None = None,
        interaction: InteractionHandler | None = None,
        bus: ProgressBus | None = None,
        use_surface: bool = True,
        dependency_results: dict[str, str] | None = None,
    ):
        self.task = task
        self.config = config
        self.reasoner = reasoner
        self.perception = perception
        self.actuator = actuator
        self.state = state
        self.control = control
        self.allocator = allocator or NullSurfaceAllocator()
        self.interaction = interaction or AutoApprove()
        self.bus = bus
        self.use_surface = use_surface
        self.dependency_results = dependency_results or {}
        self._thinking = ""

    def run(self) -> TaskState:
        """Run to a terminal state, record it, and return it."""
        logger.info("Starting task %s: %s", self.task.id, self.task.description)
        self.state.mark_started(self.task.id)
        surface_id = MAIN_SURFACE
        try:
            if self.use_surface and self.task.target_app:
                surface_id = self._acquire_surface()
            final = self._run_steps(surface_id)
        except Exception as e:
            logger.exception("Task %s crashed", self.task.id)
            final = Failed(str(e) or type(e).__name__)
        finally:
            self._release_surface()

        self.state.finish(self.task.id, final)
        self._emit(final, surface_id)
        if isinstance(final, Failed):
            logger.warning("Task %s failed: %s", self.task.id, final.error)
        else:
            logger.info("Task %s completed: %s", self.task.id, final.message)
        return final

    # ── Surfaces ─────────────────────────────────────────────────────────

    def _acquire_surface(self) -> int:
        surface_id = self.allocator.acquire(
            self.config.display_width,
            self.config.display_height,
            self.config.display_density,
        )
        if surface_id is None or surface_id == MAIN_SURFACE:
            self._fall_back(NO_SURFACE_REASON)
            return MAIN_SURFACE

        self.state.assign_surface(self.task.id, surface_id)
        compat = self.allocator.check_compatibility(self.task.target_app, surface_id)
        if compat.fell_back_to_main:
            self._release_surface()
            self._fall_back(compat.reason or INCOMPATIBLE_REASON)
            return MAIN_SURFACE
        return surface_id

    def _fall_back(self, reason: str):
        logger.warning(
            "Task %s falls back to the main surface (%s): %s",
            self.task.id, self.task.target_app, reason,
        )
        state = FallbackToMain(reason)
        self.state.set_state(self.task.id, state)
        self._emit(state, MAIN_SURFACE)

    def _release_surface(self):
        surface_id = self.state.release_surface(self.task.id)
        if surface_id is None:
            return
        try:
            self.allocator.release(surface_id)
        except Exception:
            logger.exception("Failed to release surface %s for task %s", surface_id, self.task.id)

    # ── Loop ─────────────────────────────────────────────────────────────

    def _run_steps(self, surface_id: int) -> TaskState:
        context = self.state.context(self.task.id)
        if not context:
            context.append(
                messages.create_system_message(messages.get_system_prompt(self.config.lang))
            )

        first = True
        while True:
            if self.control.is_stopped:
                return Completed(STOPPED_MESSAGE)
            if not self.control.wait_while_paused(lambda: self._mark_paused(surface_id)):
                return Completed(STOPPED_MESSAGE)
            if self.state.step_count(self.task.id) >= self.config.max_steps_per_task:
                return Completed(MAX_STEPS_MESSAGE)

            outcome = self._step(surface_id, context, first)
            first = False
            steps = self.state.record_step(self.task.id)
            if outcome is not None:
                return outcome
            self.state.set_state(self.task.id, Running(surface_id, steps))

    def _mark_paused(self, surface_id: int):
        paused = self.state.mark_paused(self.task.id, surface_id)
        if paused is not None:
            logger.info("Task %s paused at step %d", self.task.id, paused.step_count)
            self._emit(paused, surface_id)

    def _step(self, surface_id: int, context: list[dict], first: bool) -> TaskState | None:
        """One iteration. Returns a terminal state, or None to keep going."""
        steps = self.state.step_count(self.task.id)
        running = Running(surface_id, steps)
        self.state.set_state(self.task.id, running)
        self._emit(running, surface_id)

        screenshot = self.perception.capture(surface_id)
        if screenshot is None:
            return Failed(f"Failed to capture screenshot for surface {surface_id}")

        current_app = self.task.target_app or "Unknown"
        if first:
            text = messages.build_first_step_prompt(
                self.task.description, current_app, self.dependency_results
            )
        else:
            text = messages.build_step_prompt(current_app)
        context.append(messages.create_user_message(text, screenshot.image))

        try:
            response = self.reasoner.request(context)
        except Exception as e:
            logger.warning("Model request failed for task %s: %s", self.task.id, e)
            return Failed(f"Model error: {e}")

        self._thinking = response.thinking
        self._emit(running, surface_id, screenshot=screenshot.image)

        try:
            action = parse_action(response.action)
        except ValueError as e:
            logger.warning("Unparsable action for task %s, finishing: %s", self.task.id, e)
            action = finish_action(response.action)

        context[-1] = messages.remove_images(context[-1])
        result = self._execute(action, surface_id, screenshot.width, screenshot.height)
        context.append(messages.create_assistant_message(response.thinking, response.action))

        if action.is_finish:
            return Completed(action.get_string("message") or DEFAULT_FINISH_MESSAGE)
        if result.should_finish:
            if result.success:
                return Completed(result.message or DEFAULT_FINISH_MESSAGE)
            return Failed(result.message or "Action failed")
        if not result.success:
            logger.info(
                "Step %d of task %s unsuccessful: %s",
                steps + 1, self.task.id, result.message,
            )
        return None

    def _execute(
        self, action: ParsedAction, surface_id: int, width: int, height: int
    ) -> ActionResult:
        if action.is_finish:
            return ActionResult(True, True, action.get_string("message"))

        if action.is_takeover:
            message = action.get_string("message") or "User intervention required"
            logger.info("Task %s waiting for manual takeover: %s", self.task.id, message)
            self.interaction.takeover(message)
            return ActionResult(True, False)

        if action.is_sensitive:
            message = action.get_string("message")
            logger.info("Task %s waiting for confirmation: %s", self.task.id, message)
            if not self.interaction.confirm(message):
                return ActionResult(False, True, CANCELLED_MESSAGE)

        try:
            return self.actuator.dispatch(action, surface_id, width, height)
        except Exception as e:
            logger.exception("Action %s failed for task %s", action.action_type, self.task.id)
            return ActionResult(False, False, str(e))

    def _emit(self, state: TaskState, surface_id: int, screenshot: bytes | None = None):
        if self.bus is None:
            return
        self.bus.publish(TaskProgress(
            task_id=self.task.id,
            state=state,
            step_count=self.state.step_count(self.task.id),
            max_steps=self.config.max_steps_per_task,
            current_thinking=self._thinking,
            surface_id=surface_id,
            screenshot=screenshot,
        ))
