"""Plan / execute / decide loop over the wave scheduler.

The orchestrator asks the planner to analyse a task, runs the resulting
sub-tasks through a ``TaskScheduler``, asks the planner what to do with the
results, and repeats until the planner is done or ``max_iterations`` is
reached. Phase changes and task progress are published on one
``ProgressBus``.
"""

import logging
import threading

from device_orchestrator.config import Config
from device_orchestrator.core.control import ProgressBus, RunControl
from device_orchestrator.core.planning import (
    NextAction,
    NextStepDecision,
    OrchestratorResult,
    SubTaskDefinition,
    SubTaskResult,
    TaskAnalysis,
    default_summary,
    parse_analysis,
    parse_decision,
)
from device_orchestrator.core.protocols import (
    Actuator,
    InteractionHandler,
    Perception,
    Planner,
    Reasoner,
    Summarizer,
    SurfaceAllocator,
)
from device_orchestrator.core.scheduler import TaskScheduler
from device_orchestrator.core.states import (
    Analyzing,
    Deciding,
    Decomposing,
    Executing,
    Failed,
    Idle,
    OrchestratorState,
    RunCompleted,
    RunFailed,
    Summarizing,
    TaskProgress,
    is_terminal,
    phase_name,
)
from device_orchestrator.core.tasks import TaskDefinition, validate_tasks
from device_orchestrator.core.tree import ExecutionTree, render_flow_diagram

logger = logging.getLogger(__name__)

SINGLE_TASK_ID = "single_task"
CANCELLED_SUMMARY = "Task cancelled"


class Orchestrator:
    def __init__(
        self,
        config: Config,
        *,
        planner: Planner | None = None,
        reasoner: Reasoner,
        perception: Perception,
        actuator: Actuator,
        allocator: SurfaceAllocator | None = None,
        interaction: InteractionHandler | None = None,
        bus: ProgressBus | None = None,
    ):
        self.config = config
        self.planner = planner
        self.bus = bus or ProgressBus()
        self.control = RunControl(config.pause_poll_interval)
        self.scheduler = TaskScheduler(
            config,
            reasoner=reasoner,
            perception=perception,
            actuator=actuator,
            allocator=allocator,
            interaction=interaction,
            control=self.control,
            bus=self.bus,
        )
        self._lock = threading.Lock()
        self._state: OrchestratorState = Idle()
        self._results: list[SubTaskResult] = []
        # Results recorded before the batch currently executing.
        self._batch_offset = 0
        self.tree: ExecutionTree | None = None

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def state(self) -> OrchestratorState:
        with self._lock:
            return self._state

    @property
    def results(self) -> list[SubTaskResult]:
        with self._lock:
            return list(self._results)

    def stop(self):
        logger.info("Stop requested")
        self.control.stop()

    def pause(self):
        self.control.pause()

    def resume(self):
        self.control.resume()

    def reset(self):
        """Clear stop and pause requests along with the previous run's results."""
        self.control.reset()
        self._clear_run()

    def _clear_run(self):
        with self._lock:
            self._results.clear()
            self._batch_offset = 0
        self.tree = None
        self._set_state(Idle())

    def analyze(self, task: str) -> TaskAnalysis:
        """Ask the planner for a decomposition; unreadable output means single-task."""
        if self.planner is None:
            return TaskAnalysis(requires_multi_task=False, reasoning="No planner configured")
        return parse_analysis(self.planner.plan(task))

    def decide(self, task: str, analysis: TaskAnalysis) -> NextStepDecision:
        """Ask the planner what to do with the results so far; unreadable output means COMPLETE."""
        if self.planner is None:
            return NextStepDecision(action=NextAction.COMPLETE, reasoning="No planner configured")
        return parse_decision(self.planner.decide(task, analysis, self.results))

    def orchestrate(self, task: str) -> OrchestratorResult:
        """Run ``task`` to completion and return the aggregated result.

        Never raises for failures inside the run: they surface as a
        ``RunFailed`` state and an unsuccessful result.
        """
        self._clear_run()
        logger.info("Orchestrating task: %s", task)
        tree = ExecutionTree(task)
        self.tree = tree
        unsubscribe = self.bus.subscribe(self._on_event)
        try:
            if self.control.is_stopped:
                return self._cancelled(tree)
            self._set_state(Analyzing(task))
            analysis = self.analyze(task)
            logger.info(
                "Analysis: multi_task=%s, %d sub-tasks, strategy %s",
                analysis.requires_multi_task,
                len(analysis.sub_tasks),
                analysis.execution_strategy.value,
            )
            if self.control.is_stopped:
                return self._cancelled(tree)

            self._set_state(Decomposing(analysis))
            if analysis.requires_multi_task and analysis.sub_tasks:
                self._run_multi_task(task, analysis, tree)
            else:
                self._run_single_task(task, tree)

            if self.control.is_stopped:
                return self._cancelled(tree)
            return self._complete(task, tree)
        except Exception as e:
            return self._failed(e, tree)
        finally:
            self.scheduler.release_surfaces()
            unsubscribe()

    def run_batch(self, tasks: list[TaskDefinition], title: str | None = None) -> OrchestratorResult:
        """Run a fixed task set once, without analysis or decisions.

        Raises ValueError for duplicate task ids; everything else is
        reported through the result like ``orchestrate``.
        """
        validate_tasks(tasks)
        self._clear_run()
        title = title or f"Batch of {len(tasks)} tasks"
        logger.info("Running batch: %s", title)
        tree = ExecutionTree(title)
        self.tree = tree
        unsubscribe = self.bus.subscribe(self._on_event)
        try:
            for definition in tasks:
                tree.add_child(definition.id, definition.description)
            self._set_state(Executing(len(tasks), 0, len(tasks)))
            self._execute_batch(tasks, tree)
            if self.control.is_stopped:
                return self._cancelled(tree)
            return self._complete(title, tree, ask_planner=False)
        except Exception as e:
            return self._failed(e, tree)
        finally:
            self.scheduler.release_surfaces()
            unsubscribe()

    # ── Execution ────────────────────────────────────────────────────────

    def _run_multi_task(self, task: str, analysis: TaskAnalysis, tree: ExecutionTree):
        batch = _dedupe(analysis.sub_tasks)
        seen: dict[str, SubTaskDefinition] = {}
        iteration = 0

        while batch and not self.control.is_stopped:
            if iteration >= self.config.max_iterations:
                logger.warning(
                    "Reached %d iterations with %d sub-tasks still planned; stopping",
                    iteration, len(batch),
                )
                break
            iteration += 1
            logger.info("Iteration %d: %d sub-tasks", iteration, len(batch))

            for sub_task in batch:
                seen[sub_task.id] = sub_task
                tree.add_child(sub_task.id, sub_task.description)
            batch_ids = {s.id for s in batch}
            definitions = [s.to_definition(batch_ids) for s in batch]

            with self._lock:
                self._batch_offset = len(self._results)
                completed = self._batch_offset
            self._set_state(Executing(len(definitions), completed, completed + len(definitions)))

            iteration_results = self._execute_batch(definitions, tree)
            if self.control.is_stopped:
                break

            self._set_state(Deciding(tuple(iteration_results)))
            decision = self.decide(task, analysis)
            logger.info("Decision: %s (%s)", decision.action.value, decision.reasoning)

            if decision.action in (NextAction.CONTINUE, NextAction.COMPLETE):
                batch = []
            elif decision.action == NextAction.SPAWN_NEW:
                batch = _dedupe(decision.new_sub_tasks)
            elif decision.action == NextAction.RETRY:
                missing = [i for i in decision.retry_task_ids if i not in seen]
                if missing:
                    logger.warning("Ignoring retry of unknown sub-tasks: %s", missing)
                batch = _dedupe(seen[i] for i in decision.retry_task_ids if i in seen)
            elif decision.action == NextAction.ABORT:
                logger.warning("Planner aborted the run: %s", decision.reasoning)
                break

    def _run_single_task(self, task: str, tree: ExecutionTree):
        definition = TaskDefinition(id=SINGLE_TASK_ID, description=task)
        tree.add_child(definition.id, task)
        self._set_state(Executing(1, 0, 1))
        self.scheduler.run_single(definition)
        self._collect([definition], tree)

    def _execute_batch(self, definitions: list[TaskDefinition], tree: ExecutionTree) -> list[SubTaskResult]:
        self.scheduler.run_tasks(definitions)
        return self._collect(definitions, tree)

    def _collect(self, definitions: list[TaskDefinition], tree: ExecutionTree) -> list[SubTaskResult]:
        """Turn the scheduler's records into results; tasks that never ran are skipped."""
        collected = []
        for definition in definitions:
            record = self.scheduler.state.snapshot(definition.id)
            if record is None or record.result is None:
                tree.skip_child(definition.id, "Not started")
                continue
            result = SubTaskResult(
                task_id=definition.id,
                success=not isinstance(record.state, Failed),
                result=record.result,
                steps_executed=record.step_count,
                surface_id=record.surface_id,
                execution_time_ms=record.execution_time_ms,
            )
            tree.finish_child(definition.id, result.success, result.result, result.surface_id)
            collected.append(result)
        with self._lock:
            self._results.extend(collected)
        return collected

    def _complete(self, task: str, tree: ExecutionTree, ask_planner: bool = True) -> OrchestratorResult:
        results = self.results
        self._set_state(Summarizing(tuple(results)))
        summary = self._summarize(task, results) if ask_planner else default_summary(results)
        success = all(r.success for r in results)
        tree.finish_root(success, summary)
        diagram = render_flow_diagram(tree)
        self._set_state(RunCompleted(summary, diagram))
        logger.info("Run finished: %s", summary)
        return OrchestratorResult(
            success=success,
            summary=summary,
            flow_diagram=diagram,
            sub_task_results=results,
            execution_tree=tree,
        )

    def _summarize(self, task: str, results: list[SubTaskResult]) -> str:
        if isinstance(self.planner, Summarizer):
            try:
                summary = self.planner.summarize(task, results)
            except Exception as e:
                logger.warning("Planner summary failed, using default: %s", e)
            else:
                if summary and summary.strip():
                    return summary.strip()
        return default_summary(results)

    def _cancelled(self, tree: ExecutionTree) -> OrchestratorResult:
        logger.info("Run cancelled")
        tree.finish_root(False, CANCELLED_SUMMARY)
        diagram = render_flow_diagram(tree)
        self._set_state(RunFailed(CANCELLED_SUMMARY))
        return OrchestratorResult.cancelled(self.results, diagram, tree)

    def _failed(self, error: Exception, tree: ExecutionTree) -> OrchestratorResult:
        logger.exception("Orchestration failed")
        message = str(error) or type(error).__name__
        self._set_state(RunFailed(message))
        tree.finish_root(False, message)
        return OrchestratorResult.failed(message, self.results, tree)

    # ── Events ───────────────────────────────────────────────────────────

    def _set_state(self, state: OrchestratorState):
        with self._lock:
            self._state = state
        logger.debug("Orchestrator phase: %s", phase_name(state))
        self.bus.publish(state)

    def _on_event(self, event: object):
        if not isinstance(event, TaskProgress):
            return
        if self.tree is not None:
            self.tree.update_from_progress(event)
        if is_terminal(event.state) and isinstance(self.state, Executing):
            active, finished, total = self.scheduler.state.counts()
            with self._lock:
                offset = self._batch_offset
            self._set_state(Executing(active, offset + finished, offset + total))


def _dedupe(sub_tasks) -> list[SubTaskDefinition]:
    """Keep the first sub-task for each id."""
    unique: dict[str, SubTaskDefinition] = {}
    for sub_task in sub_tasks:
        unique.setdefault(sub_task.id, sub_task)
    return list(unique.values())
