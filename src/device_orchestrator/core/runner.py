"""Wiring of orchestrations to real collaborators, history and notifications."""

import logging
import threading
from collections.abc import Callable

from device_orchestrator.config import Config
from device_orchestrator.core import history
from device_orchestrator.core.control import ProgressBus
from device_orchestrator.core.orchestrator import Orchestrator
from device_orchestrator.core.planning import OrchestratorResult
from device_orchestrator.core.states import phase_name, state_name
from device_orchestrator.core.tasks import TaskDefinition
from device_orchestrator.db.engine import get_db
from device_orchestrator.db.models import Run
from device_orchestrator.integrations.slack import notify_run_completion

logger = logging.getLogger(__name__)


def build_orchestrator(
    config: Config,
    *,
    use_planner: bool = True,
    interaction=None,
    bus: ProgressBus | None = None,
) -> Orchestrator:
    """Orchestrator driving the configured device and model endpoints."""
    from device_orchestrator.integrations.adb import AdbDevice
    from device_orchestrator.integrations.model_client import ModelClient, ModelPlanner

    device = AdbDevice(config.adb_serial)
    planner = ModelPlanner(ModelClient.for_planner(config)) if use_planner else None
    return Orchestrator(
        config,
        planner=planner,
        reasoner=ModelClient.for_worker(config),
        perception=device,
        actuator=device,
        interaction=interaction,
        bus=bus,
    )


def execute_run(
    config: Config,
    orchestrator: Orchestrator,
    task: str,
    *,
    batch: list[TaskDefinition] | None = None,
    run_id: int | None = None,
) -> tuple[Run, OrchestratorResult]:
    """Run one orchestration and record it in the run history.

    With ``batch`` given the task set runs as-is and ``task`` is only its
    title. Returns the stored run and the in-memory result.
    """
    if run_id is None:
        with get_db(config.db_path) as db:
            run_id = history.create_run(db, task).id

    unsubscribe = orchestrator.bus.subscribe(history.PhaseRecorder(config.db_path, run_id))
    try:
        if batch is not None:
            result = orchestrator.run_batch(batch, title=task)
        else:
            result = orchestrator.orchestrate(task)
    finally:
        unsubscribe()

    with get_db(config.db_path) as db:
        run = history.finish_run(db, run_id, result)
    logger.info("Run %s finished with status %s", run_id, run.status)

    notify_run_completion(config.slack_bot_token, config.slack_channel, run_id, task, result)
    return run, result


OrchestratorFactory = Callable[[Config], Orchestrator]


class RunManager:
    """Runs orchestrations on background threads, one per run.

    Keeps the live orchestrator of every active run, and of the most recent
    ``keep_finished`` finished ones, so runs can be paused, resumed, stopped
    and inspected by id. Older finished runs are only in the run history.
    """

    def __init__(
        self,
        config: Config,
        factory: OrchestratorFactory | None = None,
        keep_finished: int = 20,
    ):
        self.config = config
        self.factory = factory or build_orchestrator
        self.keep_finished = keep_finished
        self._lock = threading.Lock()
        self._runs: dict[int, Orchestrator] = {}
        self._threads: dict[int, threading.Thread] = {}

    def start(self, task: str, batch: list[TaskDefinition] | None = None) -> Run:
        """Create a run and start it in the background."""
        orchestrator = self.factory(self.config)
        with get_db(self.config.db_path) as db:
            run = history.create_run(db, task)

        thread = threading.Thread(
            target=self._run,
            args=(orchestrator, task, batch, run.id),
            name=f"run-{run.id}",
            daemon=True,
        )
        with self._lock:
            self._prune()
            self._runs[run.id] = orchestrator
            self._threads[run.id] = thread
            thread.start()
        logger.info("Started run %s: %s", run.id, task)
        return run

    def _run(self, orchestrator: Orchestrator, task: str, batch, run_id: int):
        try:
            execute_run(self.config, orchestrator, task, batch=batch, run_id=run_id)
        except Exception:
            logger.exception("Run %s crashed", run_id)

    def _prune(self):
        """Forget the oldest finished runs beyond ``keep_finished``. Caller holds the lock."""
        finished = sorted(run_id for run_id, t in self._threads.items() if not t.is_alive())
        for run_id in finished[: max(len(finished) - self.keep_finished, 0)]:
            del self._runs[run_id]
            del self._threads[run_id]

    def get(self, run_id: int) -> Orchestrator | None:
        with self._lock:
            return self._runs.get(run_id)

    def is_active(self, run_id: int) -> bool:
        with self._lock:
            thread = self._threads.get(run_id)
        return thread is not None and thread.is_alive()

    def pause(self, run_id: int) -> bool:
        orchestrator = self.get(run_id)
        if orchestrator is None or not self.is_active(run_id):
            return False
        orchestrator.pause()
        return True

    def resume(self, run_id: int) -> bool:
        orchestrator = self.get(run_id)
        if orchestrator is None or not self.is_active(run_id):
            return False
        orchestrator.resume()
        return True

    def stop(self, run_id: int) -> bool:
        orchestrator = self.get(run_id)
        if orchestrator is None or not self.is_active(run_id):
            return False
        orchestrator.stop()
        return True

    def status(self, run_id: int) -> dict | None:
        """Live phase and per-task states of a run started here."""
        orchestrator = self.get(run_id)
        if orchestrator is None:
            return None
        tasks = {
            task_id: {
                "state": state_name(state),
                "steps": orchestrator.scheduler.state.step_count(task_id),
            }
            for task_id, state in orchestrator.scheduler.get_all_task_states().items()
        }
        return {
            "run_id": run_id,
            "active": self.is_active(run_id),
            "phase": phase_name(orchestrator.state),
            "paused": orchestrator.control.is_paused,
            "stopped": orchestrator.control.is_stopped,
            "results": [r.to_dict() for r in orchestrator.results],
            "tasks": tasks,
        }

    def wait(self, run_id: int, timeout: float | None = None) -> bool:
        """Block until the run's thread ends. Returns False on timeout."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, timeout: float = 10):
        """Stop every active run and wait for the threads to finish."""
        with self._lock:
            items = list(self._runs.items())
        for run_id, orchestrator in items:
            if self.is_active(run_id):
                orchestrator.stop()
        for run_id, _ in items:
            self.wait(run_id, timeout)
