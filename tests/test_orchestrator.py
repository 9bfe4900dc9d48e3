"""Tests for the plan / execute / decide orchestrator."""

import json

import pytest

from device_orchestrator.config import Config
from device_orchestrator.core.orchestrator import SINGLE_TASK_ID, Orchestrator
from device_orchestrator.core.planning import NextAction, TaskAnalysis
from device_orchestrator.core.states import (
    Analyzing,
    Deciding,
    Decomposing,
    Executing,
    Idle,
    RunCompleted,
    RunFailed,
    Summarizing,
    phase_name,
)
from device_orchestrator.core.tasks import TaskDefinition
from device_orchestrator.core.tree import NodeStatus

from fakes import EventLog, FakeAllocator, FakeDevice, FakePlanner, FakeReasoner, PlanOnlyPlanner


def _analysis(*sub_tasks, multi=True):
    return json.dumps({
        "requires_multi_task": multi,
        "reasoning": "test plan",
        "sub_tasks": list(sub_tasks),
        "execution_strategy": "CONCURRENT",
    })


def _sub(task_id, depends_on=(), target_app=None):
    return {
        "id": task_id,
        "description": f"task {task_id}",
        "target_app": target_app,
        "depends_on": list(depends_on),
    }


def _decision(action, **extra):
    return json.dumps({"action": action, "reasoning": "because", **extra})


@pytest.fixture
def config():
    return Config(max_concurrent_tasks=2, max_steps_per_task=5, max_iterations=3, pause_poll_interval=0.01)


def _orchestrator(config, planner=None, reasoner=None, device=None, allocator=None):
    device = device or FakeDevice()
    return Orchestrator(
        config,
        planner=planner,
        reasoner=reasoner or FakeReasoner(),
        perception=device,
        actuator=device,
        allocator=allocator,
    )


def _phases(log):
    phases = []
    for event in log.events:
        try:
            name = phase_name(event)
        except TypeError:
            continue
        if not phases or phases[-1] != name:
            phases.append(name)
    return phases


class TestSingleTask:
    def test_no_planner_runs_single_task(self, config):
        orchestrator = _orchestrator(config, reasoner=FakeReasoner(['finish(message="Alarm set")']))
        result = orchestrator.orchestrate("Set an alarm")
        assert result.success
        assert [r.task_id for r in result.sub_task_results] == [SINGLE_TASK_ID]
        assert result.sub_task_results[0].result == "Alarm set"
        assert result.summary == "Task finished. Succeeded: 1/1"
        assert isinstance(orchestrator.state, RunCompleted)

    def test_planner_says_single_task(self, config):
        planner = FakePlanner(_analysis(multi=False), summary="All good")
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Set an alarm")
        assert result.success
        assert result.summary == "All good"
        assert planner.decide_calls == []

    def test_multi_without_sub_tasks_runs_single(self, config):
        orchestrator = _orchestrator(config, FakePlanner(_analysis(multi=True)))
        result = orchestrator.orchestrate("Set an alarm")
        assert [r.task_id for r in result.sub_task_results] == [SINGLE_TASK_ID]

    def test_unparsable_analysis_runs_single(self, config):
        orchestrator = _orchestrator(config, FakePlanner("I am not JSON"))
        result = orchestrator.orchestrate("Set an alarm")
        assert result.success
        assert [r.task_id for r in result.sub_task_results] == [SINGLE_TASK_ID]

    def test_single_task_failure(self, config):
        orchestrator = _orchestrator(config, device=FakeDevice(fail_capture=True))
        result = orchestrator.orchestrate("Set an alarm")
        assert not result.success
        assert result.sub_task_results[0].result.startswith("Error: ")
        assert isinstance(orchestrator.state, RunCompleted)

    def test_phase_order(self, config):
        orchestrator = _orchestrator(config, FakePlanner(_analysis(multi=False)))
        log = EventLog()
        orchestrator.bus.subscribe(log)
        orchestrator.orchestrate("Set an alarm")
        assert _phases(log) == [
            "idle", "analyzing", "decomposing", "executing", "summarizing", "completed",
        ]


class TestMultiTask:
    def test_runs_sub_tasks_and_completes(self, config):
        planner = FakePlanner(
            _analysis(_sub("a"), _sub("b"), _sub("c", depends_on=["a", "b"])),
            decisions=[_decision("COMPLETE")],
            summary="Trip planned",
        )
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert result.success
        assert result.summary == "Trip planned"
        assert sorted(r.task_id for r in result.sub_task_results) == ["a", "b", "c"]
        assert len(planner.decide_calls) == 1
        assert len(planner.decide_calls[0]) == 3
        assert "```mermaid" in result.flow_diagram
        assert result.execution_tree is orchestrator.tree

    def test_phase_order_with_decision(self, config):
        planner = FakePlanner(_analysis(_sub("a"), _sub("b")), decisions=[_decision("CONTINUE")])
        orchestrator = _orchestrator(config, planner)
        log = EventLog()
        orchestrator.bus.subscribe(log)
        orchestrator.orchestrate("Plan trip")
        assert _phases(log) == [
            "idle", "analyzing", "decomposing", "executing", "deciding", "summarizing", "completed",
        ]

    def test_executing_counts(self, config):
        planner = FakePlanner(_analysis(_sub("a"), _sub("b")))
        orchestrator = _orchestrator(config, planner)
        log = EventLog()
        orchestrator.bus.subscribe(log)
        orchestrator.orchestrate("Plan trip")
        executing = log.of_type(Executing)
        assert executing[0] == Executing(2, 0, 2)
        assert max(e.completed_tasks for e in executing) == 2
        assert all(e.total_tasks == 2 for e in executing)

    def test_spawn_new(self, config):
        planner = FakePlanner(
            _analysis(_sub("a"), _sub("b")),
            decisions=[
                _decision("SPAWN_NEW", new_sub_tasks=[_sub("c", depends_on=["a"])]),
                _decision("COMPLETE"),
            ],
        )
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert [r.task_id for r in result.sub_task_results][-1] == "c"
        assert len(result.sub_task_results) == 3
        assert len(planner.decide_calls) == 2
        assert [c.task_id for c in orchestrator.tree.children()] == ["a", "b", "c"]

    def test_retry_failed_task(self, config):
        reasoner = FakeReasoner({"task a": [RuntimeError("flaky")]})
        planner = FakePlanner(
            _analysis(_sub("a"), _sub("b")),
            decisions=[_decision("RETRY", retry_task_ids=["a", "zzz"]), _decision("COMPLETE")],
        )
        orchestrator = _orchestrator(config, planner, reasoner)
        result = orchestrator.orchestrate("Plan trip")
        ids = [r.task_id for r in result.sub_task_results]
        assert sorted(ids[:2]) == ["a", "b"]
        assert ids[2:] == ["a"]
        assert result.sub_task_results[2].success
        # The first attempt failed, so the run is not a full success.
        assert not result.success
        statuses = [(c.task_id, c.status) for c in orchestrator.tree.children()]
        assert ("a", NodeStatus.FAILED) in statuses
        assert ("a", NodeStatus.COMPLETED) in statuses
        assert len(statuses) == 3

    def test_abort(self, config):
        planner = FakePlanner(
            _analysis(_sub("a")),
            decisions=[_decision("ABORT", new_sub_tasks=[_sub("never")])],
        )
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert [r.task_id for r in result.sub_task_results] == ["a"]
        assert isinstance(orchestrator.state, RunCompleted)

    def test_unparsable_decision_completes(self, config):
        planner = FakePlanner(_analysis(_sub("a")), decisions=["what now?"])
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert result.success
        assert len(planner.decide_calls) == 1

    def test_iteration_cap(self, config):
        spawn = [_decision("SPAWN_NEW", new_sub_tasks=[_sub(f"n{i}")]) for i in range(10)]
        planner = FakePlanner(_analysis(_sub("a")), decisions=spawn)
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert len(result.sub_task_results) == config.max_iterations
        assert len(planner.decide_calls) == config.max_iterations

    def test_duplicate_sub_task_ids_deduped(self, config):
        planner = FakePlanner(_analysis(_sub("a"), _sub("a"), _sub("b")))
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert sorted(r.task_id for r in result.sub_task_results) == ["a", "b"]

    def test_dependency_on_earlier_iteration_dropped(self, config):
        planner = FakePlanner(
            _analysis(_sub("a")),
            decisions=[_decision("SPAWN_NEW", new_sub_tasks=[_sub("b", depends_on=["a"])])],
        )
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert [r.task_id for r in result.sub_task_results] == ["a", "b"]

    def test_planner_without_summarizer_uses_default(self, config):
        orchestrator = _orchestrator(config, PlanOnlyPlanner(_analysis(_sub("a"), _sub("b"))))
        result = orchestrator.orchestrate("Plan trip")
        assert result.summary == "Task finished. Succeeded: 2/2"

    def test_summary_failure_uses_default(self, config):
        planner = FakePlanner(_analysis(_sub("a")), summary=RuntimeError("model down"))
        result = _orchestrator(config, planner).orchestrate("Plan trip")
        assert result.success
        assert result.summary == "Task finished. Succeeded: 1/1"

    def test_blank_summary_uses_default(self, config):
        planner = FakePlanner(_analysis(_sub("a")), summary="   ")
        result = _orchestrator(config, planner).orchestrate("Plan trip")
        assert result.summary == "Task finished. Succeeded: 1/1"

    def test_surfaces_released(self, config):
        allocator = FakeAllocator()
        planner = FakePlanner(_analysis(_sub("a", target_app="Maps"), _sub("b", target_app="Clock")))
        orchestrator = _orchestrator(config, planner, allocator=allocator)
        orchestrator.orchestrate("Plan trip")
        assert len(allocator.acquired) == 2
        assert sorted(allocator.released) == sorted(allocator.acquired)


class TestFailure:
    def test_planner_exception_fails_run(self, config):
        orchestrator = _orchestrator(config, FakePlanner(RuntimeError("planner unreachable")))
        result = orchestrator.orchestrate("Plan trip")
        assert not result.success
        assert result.summary == "Execution failed: planner unreachable"
        assert orchestrator.state == RunFailed("planner unreachable")
        assert orchestrator.tree.root.status == NodeStatus.FAILED

    def test_decide_exception_keeps_results(self, config):
        planner = FakePlanner(_analysis(_sub("a")), decisions=[RuntimeError("decide failed")])
        orchestrator = _orchestrator(config, planner)
        result = orchestrator.orchestrate("Plan trip")
        assert not result.success
        assert [r.task_id for r in result.sub_task_results] == ["a"]
        assert isinstance(orchestrator.state, RunFailed)


class TestStop:
    def test_stop_keeps_partial_results(self, config):
        orchestrator = None

        def stop_after(messages):
            orchestrator.stop()
            return 'finish(message="A done")'

        reasoner = FakeReasoner({"task a": [stop_after]})
        planner = FakePlanner(_analysis(_sub("a"), _sub("b", depends_on=["a"])))
        orchestrator = _orchestrator(config, planner, reasoner)
        result = orchestrator.orchestrate("Plan trip")

        assert result.is_cancelled
        assert not result.success
        assert result.summary == "Task cancelled"
        assert [r.task_id for r in result.sub_task_results] == ["a"]
        assert orchestrator.state == RunFailed("Task cancelled")
        assert planner.decide_calls == []
        statuses = {c.task_id: c.status for c in orchestrator.tree.children()}
        assert statuses == {"a": NodeStatus.COMPLETED, "b": NodeStatus.SKIPPED}
        assert "```mermaid" in result.flow_diagram

    def test_stop_before_start_is_honoured(self, config):
        reasoner = FakeReasoner()
        orchestrator = _orchestrator(config, reasoner=reasoner)
        orchestrator.stop()
        result = orchestrator.orchestrate("Set an alarm")
        assert result.is_cancelled
        assert not result.success
        assert reasoner.calls == []
        assert orchestrator.state == RunFailed("Task cancelled")

    def test_stop_before_batch_is_honoured(self, config):
        reasoner = FakeReasoner()
        orchestrator = _orchestrator(config, reasoner=reasoner)
        orchestrator.stop()
        result = orchestrator.run_batch([TaskDefinition(id="a", description="task a")])
        assert result.is_cancelled
        assert reasoner.calls == []

    def test_reset_clears_previous_stop(self, config):
        orchestrator = _orchestrator(config)
        orchestrator.stop()
        orchestrator.reset()
        result = orchestrator.orchestrate("Set an alarm")
        assert result.success


class TestRunBatch:
    def test_runs_without_planning(self, config):
        planner = FakePlanner("unused")
        orchestrator = _orchestrator(config, planner)
        tasks = [
            TaskDefinition(id="a", description="task a"),
            TaskDefinition(id="b", description="task b", depends_on=["a"]),
        ]
        result = orchestrator.run_batch(tasks, title="Morning routine")
        assert result.success
        assert result.summary == "Task finished. Succeeded: 2/2"
        assert [r.task_id for r in result.sub_task_results] == ["a", "b"]
        assert planner.decide_calls == []
        assert orchestrator.tree.root.description == "Morning routine"

    def test_duplicate_ids_raise(self, config):
        tasks = [TaskDefinition(id="a", description="x"), TaskDefinition(id="a", description="y")]
        with pytest.raises(ValueError):
            _orchestrator(config).run_batch(tasks)


class TestReset:
    def test_reset(self, config):
        orchestrator = _orchestrator(config)
        orchestrator.orchestrate("Set an alarm")
        orchestrator.reset()
        assert orchestrator.state == Idle()
        assert orchestrator.results == []
        assert orchestrator.tree is None

    def test_decide_without_planner_completes(self, config):
        decision = _orchestrator(config).decide("t", TaskAnalysis(requires_multi_task=True))
        assert decision.action == NextAction.COMPLETE

    def test_decide_sees_accumulated_results(self, config):
        planner = FakePlanner(_analysis(_sub("a")), decisions=[_decision("RETRY", retry_task_ids=["a"])])
        orchestrator = _orchestrator(config, planner)
        orchestrator.run_batch([TaskDefinition(id="a", description="task a")])
        decision = orchestrator.decide("t", TaskAnalysis(requires_multi_task=True))
        assert decision.action == NextAction.RETRY
        assert [r.task_id for r in planner.decide_calls[0]] == ["a"]

    def test_states_are_distinct_types(self):
        for state in (Idle(), Analyzing("t"), Decomposing(None), Deciding(), Summarizing()):
            assert phase_name(state)
