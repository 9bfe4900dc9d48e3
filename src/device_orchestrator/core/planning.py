"""Planning data model, planner prompts, and fail-safe parsing of planner output.

Planner replies are free-form model text that should contain one JSON
object. Anything that cannot be read falls back to a safe default: a
single-task analysis, or a COMPLETE decision.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from enum import Enum

from device_orchestrator.core.states import MAIN_SURFACE
from device_orchestrator.core.tasks import TaskDefinition

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ExecutionStrategy(str, Enum):
    SEQUENTIAL = "SEQUENTIAL"
    CONCURRENT = "CONCURRENT"
    HYBRID = "HYBRID"
    ADAPTIVE = "ADAPTIVE"


class NextAction(str, Enum):
    CONTINUE = "CONTINUE"
    SPAWN_NEW = "SPAWN_NEW"
    RETRY = "RETRY"
    COMPLETE = "COMPLETE"
    ABORT = "ABORT"


@dataclass
class SubTaskDefinition:
    id: str
    description: str
    target_app: str | None = None
    priority: int = 0
    depends_on: list[str] = field(default_factory=list)
    can_run_concurrently: bool = True
    estimated_steps: int = 10

    def to_definition(self, known_ids: set[str] | None = None) -> TaskDefinition:
        """Convert to a schedulable task.

        With ``known_ids`` given, dependencies on ids outside that set are
        dropped so a batch never waits on a task it does not contain.
        """
        deps = self.depends_on
        if known_ids is not None:
            deps = [d for d in deps if d in known_ids]
        return TaskDefinition(
            id=self.id,
            description=self.description,
            target_app=self.target_app,
            priority=self.priority,
            depends_on=frozenset(deps),
        )


@dataclass
class TaskAnalysis:
    requires_multi_task: bool
    reasoning: str = ""
    sub_tasks: list[SubTaskDefinition] = field(default_factory=list)
    execution_strategy: ExecutionStrategy = ExecutionStrategy.SEQUENTIAL
    estimated_complexity: int = 1


@dataclass
class NextStepDecision:
    action: NextAction
    reasoning: str = ""
    new_sub_tasks: list[SubTaskDefinition] = field(default_factory=list)
    retry_task_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SubTaskResult:
    task_id: str
    success: bool
    result: str
    steps_executed: int = 0
    surface_id: int = MAIN_SURFACE
    execution_time_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OrchestratorResult:
    success: bool
    summary: str
    flow_diagram: str = ""
    sub_task_results: list[SubTaskResult] = field(default_factory=list)
    # ExecutionTree; typed loosely to keep this module free of tree imports.
    execution_tree: object | None = None
    is_cancelled: bool = False

    @classmethod
    def cancelled(cls, results=None, flow_diagram: str = "", tree=None) -> "OrchestratorResult":
        return cls(
            success=False,
            summary="Task cancelled",
            flow_diagram=flow_diagram,
            sub_task_results=list(results or []),
            execution_tree=tree,
            is_cancelled=True,
        )

    @classmethod
    def failed(cls, error: str, results=None, tree=None) -> "OrchestratorResult":
        return cls(
            success=False,
            summary=f"Execution failed: {error}",
            sub_task_results=list(results or []),
            execution_tree=tree,
        )


# ── Parsing ──────────────────────────────────────────────────────────────


def _field(data: dict, snake: str, default=None):
    """Read a key in snake_case or camelCase."""
    if snake in data:
        return data[snake]
    head, *rest = snake.split("_")
    camel = head + "".join(part.title() for part in rest)
    return data.get(camel, default)


def _extract_json(text: str) -> dict:
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise ValueError("No JSON object found")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def parse_sub_task(data: dict) -> SubTaskDefinition:
    task_id = _field(data, "id")
    description = _field(data, "description")
    if not task_id or not description:
        raise ValueError(f"Sub-task needs an id and a description: {data!r}")
    return SubTaskDefinition(
        id=str(task_id),
        description=str(description),
        target_app=_field(data, "target_app") or None,
        priority=int(_field(data, "priority", 0) or 0),
        depends_on=[str(d) for d in _field(data, "depends_on", None) or []],
        can_run_concurrently=bool(_field(data, "can_run_concurrently", True)),
        estimated_steps=int(_field(data, "estimated_steps", 10) or 10),
    )


def parse_analysis(text: str) -> TaskAnalysis:
    """Parse a planner analysis; any failure means a single-task run."""
    try:
        data = _extract_json(text)
        strategy = str(_field(data, "execution_strategy", "SEQUENTIAL")).upper()
        return TaskAnalysis(
            requires_multi_task=bool(_field(data, "requires_multi_task", False)),
            reasoning=str(_field(data, "reasoning", "")),
            sub_tasks=[parse_sub_task(s) for s in _field(data, "sub_tasks", None) or []],
            execution_strategy=ExecutionStrategy(strategy),
            estimated_complexity=int(_field(data, "estimated_complexity", 1) or 1),
        )
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("Could not parse task analysis, running as a single task: %s", e)
        return TaskAnalysis(
            requires_multi_task=False,
            reasoning=f"Could not parse analysis: {e}",
        )


def parse_decision(text: str) -> NextStepDecision:
    """Parse a planner decision; any failure means COMPLETE."""
    try:
        data = _extract_json(text)
        return NextStepDecision(
            action=NextAction(str(_field(data, "action", "")).upper()),
            reasoning=str(_field(data, "reasoning", "")),
            new_sub_tasks=[parse_sub_task(s) for s in _field(data, "new_sub_tasks", None) or []],
            retry_task_ids=[str(i) for i in _field(data, "retry_task_ids", None) or []],
        )
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("Could not parse next-step decision, completing: %s", e)
        return NextStepDecision(
            action=NextAction.COMPLETE,
            reasoning=f"Could not parse decision: {e}",
        )


# ── Prompts ──────────────────────────────────────────────────────────────

PLANNER_SYSTEM_PROMPT = """You are a task orchestration assistant for a phone automation agent. You:

1. Analyse the user's task and decide whether it needs several concurrent sub-tasks
2. Split complex tasks into sub-tasks that can run on their own
3. Work out dependencies between sub-tasks
4. Watch execution results and decide what to do next

Use several sub-tasks when the task touches more than one app, when the
parts are independent of each other, or when running them in parallel
saves real time.

Always answer with a single JSON object."""

SUMMARY_SYSTEM_PROMPT = """You summarise the results of phone automation runs.
State what was achieved, point out the important results, explain likely
causes of failed sub-tasks, and suggest improvements when useful.
Be short and precise."""


def build_analysis_prompt(task: str) -> str:
    return f"""Analyse the following user task, decide whether it needs concurrent sub-tasks, and decompose it.

User task: {task}

Consider:
1. Does the task involve several independent app operations?
2. Do those operations depend on each other?
3. Would running them in parallel make it faster?

Reply with JSON:
```json
{{
    "requires_multi_task": true,
    "reasoning": "why",
    "sub_tasks": [
        {{
            "id": "task_1",
            "description": "what the sub-task must do",
            "target_app": "app name or null",
            "priority": 0,
            "depends_on": [],
            "can_run_concurrently": true,
            "estimated_steps": 10
        }}
    ],
    "execution_strategy": "SEQUENTIAL | CONCURRENT | HYBRID | ADAPTIVE",
    "estimated_complexity": 1
}}
```"""


def build_decision_prompt(task: str, analysis: TaskAnalysis, results: list[SubTaskResult]) -> str:
    lines = "\n".join(
        f"  - {r.task_id}: {'succeeded' if r.success else 'failed'} - {r.result}"
        for r in results
    )
    return f"""Original task: {task}

Analysis:
- Execution strategy: {analysis.execution_strategy.value}
- Estimated complexity: {analysis.estimated_complexity}

Sub-task results so far:
{lines}

Choose the next step:
1. CONTINUE - everything is done, move on to the summary
2. SPAWN_NEW - new sub-tasks are needed
3. RETRY - failed sub-tasks should run again
4. COMPLETE - the task is complete
5. ABORT - stop because of a critical failure

Reply with JSON:
```json
{{
    "action": "CONTINUE | SPAWN_NEW | RETRY | COMPLETE | ABORT",
    "reasoning": "why",
    "new_sub_tasks": [],
    "retry_task_ids": []
}}
```"""


def build_summary_prompt(task: str, results: list[SubTaskResult]) -> str:
    details = "\n\n".join(
        f"Sub-task: {r.task_id}\n"
        f"Status: {'✓ succeeded' if r.success else '✗ failed'}\n"
        f"Steps: {r.steps_executed}\n"
        f"Time: {r.execution_time_ms}ms\n"
        f"Result: {r.result}"
        for r in results
    )
    succeeded = sum(1 for r in results if r.success)
    total_ms = sum(r.execution_time_ms for r in results)
    return f"""Write a summary of this task run.

Original task: {task}

Results:
{details}

Statistics:
- Sub-tasks: {len(results)}
- Succeeded: {succeeded}
- Failed: {len(results) - succeeded}
- Total time: {total_ms}ms

Cover what was achieved, the key results, the reasons for any failures,
and suggestions if there are any."""


def default_summary(results: list[SubTaskResult]) -> str:
    succeeded = sum(1 for r in results if r.success)
    return f"Task finished. Succeeded: {succeeded}/{len(results)}"
