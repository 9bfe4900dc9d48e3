"""CLI entry point for the device orchestrator."""

import json
import logging
import sys
from pathlib import Path

import click

from device_orchestrator.config import get_config
from device_orchestrator.core import history
from device_orchestrator.core.control import ProgressBus
from device_orchestrator.core.planning import parse_analysis
from device_orchestrator.core.runner import build_orchestrator, execute_run
from device_orchestrator.core.states import (
    FallbackToMain,
    TaskProgress,
    is_terminal,
    phase_name,
    state_name,
)
from device_orchestrator.core.tasks import (
    TaskDefinition,
    group_by_dependency,
    slugify,
    sort_by_priority,
    validate_tasks,
)
from device_orchestrator.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


class ConsoleInteraction:
    """Asks the person at the terminal about sensitive actions and takeovers."""

    def confirm(self, message: str) -> bool:
        return click.confirm(f"Sensitive action: {message}\nProceed?", default=False)

    def takeover(self, message: str) -> None:
        click.pause(f"Manual step needed: {message}\nPress any key when done...")


class ProgressPrinter:
    """Echoes phase changes and task outcomes as they happen."""

    def __init__(self):
        self._last_phase = None

    def __call__(self, event):
        if isinstance(event, TaskProgress):
            if is_terminal(event.state):
                icon = "✓" if state_name(event.state) == "completed" else "✗"
                click.echo(f"  {icon} {event.task_id} ({event.step_count} steps)")
            elif isinstance(event.state, FallbackToMain):
                click.echo(f"  ! {event.task_id} runs on the main display: {event.state.reason}")
            return
        try:
            phase = phase_name(event)
        except TypeError:
            return
        if phase != self._last_phase:
            self._last_phase = phase
            click.echo(f"[{phase}]")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """devo - Device Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Run Commands ──────────────────────────────────────────────────────────────


@main.command("run")
@click.argument("task")
@click.option("--no-plan", is_flag=True, help="Run as a single task without asking the planner")
@click.option("--yes", "-y", is_flag=True, help="Approve sensitive actions without asking")
@click.option("--json-output", "--json", is_flag=True, help="Output the result as JSON")
def run_command(task, no_plan, yes, json_output):
    """Run a natural-language task on the device."""
    config = get_config()
    bus = ProgressBus()
    if not json_output:
        bus.subscribe(ProgressPrinter())
    orchestrator = build_orchestrator(
        config,
        use_planner=not no_plan,
        interaction=None if yes else ConsoleInteraction(),
        bus=bus,
    )
    run, result = execute_run(config, orchestrator, task)
    _echo_result(run, result, json_output)
    if not result.success:
        sys.exit(1)


@main.command("tasks")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--title", default=None, help="Title stored with the run")
@click.option("--yes", "-y", is_flag=True, help="Approve sensitive actions without asking")
@click.option("--json-output", "--json", is_flag=True, help="Output the result as JSON")
def tasks_command(file, title, yes, json_output):
    """Run the task set in a JSON FILE without planning.

    The file holds a list of objects with 'description' and optionally
    'id', 'target_app', 'priority' and 'depends_on'.
    """
    try:
        definitions = _load_tasks(file)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    config = get_config()
    bus = ProgressBus()
    if not json_output:
        bus.subscribe(ProgressPrinter())
    orchestrator = build_orchestrator(
        config,
        use_planner=False,
        interaction=None if yes else ConsoleInteraction(),
        bus=bus,
    )
    run, result = execute_run(config, orchestrator, title or file.stem, batch=definitions)
    _echo_result(run, result, json_output)
    if not result.success:
        sys.exit(1)


@main.command("plan")
@click.argument("task")
def plan_command(task):
    """Show how the planner would split TASK, without running it."""
    from device_orchestrator.integrations.model_client import (
        ModelClient,
        ModelClientError,
        ModelPlanner,
    )

    config = get_config()
    with ModelClient.for_planner(config) as client:
        try:
            analysis = parse_analysis(ModelPlanner(client).plan(task))
        except ModelClientError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    click.echo(f"Multi-task: {'yes' if analysis.requires_multi_task else 'no'}")
    click.echo(f"Strategy: {analysis.execution_strategy.value}")
    if analysis.reasoning:
        click.echo(f"Reasoning: {analysis.reasoning}")
    if not analysis.sub_tasks:
        return
    waves = group_by_dependency(sort_by_priority(s.to_definition() for s in analysis.sub_tasks))
    for i, wave in enumerate(waves, 1):
        click.echo(f"Wave {i}:")
        for t in wave:
            app = f" [{t.target_app}]" if t.target_app else ""
            deps = f" (after {', '.join(sorted(t.depends_on))})" if t.depends_on else ""
            click.echo(f"  {t.id}{app}: {t.description}{deps}")


# ── History Commands ──────────────────────────────────────────────────────────


@main.group("runs")
def runs_group():
    """Inspect stored runs."""
    pass


@runs_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--limit", default=20, type=int, help="Number of runs to show")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def runs_list(status, limit, json_output):
    """List recent runs."""
    with _get_db() as db:
        try:
            runs = history.list_runs(db, status=status, limit=limit)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if json_output:
        click.echo(json.dumps([_run_dict(r) for r in runs], indent=2))
        return
    if not runs:
        click.echo("No runs found.")
        return

    status_icons = {"running": "●", "completed": "✓", "failed": "✗", "cancelled": "○"}
    for run in runs:
        icon = status_icons.get(run.status, "?")
        click.echo(f"  {icon} #{run.id} {run.task} ({run.status})")


@runs_group.command("show")
@click.argument("run_id", type=int)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def runs_show(run_id, json_output):
    """Show a run with its sub-task results."""
    with _get_db() as db:
        run = history.get_run(db, run_id)
        if not run:
            click.echo(f"Run not found: {run_id}", err=True)
            sys.exit(1)
        events = history.get_run_events(db, run_id)

    if json_output:
        data = run.to_dict()
        data["events"] = [e.to_dict() for e in events]
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Run #{run.id}: {run.task}")
    click.echo(f"  Status: {run.status}")
    click.echo(f"  Phase: {run.phase}")
    if run.started_at:
        click.echo(f"  Started: {run.started_at.isoformat()}")
    if run.completed_at:
        click.echo(f"  Completed: {run.completed_at.isoformat()}")
    if run.summary:
        click.echo(f"  Summary: {run.summary}")
    for r in run.results:
        icon = "✓" if r.success else "✗"
        click.echo(
            f"    {icon} {r.task_id}: {r.result} "
            f"({r.steps_executed} steps, {r.execution_time_ms / 1000:.1f}s)"
        )


@runs_group.command("flow")
@click.argument("run_id", type=int)
def runs_flow(run_id):
    """Print the Mermaid flow diagram of a run."""
    with _get_db() as db:
        run = history.get_run(db, run_id)
    if not run:
        click.echo(f"Run not found: {run_id}", err=True)
        sys.exit(1)
    if not run.flow_diagram:
        click.echo("No flow diagram recorded.")
        return
    click.echo(run.flow_diagram)


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from device_orchestrator.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from device_orchestrator.mcp.server import mcp
    from device_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _load_tasks(path: Path) -> list[TaskDefinition]:
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e
    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list) or not data:
        raise ValueError(f"{path} must contain a non-empty list of tasks")

    definitions = []
    for i, item in enumerate(data, 1):
        if not isinstance(item, dict) or not item.get("description"):
            raise ValueError(f"Task #{i} needs a description")
        definitions.append(TaskDefinition(
            id=str(item.get("id") or slugify(item["description"]) or f"task-{i}"),
            description=item["description"],
            target_app=item.get("target_app"),
            priority=int(item.get("priority", 0)),
            depends_on=frozenset(item.get("depends_on") or []),
        ))
    validate_tasks(definitions)
    return definitions


def _run_dict(run) -> dict:
    return {
        "id": run.id,
        "task": run.task,
        "status": run.status,
        "phase": run.phase,
        "summary": run.summary,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }


def _echo_result(run, result, json_output: bool):
    if json_output:
        click.echo(json.dumps(run.to_dict(), indent=2))
        return
    click.echo(f"Run #{run.id} {run.status}")
    click.echo(result.summary)
    for r in result.sub_task_results:
        icon = "✓" if r.success else "✗"
        click.echo(f"  {icon} {r.task_id}: {r.result}")
    if result.flow_diagram:
        click.echo("")
        click.echo(result.flow_diagram)


if __name__ == "__main__":
    main()
