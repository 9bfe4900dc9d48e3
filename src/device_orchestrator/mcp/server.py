"""MCP server exposing device orchestration tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from device_orchestrator.config import get_config
from device_orchestrator.core import history
from device_orchestrator.core.planning import parse_analysis
from device_orchestrator.core.runner import RunManager
from device_orchestrator.core.tasks import TaskDefinition, group_by_dependency, sort_by_priority
from device_orchestrator.db.engine import init_db
from device_orchestrator.integrations.model_client import ModelClient, ModelClientError, ModelPlanner


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: object
    runs: RunManager


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection and the run manager; stop active runs on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    runs = RunManager(config)
    try:
        yield AppContext(db=db, config=config, runs=runs)
    finally:
        runs.shutdown()
        db.close()


mcp = FastMCP("device-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _cfg(ctx: Context):
    return _ctx(ctx).config


# ── Run Tools ─────────────────────────────────────────────────────────────────


@mcp.tool()
def orchestrate_task(ctx: Context, task: str) -> dict:
    """Start a device run for a natural-language task.

    The planner decides whether to split the task into concurrent sub-tasks.
    The run continues in the background; use run_status to follow it.
    """
    run = _ctx(ctx).runs.start(task)
    return {"run_id": run.id, "task": run.task, "status": run.status}


@mcp.tool()
def plan_task(ctx: Context, task: str) -> dict:
    """Ask the planner how it would decompose a task, without running anything."""
    config = _cfg(ctx)
    planner = ModelPlanner(ModelClient.for_planner(config))
    try:
        analysis = parse_analysis(planner.plan(task))
    except ModelClientError as e:
        return {"error": str(e)}
    finally:
        planner.client.close()
    definitions = [s.to_definition() for s in analysis.sub_tasks]
    waves = group_by_dependency(sort_by_priority(definitions)) if definitions else []
    return {
        "requires_multi_task": analysis.requires_multi_task,
        "reasoning": analysis.reasoning,
        "execution_strategy": analysis.execution_strategy.value,
        "estimated_complexity": analysis.estimated_complexity,
        "sub_tasks": [_sub_task_dict(s) for s in analysis.sub_tasks],
        "waves": [[t.id for t in wave] for wave in waves],
    }


@mcp.tool()
def run_task_batch(ctx: Context, tasks: list[dict], title: str | None = None) -> dict:
    """Run an explicit set of sub-tasks without planning.

    Each task needs 'id' and 'description' and may set 'target_app',
    'priority' and 'depends_on' (list of ids). Runs in the background.
    """
    try:
        definitions = [_task_from_dict(t) for t in tasks]
    except (KeyError, TypeError, ValueError) as e:
        return {"error": f"Invalid task list: {e}"}
    ids = [d.id for d in definitions]
    if len(set(ids)) != len(ids):
        return {"error": "Duplicate task ids in batch"}
    run = _ctx(ctx).runs.start(title or f"Batch: {', '.join(ids)}", batch=definitions)
    return {"run_id": run.id, "task": run.task, "status": run.status}


@mcp.tool()
def pause_run(ctx: Context, run_id: int) -> dict:
    """Pause an active run. Tasks stop at their next step and keep their context."""
    if not _ctx(ctx).runs.pause(run_id):
        return {"error": f"No active run: {run_id}"}
    return {"run_id": run_id, "paused": True}


@mcp.tool()
def resume_run(ctx: Context, run_id: int) -> dict:
    """Resume a paused run."""
    if not _ctx(ctx).runs.resume(run_id):
        return {"error": f"No active run: {run_id}"}
    return {"run_id": run_id, "paused": False}


@mcp.tool()
def stop_run(ctx: Context, run_id: int) -> dict:
    """Stop an active run. Results recorded so far are kept."""
    if not _ctx(ctx).runs.stop(run_id):
        return {"error": f"No active run: {run_id}"}
    return {"run_id": run_id, "stopped": True}


@mcp.tool()
def run_status(ctx: Context, run_id: int) -> dict:
    """Live phase and per-task states of a run started by this server."""
    status = _ctx(ctx).runs.status(run_id)
    if status is None:
        return {"error": f"Run not tracked by this server: {run_id}; use get_run for its history"}
    return status


# ── History Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def list_runs(ctx: Context, status: str | None = None, limit: int = 20) -> list[dict]:
    """List recent runs, optionally filtered by status (running/completed/failed/cancelled)."""
    app = _ctx(ctx)
    try:
        runs = history.list_runs(app.db, status=status, limit=limit)
    except ValueError as e:
        return [{"error": str(e)}]
    return [_run_to_dict(r) for r in runs]


@mcp.tool()
def get_run(ctx: Context, run_id: int) -> dict:
    """Stored details of a run: summary, sub-task results, flow diagram and events."""
    app = _ctx(ctx)
    run = history.get_run(app.db, run_id)
    if not run:
        return {"error": f"Run not found: {run_id}"}
    result = run.to_dict()
    result["events"] = [e.to_dict() for e in history.get_run_events(app.db, run_id)]
    return result


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_from_dict(data: dict) -> TaskDefinition:
    return TaskDefinition(
        id=str(data["id"]),
        description=str(data["description"]),
        target_app=data.get("target_app"),
        priority=int(data.get("priority", 0)),
        depends_on=frozenset(str(d) for d in data.get("depends_on") or []),
    )


def _sub_task_dict(sub_task) -> dict:
    return {
        "id": sub_task.id,
        "description": sub_task.description,
        "target_app": sub_task.target_app,
        "priority": sub_task.priority,
        "depends_on": sub_task.depends_on,
        "estimated_steps": sub_task.estimated_steps,
    }


def _run_to_dict(run) -> dict:
    return {
        "id": run.id,
        "task": run.task,
        "status": run.status,
        "phase": run.phase,
        "summary": run.summary,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }
