"""Web dashboard API for device run history."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse
from starlette.routing import Route

from device_orchestrator.config import get_config
from device_orchestrator.core import history
from device_orchestrator.db.engine import init_db
from device_orchestrator.web.dashboard import get_dashboard_html


def _get_db():
    config = get_config()
    return init_db(config.db_path)


def _run_id(request: Request) -> int | None:
    try:
        return int(request.path_params["run_id"])
    except ValueError:
        return None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_runs(request: Request):
    status_filter = request.query_params.get("status")
    try:
        limit = int(request.query_params.get("limit", "20"))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    db = _get_db()
    try:
        runs = history.list_runs(db, status=status_filter, limit=limit)
        return JSONResponse([_run_summary_dict(r) for r in runs])
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    finally:
        db.close()


async def api_get_run(request: Request):
    run_id = _run_id(request)
    if run_id is None:
        return JSONResponse({"error": "Run not found"}, status_code=404)
    db = _get_db()
    try:
        run = history.get_run(db, run_id)
        if not run:
            return JSONResponse({"error": "Run not found"}, status_code=404)
        rd = run.to_dict()
        rd["events"] = [e.to_dict() for e in history.get_run_events(db, run_id)]
        return JSONResponse(rd)
    finally:
        db.close()


async def api_run_flow(request: Request):
    run_id = _run_id(request)
    if run_id is None:
        return JSONResponse({"error": "Run not found"}, status_code=404)
    db = _get_db()
    try:
        run = history.get_run(db, run_id)
        if not run:
            return JSONResponse({"error": "Run not found"}, status_code=404)
        return PlainTextResponse(run.flow_diagram or "")
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _run_summary_dict(run) -> dict:
    return {
        "id": run.id,
        "task": run.task,
        "status": run.status,
        "phase": run.phase,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/runs", api_list_runs),
        Route("/api/runs/{run_id}", api_get_run),
        Route("/api/runs/{run_id}/flow", api_run_flow),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
