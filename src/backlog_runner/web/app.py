"""HTTP control surface and dashboard for the backlog runner."""

import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from backlog_runner.core.orchestrator import Orchestrator, create_orchestrator
from backlog_runner.web.dashboard import get_dashboard_html

logger = logging.getLogger(__name__)


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_status(request: Request):
    return JSONResponse(_orchestrator(request).status())


async def api_list_tasks(request: Request):
    orchestrator = _orchestrator(request)
    try:
        tasks = await run_in_threadpool(orchestrator.tasks.list_tasks)
    except (OSError, UnicodeDecodeError) as e:
        return JSONResponse({"error": f"Could not read tasks: {e}"}, status_code=503)
    return JSONResponse([_task_dict(orchestrator, t) for t in tasks])


async def api_get_task(request: Request):
    orchestrator = _orchestrator(request)
    task_id = request.path_params["task_id"]
    try:
        task = await run_in_threadpool(orchestrator.tasks.get_task, task_id)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = _task_dict(orchestrator, task)
    td["description"] = task.description
    return JSONResponse(td)


async def api_events(request: Request):
    raw = request.query_params.get("limit")
    try:
        limit = int(raw) if raw is not None else None
    except ValueError:
        return JSONResponse({"error": f"Invalid limit: {raw}"}, status_code=400)
    events = _orchestrator(request).events.recent(limit)
    return JSONResponse([e.to_dict() for e in events])


async def api_start_next(request: Request):
    orchestrator = _orchestrator(request)
    thread = orchestrator.start_next_in_background()
    if thread is None:
        return JSONResponse({"error": "Already processing a task"}, status_code=409)
    return JSONResponse({"started": True}, status_code=202)


async def api_toggle_auto(request: Request):
    body = await request.body()
    enabled = None
    if body:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if isinstance(payload, dict):
            enabled = payload.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            return JSONResponse({"error": "enabled must be a boolean"}, status_code=400)
    auto = _orchestrator(request).toggle_auto(enabled)
    return JSONResponse({"auto": auto})


async def api_snapshot(request: Request):
    snapshot = await run_in_threadpool(_orchestrator(request).manual_snapshot)
    if snapshot is None:
        return JSONResponse({"error": "Failed to create snapshot"}, status_code=500)
    return JSONResponse({
        "ref": snapshot.ref,
        "branch": snapshot.branch,
        "created_at": snapshot.created_at.isoformat(),
    })


async def api_rollback(request: Request):
    orchestrator = _orchestrator(request)
    if orchestrator.busy:
        return JSONResponse({"error": "Cannot roll back while a task is running"}, status_code=409)
    done = await run_in_threadpool(orchestrator.rollback_last)
    return JSONResponse({"rolled_back": done})


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(orchestrator: Orchestrator, task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "labels": sorted(task.labels),
        "revision": task.is_revision,
        "ready": orchestrator.tasks.is_ready(task),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(orchestrator: Orchestrator | None = None) -> Starlette:
    orchestrator = orchestrator or create_orchestrator()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        problems = await run_in_threadpool(orchestrator.check_environment)
        if not problems and orchestrator.config.auto_start:
            orchestrator.toggle_auto(True)
        try:
            yield
        finally:
            await run_in_threadpool(orchestrator.shutdown)

    routes = [
        Route("/", index),
        Route("/api/status", api_status),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/events", api_events),
        Route("/api/start-next", api_start_next, methods=["POST"]),
        Route("/api/auto", api_toggle_auto, methods=["POST"]),
        Route("/api/snapshot", api_snapshot, methods=["POST"]),
        Route("/api/rollback", api_rollback, methods=["POST"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.orchestrator = orchestrator
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, orchestrator: Orchestrator | None = None):
    app = create_app(orchestrator)
    logger.info("Serving dashboard on http://%s:%s", host, port)
    uvicorn.run(app, host=host, port=port)
