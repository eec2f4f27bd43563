"""MCP server exposing the backlog runner's controls as tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from backlog_runner.config import Config
from backlog_runner.core.orchestrator import Orchestrator, create_orchestrator
from backlog_runner.models import Task


_config: Config | None = None


def configure(config: Config | None) -> None:
    """Use `config` instead of the environment when the server starts."""
    global _config
    _config = config


@dataclass
class AppContext:
    orchestrator: Orchestrator
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the orchestrator on startup, stop it on shutdown."""
    orchestrator = create_orchestrator(_config)
    orchestrator.check_environment()
    if orchestrator.config.auto_start:
        orchestrator.toggle_auto(True)
    try:
        yield AppContext(orchestrator=orchestrator, config=orchestrator.config)
    finally:
        orchestrator.shutdown()


mcp = FastMCP("backlog-runner", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _orch(ctx: Context) -> Orchestrator:
    return _ctx(ctx).orchestrator


# ── Queue Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def list_ready_tasks(ctx: Context) -> list[dict]:
    """List tasks waiting in the ready column, in the order they will run."""
    return [_task_to_dict(t) for t in _orch(ctx).tasks.list_ready()]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task's parsed header and description by its file name."""
    try:
        task = _orch(ctx).tasks.get_task(task_id)
    except ValueError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = _task_to_dict(task)
    result["description"] = task.description
    return result


# ── Run Control Tools ─────────────────────────────────────────────────────────


@mcp.tool()
def start_next_task(ctx: Context) -> dict:
    """Start processing the next ready task in the background.

    Returns immediately; poll get_status or recent_events for progress.
    """
    thread = _orch(ctx).start_next_in_background()
    if thread is None:
        return {"error": "Already processing a task"}
    return {"started": True}


@mcp.tool()
def toggle_auto_run(ctx: Context, enabled: bool | None = None) -> dict:
    """Enable or disable automatic processing. Omit `enabled` to flip the current setting."""
    return {"auto": _orch(ctx).toggle_auto(enabled)}


@mcp.tool()
def create_snapshot(ctx: Context) -> dict:
    """Record the current HEAD commit as a snapshot."""
    snapshot = _orch(ctx).manual_snapshot()
    if snapshot is None:
        return {"error": "Failed to create snapshot"}
    return {
        "ref": snapshot.ref,
        "branch": snapshot.branch,
        "created_at": snapshot.created_at.isoformat(),
    }


@mcp.tool()
def rollback_last_task(ctx: Context) -> dict:
    """Undo the most recent task commit. Refuses if the last commit wasn't made by the runner."""
    return {"rolled_back": _orch(ctx).rollback_last()}


# ── Status Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def get_status(ctx: Context) -> dict:
    """Get the engine state, current task, auto-run flag and counters."""
    return _orch(ctx).status()


@mcp.tool()
def recent_events(ctx: Context, limit: int = 20) -> list[dict]:
    """Get the most recent run events, oldest first."""
    return [e.to_dict() for e in _orch(ctx).events.recent(limit)]


@mcp.tool()
def check_environment(ctx: Context) -> dict:
    """Validate git, the main branch, the queue directory and the agent CLI."""
    problems = _orch(ctx).check_environment()
    return {"ok": not problems, "problems": problems}


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_to_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "labels": sorted(task.labels),
        "revision": task.is_revision,
    }
