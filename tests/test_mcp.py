"""Tests for the MCP tool functions, called with a stub request context."""

import sys
from types import SimpleNamespace

import pytest

from backlog_runner.core.orchestrator import Orchestrator
from backlog_runner.mcp import server

READY_TASK = '# Add feature\n\n---\nstatus: "For Agent"\n---\n\nWrite feature.txt\n'


@pytest.fixture
def ctx(make_config, write_task):
    write_task("task-1 - Add feature.md", READY_TASK)
    orchestrator = Orchestrator(make_config(agent_command=(sys.executable, "-c", "pass")))
    app = server.AppContext(orchestrator=orchestrator, config=orchestrator.config)
    yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))
    orchestrator.shutdown(wait_seconds=10)


def test_list_ready_tasks(ctx):
    tasks = server.list_ready_tasks(ctx)
    assert tasks == [{
        "id": "task-1 - Add feature.md",
        "title": "Add feature",
        "status": "For Agent",
        "labels": [],
        "revision": False,
    }]


def test_get_task(ctx):
    assert server.get_task(ctx, "task-1 - Add feature.md")["description"] == "Write feature.txt"
    assert "error" in server.get_task(ctx, "task-9.md")
    assert "error" in server.get_task(ctx, "../etc/passwd")


def test_start_next_task(ctx):
    assert server.start_next_task(ctx) == {"started": True}
    orchestrator = ctx.request_context.lifespan_context.orchestrator
    assert orchestrator.shutdown(wait_seconds=10)
    assert orchestrator.stats.completed + orchestrator.stats.errors <= 1


def test_status_and_events(ctx):
    status = server.get_status(ctx)
    assert status["state"] == "idle"
    assert server.check_environment(ctx) == {"ok": True, "problems": []}
    assert isinstance(server.recent_events(ctx, limit=5), list)


def test_snapshot_and_rollback(ctx):
    assert len(server.create_snapshot(ctx)["ref"]) == 40
    assert server.rollback_last_task(ctx) == {"rolled_back": False}


def test_toggle_auto_run(ctx):
    assert server.toggle_auto_run(ctx, enabled=False) == {"auto": False}
