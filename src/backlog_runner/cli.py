"""CLI entry point for the backlog runner."""

import json
import logging
import signal
import sys
import threading

import click

from backlog_runner.config import load_config
from backlog_runner.core.orchestrator import Orchestrator, create_orchestrator
from backlog_runner.core.workspace import EnvironmentCheckError, branch_name_for
from backlog_runner.events import RunEvent

SHUTDOWN_WAIT_SECONDS = 30.0

_KIND_COLORS = {
    "info": None,
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


def _get_config():
    ctx = click.get_current_context()
    return load_config(repo_path=ctx.obj.get("repo"), config_file=ctx.obj.get("config_file"))


def _get_orchestrator() -> Orchestrator:
    return create_orchestrator(_get_config())


@click.group()
@click.option(
    "--repo",
    envvar="BR_REPO_PATH",
    type=click.Path(file_okay=False),
    default=None,
    help="Repository to operate on (default: current directory)",
)
@click.option("--config", "config_file", type=click.Path(dir_okay=False), default=None,
              help="Config file (default: <repo>/.backlog-runner.json)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, repo, config_file, verbose):
    """backlog-runner - Backlog Runner CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["repo"] = repo
    ctx.obj["config_file"] = config_file


# ── Environment ───────────────────────────────────────────────────────────────


@main.command("check")
def check_command():
    """Validate git, the main branch, the queue directory and the agent CLI."""
    orchestrator = _get_orchestrator()
    problems = orchestrator.workspace.ensure_environment()
    if problems:
        click.echo("Environment check failed:", err=True)
        for problem in problems:
            click.echo(f"  - {problem}", err=True)
        sys.exit(1)
    config = orchestrator.config
    click.echo("Environment OK")
    click.echo(f"  Repo: {config.repo_path}")
    click.echo(f"  Queue: {config.queue_dir}")
    click.echo(f"  Agent: {' '.join(config.agent_command)}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.command("list")
@click.option("--ready", "ready_only", is_flag=True, help="Only tasks waiting for the agent")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def list_command(ready_only, json_output):
    """List tasks in the queue directory."""
    orchestrator = _get_orchestrator()
    store = orchestrator.tasks
    if ready_only:
        tasks = store.list_ready()
    else:
        try:
            tasks = store.list_tasks()
        except (OSError, UnicodeDecodeError) as e:
            click.echo(f"Error reading tasks: {e}", err=True)
            sys.exit(1)

    if json_output:
        click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
        return

    if not tasks:
        click.echo("No tasks found.")
        return

    for task in tasks:
        icon = "●" if store.is_ready(task) else "○"
        revision = " [revision]" if task.is_revision else ""
        click.echo(f"  {icon} {task.id}: {task.title} ({task.status or 'no status'}){revision}")


@main.command("show")
@click.argument("task_id")
def show_command(task_id):
    """Show task details."""
    store = _get_orchestrator().tasks
    try:
        task = store.get_task(task_id)
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    if not task:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)

    click.echo(f"Task: {task.id}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Status: {task.status or '(none)'}")
    if task.labels:
        click.echo(f"  Labels: {', '.join(sorted(task.labels))}")
    click.echo(f"  Ready: {'yes' if store.is_ready(task) else 'no'}")
    if task.description:
        click.echo(f"  Description:\n{task.description}")


@main.command("move")
@click.argument("task_id")
@click.argument("column")
def move_command(task_id, column):
    """Set a task's status. COLUMN is ready, progress, review, done or a column name."""
    orchestrator = _get_orchestrator()
    status = orchestrator.config.resolve_column(column)
    try:
        task = orchestrator.tasks.advance_status(task_id, status)
    except FileNotFoundError:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Moved {task.id} to {task.status}")


@main.command("branch")
@click.argument("task_id")
def branch_command(task_id):
    """Print the branch name a task would run on."""
    click.echo(branch_name_for(task_id, _get_config().branch_prefix))


# ── Run Commands ──────────────────────────────────────────────────────────────


def _echo_event(event: RunEvent):
    stamp = event.timestamp.strftime("%H:%M:%S")
    color = _KIND_COLORS.get(event.kind.value)
    click.echo(click.style(f"[{stamp}] {event.source}: {event.message}", fg=color))


def _run_until_signalled(orchestrator: Orchestrator, work) -> None:
    """Run `work(stop)` on a worker thread; SIGINT/SIGTERM trigger a clean shutdown."""
    stop = threading.Event()

    def handle_signal(signum, frame):
        click.echo(f"\nReceived {signal.Signals(signum).name}, shutting down...", err=True)
        stop.set()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    worker = threading.Thread(target=work, args=(stop,), name="cli-worker", daemon=True)
    worker.start()
    try:
        while worker.is_alive() and not stop.is_set():
            stop.wait(0.2)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        stop.set()
        orchestrator.shutdown(SHUTDOWN_WAIT_SECONDS)
        worker.join(timeout=SHUTDOWN_WAIT_SECONDS)


def _start(orchestrator: Orchestrator, auto: bool = True) -> None:
    try:
        if auto:
            orchestrator.start()
        else:
            problems = orchestrator.check_environment()
            if problems:
                raise EnvironmentCheckError(problems)
    except EnvironmentCheckError as e:
        click.echo(str(e), err=True)
        sys.exit(1)


@main.command("next")
def next_command():
    """Process exactly one task from the ready queue."""
    orchestrator = _get_orchestrator()
    orchestrator.events.subscribe(_echo_event)
    _start(orchestrator, auto=False)

    result = {}

    def work(stop):
        result["record"] = orchestrator.start_next()

    _run_until_signalled(orchestrator, work)
    record = result.get("record")
    if record is not None and record.status != "completed":
        sys.exit(1)


@main.command("run")
@click.option("--auto/--no-auto", default=True,
              help="Keep polling the queue (default) or drain it once and exit")
def run_command(auto):
    """Process tasks in the foreground until interrupted."""
    orchestrator = _get_orchestrator()
    orchestrator.events.subscribe(_echo_event)
    _start(orchestrator, auto=auto)

    def work(stop):
        if auto:
            if not orchestrator.auto_enabled:
                orchestrator.toggle_auto(True)
            stop.wait()
            return
        while not stop.is_set() and orchestrator.tasks.list_ready():
            if orchestrator.start_next() is None:
                break

    _run_until_signalled(orchestrator, work)
    stats = orchestrator.stats
    click.echo(f"Completed: {stats.completed}, errors: {stats.errors}")


# ── Snapshot Commands ─────────────────────────────────────────────────────────


@main.command("snapshot")
def snapshot_command():
    """Record the current HEAD commit."""
    snapshot = _get_orchestrator().manual_snapshot()
    if snapshot is None:
        click.echo("Failed to create snapshot", err=True)
        sys.exit(1)
    click.echo(f"Snapshot: {snapshot.ref}")
    if snapshot.branch:
        click.echo(f"  Branch: {snapshot.branch}")
    click.echo(f"  To rollback: git reset --hard {snapshot.ref}")


@main.command("rollback")
@click.option("--yes", is_flag=True, help="Don't ask for confirmation")
def rollback_command(yes):
    """Undo the last task commit on the current branch."""
    if not yes:
        click.confirm("Hard-reset the last task commit?", abort=True)
    orchestrator = _get_orchestrator()
    if not orchestrator.rollback_last():
        last = orchestrator.events.recent(1)
        click.echo(last[0].message if last else "Rollback failed", err=True)
        sys.exit(1)
    click.echo("Rolled back last task")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard and HTTP API."""
    import webbrowser

    from backlog_runner.web.app import run_server

    orchestrator = _get_orchestrator()
    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port, orchestrator=orchestrator)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from backlog_runner.mcp.server import configure, mcp

    configure(_get_config())

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "labels": sorted(task.labels),
        "revision": task.is_revision,
    }


if __name__ == "__main__":
    main()
