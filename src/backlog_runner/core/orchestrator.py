"""Task orchestration: the single-flight state machine over queue, workspace and agent."""

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from backlog_runner.config import Config, get_config
from backlog_runner.core.agent import AgentError, AgentProcess
from backlog_runner.core.tasks import TaskStore
from backlog_runner.core.workspace import EnvironmentCheckError, Workspace, WorkspaceError
from backlog_runner.events import EventLog
from backlog_runner.integrations.git import GitError
from backlog_runner.integrations.slack import attach_notifier
from backlog_runner.models import RunStats, Snapshot, Task

logger = logging.getLogger(__name__)

FEATURE_PREFIX = "feat: implement "
REVISION_PREFIX = "fix: address feedback for "


class OrchestratorState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    PREPARING = "preparing"
    RUNNING_AGENT = "running_agent"
    COMMITTING = "committing"
    ADVANCING = "advancing"
    RECOVERING = "recovering"


def commit_message_for(task: Task) -> str:
    if task.is_revision:
        return f"{REVISION_PREFIX}{task.title}"
    return f"{FEATURE_PREFIX}{task.title}"


def is_task_commit(subject: str) -> bool:
    """True if `subject` follows the runner's own commit-message convention."""
    return subject.startswith((FEATURE_PREFIX, REVISION_PREFIX))


@dataclass
class RunRecord:
    task_id: str
    title: str = ""
    branch: str | None = None
    snapshot_ref: str | None = None
    committed: bool = False
    conflicted: bool = False
    status: str = "running"
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "branch": self.branch,
            "snapshot_ref": self.snapshot_ref,
            "committed": self.committed,
            "conflicted": self.conflicted,
            "status": self.status,
            "error": self.error,
        }


class AutoRunner:
    """Background thread that calls `start_next()` every `interval` seconds."""

    def __init__(self, orchestrator: "Orchestrator", interval: float):
        self.orchestrator = orchestrator
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="auto-runner", daemon=True)
        self._thread.start()
        logger.info("Auto runner started (every %ss)", self.interval)

    def stop(self, wait: bool = True, timeout: float | None = 10):
        self._stop_event.set()
        thread = self._thread
        if wait and thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.info("Auto runner stopped")

    def _run(self):
        while not self._stop_event.is_set():
            if not self.orchestrator.busy:
                try:
                    self.orchestrator.start_next()
                except Exception:
                    logger.exception("Error in auto runner loop")
            self._stop_event.wait(self.interval)


class Orchestrator:
    """Processes exactly one task at a time.

    start_next(): select the queue head, prepare its branch and snapshot,
    run the agent, commit, advance the task to review, and always restore
    the workspace to main.
    """

    def __init__(
        self,
        config: Config,
        events: EventLog | None = None,
        task_store: TaskStore | None = None,
        workspace: Workspace | None = None,
        agent: AgentProcess | None = None,
    ):
        self.config = config
        self.events = events or EventLog(maxlen=config.event_history)
        self.tasks = task_store or TaskStore(config, self.events)
        self.workspace = workspace or Workspace(config, self.events)
        self.agent = agent or AgentProcess(config, self.events)
        self.stats = RunStats()

        self._guard = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._state = OrchestratorState.IDLE
        self._current_task: Task | None = None
        self._last_run: RunRecord | None = None
        self._environment_checked = False
        self._shutting_down = False
        self._auto: AutoRunner | None = None

    # ── State ───────────────────────────────────────────────────────────────

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._guard.locked()

    @property
    def current_task(self) -> Task | None:
        return self._current_task

    @property
    def last_run(self) -> RunRecord | None:
        return self._last_run

    @property
    def auto_enabled(self) -> bool:
        return self._auto is not None and self._auto.running

    def _set_state(self, state: OrchestratorState):
        logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state

    def status(self) -> dict:
        task = self._current_task
        return {
            "state": self._state.value,
            "busy": self.busy,
            "auto": self.auto_enabled,
            "current_task": {"id": task.id, "title": task.title} if task else None,
            "completed": self.stats.completed,
            "errors": self.stats.errors,
            "started_at": self.stats.started_at.isoformat(),
            "last_run": self._last_run.to_dict() if self._last_run else None,
        }

    # ── Startup ─────────────────────────────────────────────────────────────

    def check_environment(self) -> list[str]:
        problems = self.workspace.ensure_environment()
        for problem in problems:
            self.events.error(problem)
        self._environment_checked = not problems
        return problems

    def start(self):
        """Validate the environment once; raises EnvironmentCheckError on any problem."""
        problems = self.check_environment()
        if problems:
            raise EnvironmentCheckError(problems)
        self.events.success("Backlog runner started")
        if self.config.auto_start:
            self.toggle_auto(True)

    # ── Task processing ─────────────────────────────────────────────────────

    def _claim(self) -> bool:
        if not self._guard.acquire(blocking=False):
            self.events.warning("Already processing a task")
            return False
        self._idle.clear()
        return True

    def _release(self):
        self._set_state(OrchestratorState.IDLE)
        self._idle.set()
        self._guard.release()

    def start_next(self) -> RunRecord | None:
        """Process the head of the ready queue. Returns None if nothing ran."""
        if not self._claim():
            return None
        try:
            return self._run_next()
        finally:
            self._release()

    def start_next_in_background(self) -> threading.Thread | None:
        """Claim the engine, then process the next task on a worker thread.

        Returns None if a task is already in flight.
        """
        if not self._claim():
            return None
        thread = threading.Thread(target=self._run_claimed, name="task-runner", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._release()
            raise
        return thread

    def _run_claimed(self):
        try:
            self._run_next()
        finally:
            self._release()

    def _run_next(self) -> RunRecord | None:
        self.agent.reset()
        if self._shutting_down:
            return None
        if not self._environment_checked and self.check_environment():
            return None

        self._set_state(OrchestratorState.SELECTING)
        ready = self.tasks.list_ready()
        if not ready:
            self.events.info("No tasks available")
            return None
        return self._process(ready[0])

    def _process(self, task: Task) -> RunRecord:
        record = RunRecord(task_id=task.id, title=task.title)
        self._current_task = task
        self.events.info(f"Starting task: {task.title}", source="task", task_id=task.id)
        try:
            self._set_state(OrchestratorState.PREPARING)
            prepared = self.workspace.prepare_branch(task)
            record.branch = prepared.name
            record.conflicted = prepared.conflicted
            snapshot = self.workspace.snapshot()
            record.snapshot_ref = snapshot.ref
            self.events.info(f"Snapshot created: {snapshot.ref}", task_id=task.id)

            self._set_state(OrchestratorState.RUNNING_AGENT)
            transcript = self.agent.run(task)

            self._set_state(OrchestratorState.COMMITTING)
            record.committed = self.workspace.commit(commit_message_for(task))

            self._set_state(OrchestratorState.ADVANCING)
            self.tasks.advance_status(task.id, self.config.review_column)
            self.tasks.append_audit_section(task.id, transcript or "(no output)", "Agent Output")
            self.tasks.append_audit_section(
                task.id,
                f"Branch: {prepared.name}\n"
                f"Snapshot: {snapshot.ref}\n"
                f"To rollback this task: git reset --hard {snapshot.ref}",
                "Snapshot Reference",
            )

            record.status = "completed"
            self.stats.completed += 1
            self.events.success(f"Task completed: {task.title}", source="task", task_id=task.id)
        except (WorkspaceError, GitError, AgentError, OSError, UnicodeDecodeError) as e:
            record.status = "failed"
            record.error = str(e)
            self.stats.errors += 1
            self.events.error(f"Task failed: {e}", source="task", task_id=task.id)
            if record.branch:
                self.workspace.shelve_changes(record.branch)
        finally:
            self._set_state(OrchestratorState.RECOVERING)
            self.workspace.restore()
            self._current_task = None
            if record.branch:
                self._last_run = record
        return record

    # ── Manual controls ─────────────────────────────────────────────────────

    def toggle_auto(self, enabled: bool | None = None, interval: float | None = None) -> bool:
        """Enable/disable the auto-run schedule. Returns the new setting."""
        if enabled is None:
            enabled = not self.auto_enabled
        if enabled and not self.auto_enabled:
            if self._shutting_down:
                return False
            self._auto = AutoRunner(self, interval or self.config.poll_interval_seconds)
            self._auto.start()
            self.events.info("Auto-start enabled")
        elif not enabled and self._auto is not None:
            self._auto.stop(wait=False)
            self._auto = None
            self.events.info("Auto-start disabled")
        return enabled

    def manual_snapshot(self) -> Snapshot | None:
        try:
            snapshot = self.workspace.snapshot()
        except WorkspaceError as e:
            self.events.error(str(e))
            return None
        self.events.success(f"Snapshot created: {snapshot.ref}")
        return snapshot

    def rollback_last(self) -> bool:
        """Undo the last task commit, if it carries the runner's commit convention."""
        if not self._guard.acquire(blocking=False):
            self.events.warning("Cannot roll back while a task is running")
            return False
        record = self._last_run
        self.events.info("Rolling back last task...")
        try:
            if record and record.committed:
                done = self.workspace.rollback_last(
                    is_task_commit, branch=record.branch, snapshot_ref=record.snapshot_ref
                )
            else:
                done = self.workspace.rollback_last(is_task_commit)
        except WorkspaceError as e:
            self.events.error(f"Failed to rollback: {e}")
            return False
        finally:
            self._guard.release()
        if done:
            self._last_run = None
            self.events.success("Successfully rolled back last task")
        return done

    # ── Shutdown ────────────────────────────────────────────────────────────

    def shutdown(self, wait_seconds: float | None = 30.0) -> bool:
        """Stop scheduling, kill any running agent and wait for restore.

        Must be called from a thread other than the one running the task.
        Returns True if the engine reached idle.
        """
        self._shutting_down = True
        auto, self._auto = self._auto, None
        if auto is not None:
            auto.stop(wait=False)
        if self.agent.cancel():
            self.events.warning("Cancelling running agent")
        idle = self._idle.wait(wait_seconds)
        if not idle:
            self.events.warning("Timed out waiting for the running task to stop")
        if auto is not None:
            auto.stop(wait=True)
        self.events.info("Shutting down...")
        return idle


def create_orchestrator(config: Config | None = None) -> Orchestrator:
    """Build an Orchestrator for `config`, wiring Slack notifications when configured."""
    config = config or get_config()
    orchestrator = Orchestrator(config)
    attach_notifier(config, orchestrator.events)
    return orchestrator
