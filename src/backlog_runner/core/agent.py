"""External coding-agent process: launch, stream output, enforce the deadline."""

import logging
import os
import shutil
import signal
import subprocess
import threading
import time

from backlog_runner.config import Config
from backlog_runner.events import EventLog
from backlog_runner.models import Task

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.1
TERMINATE_GRACE_SECONDS = 5.0
READER_JOIN_SECONDS = 5.0


class AgentError(Exception):
    """Base class for agent run failures."""


class AgentUnavailableError(AgentError):
    """The agent executable cannot be resolved on PATH."""


class AgentTimeoutError(AgentError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"Agent timed out after {timeout_seconds:g} seconds")
        self.timeout_seconds = timeout_seconds


class AgentExitError(AgentError):
    def __init__(self, exit_code: int, stderr: str = ""):
        message = f"Agent failed with exit code {exit_code}"
        if stderr.strip():
            message += f"\n{stderr.strip()}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class AgentCancelledError(AgentError):
    """The run was cancelled by a shutdown request."""


# ── Prompt Construction ──────────────────────────────────────────────────────


def build_agent_prompt(task: Task, review_column: str = "Review") -> str:
    """Build the instruction for the agent. Pure: same task, same text."""
    parts = [f"Task: {task.title}", f"ID: {task.id}"]
    if task.description:
        parts.append(f"Description:\n{task.description}")

    if task.is_revision:
        parts.append(
            "\nREVISION REQUEST - A previous implementation of this task was reviewed "
            "and changes were requested. Address the feedback and improve the implementation."
        )
    else:
        parts.append(
            "\nNEW IMPLEMENTATION - Implement this task with clean, maintainable code."
        )

    parts.append(
        f"\nPlease start {task.id} in backlog. After completing, test your work to confirm "
        "the task is done and summarize how you verified it. "
        f"Do not edit the task file or commit; the runner commits your changes and moves "
        f"the task to {review_column}."
    )
    return "\n".join(parts)


# ── Agent Process ────────────────────────────────────────────────────────────


class AgentProcess:
    """Runs the configured agent CLI for one task at a time."""

    def __init__(self, config: Config, events: EventLog):
        self.config = config
        self.events = events
        self._cancel = threading.Event()
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()

    @property
    def executable(self) -> str:
        return self.config.agent_command[0]

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process is not None else None

    def command_for(self, task: Task) -> list[str]:
        prompt = build_agent_prompt(task, self.config.review_column)
        return [*self.config.agent_command, prompt]

    def cancel(self) -> bool:
        """Ask an in-flight (or the next) run to terminate. Returns True if one was running."""
        self._cancel.set()
        return self.running

    def reset(self):
        """Clear a previous cancellation before a new task starts."""
        self._cancel.clear()

    def run(self, task: Task) -> str:
        """Run the agent for `task` and return its transcript.

        Raises AgentUnavailableError, AgentTimeoutError, AgentCancelledError
        or AgentExitError.
        """
        resolved = shutil.which(self.executable)
        if resolved is None:
            raise AgentUnavailableError(
                f'Agent CLI "{self.executable}" not found. Please install it first.'
            )

        if self._cancel.is_set():
            raise AgentCancelledError("Agent run cancelled")

        cmd = [resolved, *self.command_for(task)[1:]]
        interactive = self.config.agent_interactive

        transcript: list[str] = []
        stderr_lines: list[str] = []
        buffer_lock = threading.Lock()

        def pump(stream, source: str):
            for raw in stream:
                line = raw.rstrip("\r\n")
                with buffer_lock:
                    if source == "agent.stderr":
                        stderr_lines.append(line)
                        transcript.append(f"[stderr] {line}")
                    else:
                        transcript.append(line)
                if line.strip():
                    kind = "warning" if source == "agent.stderr" else "info"
                    self.events.emit(kind, line, source=source, task_id=task.id)
            stream.close()

        self.events.info(f"Running agent: {self.executable}", source="agent", task_id=task.id)
        process = subprocess.Popen(
            cmd,
            cwd=self.config.repo_path,
            stdin=None if interactive else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env={**os.environ, "FORCE_COLOR": "0"},
            start_new_session=not interactive and os.name == "posix",
        )
        with self._lock:
            self._process = process

        readers = [
            threading.Thread(target=pump, args=(process.stdout, "agent.stdout"), daemon=True),
            threading.Thread(target=pump, args=(process.stderr, "agent.stderr"), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timeout = self.config.timeout_seconds
        deadline = time.monotonic() + timeout
        try:
            while True:
                try:
                    exit_code = process.wait(timeout=POLL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if self._cancel.is_set():
                    self._terminate(process)
                    self.events.error("Agent run cancelled", source="agent", task_id=task.id)
                    raise AgentCancelledError("Agent run cancelled")
                if time.monotonic() >= deadline:
                    self._terminate(process)
                    error = AgentTimeoutError(timeout)
                    self.events.error(str(error), source="agent", task_id=task.id)
                    raise error
        finally:
            for reader in readers:
                reader.join(timeout=READER_JOIN_SECONDS)
            with self._lock:
                self._process = None

        with buffer_lock:
            output = "\n".join(transcript)
            stderr = "\n".join(stderr_lines)

        if exit_code != 0:
            error = AgentExitError(exit_code, stderr)
            self.events.error(
                f"Agent failed with exit code {exit_code}", source="agent", task_id=task.id
            )
            raise error

        self.events.success("Agent completed successfully", source="agent", task_id=task.id)
        return output

    def _terminate(self, process: subprocess.Popen) -> None:
        """SIGTERM the agent (and its process group), then SIGKILL after a grace period."""
        self._signal(process, signal.SIGTERM)
        try:
            process.wait(timeout=TERMINATE_GRACE_SECONDS)
            return
        except subprocess.TimeoutExpired:
            logger.warning("Agent PID %s ignored SIGTERM; killing", process.pid)
        self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        try:
            process.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.error("Agent PID %s did not exit after SIGKILL", process.pid)

    def _signal(self, process: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix" and not self.config.agent_interactive:
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass  # Already exited
        except OSError as e:
            logger.warning("Could not signal agent PID %s: %s", process.pid, e)
