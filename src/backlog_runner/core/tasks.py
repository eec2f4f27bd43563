"""File-based task queue: parsing, ready-queue listing and status updates."""

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path

from backlog_runner.config import DEFAULT_READY_COLUMN, Config
from backlog_runner.events import EventLog
from backlog_runner.models import Task

logger = logging.getLogger(__name__)

HEADER_SENTINEL = "---"
TASK_FILE_RE = re.compile(r"^task-\d+.*\.md$")
_TITLE_LINE_RE = re.compile(r"^#\s*(.+)")
_FILENAME_TITLE_RE = re.compile(r"task-\d+\s*-\s*(.+)\.md$")


# ── Parsing ──────────────────────────────────────────────────────────────────


def find_header(lines: list[str]) -> tuple[int, int] | None:
    """Locate the header block as (opening, closing) sentinel line indexes.

    The block must open on the first non-blank line, or on the first
    non-blank line after a leading `# title` line. Returns None when there
    is no complete block.
    """
    i = 0
    while i < len(lines) and not lines[i].strip():
        i += 1
    if i < len(lines) and _TITLE_LINE_RE.match(lines[i]):
        i += 1
        while i < len(lines) and not lines[i].strip():
            i += 1
    if i >= len(lines) or lines[i].strip() != HEADER_SENTINEL:
        return None
    for j in range(i + 1, len(lines)):
        if lines[j].strip() == HEADER_SENTINEL:
            return i, j
    return None


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1].strip()
    return value


def _parse_labels(value: str, following: list[str]) -> list[str]:
    value = value.strip()
    if value.startswith("[") and value.endswith("]"):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = value[1:-1].split(",")
        if not isinstance(parsed, list):
            return []
        return [_unquote(str(v)) for v in parsed if _unquote(str(v))]
    if value:
        return [_unquote(v) for v in value.split(",") if _unquote(v)]

    # YAML block list on the lines that follow
    labels = []
    for line in following:
        stripped = line.strip()
        if not stripped.startswith("- "):
            break
        item = _unquote(stripped[2:])
        if item:
            labels.append(item)
    return labels


def _header_field(line: str) -> tuple[str, str, str]:
    key, sep, value = line.strip().partition(":")
    return key.strip(), sep, value


def parse_task(content: str, task_id: str) -> Task:
    """Parse a task file. Never raises; missing fields parse to defaults."""
    lines = content.splitlines()
    header = find_header(lines)

    status = ""
    labels: list[str] = []
    header_title = ""
    if header:
        start, end = header
        for i in range(start + 1, end):
            key, sep, value = _header_field(lines[i])
            if not sep:
                continue
            if key == "status":
                status = _unquote(value)
            elif key == "labels":
                labels = _parse_labels(value, lines[i + 1:end])
            elif key == "title":
                header_title = _unquote(value)

    title = ""
    first_line_title = bool(lines) and _TITLE_LINE_RE.match(lines[0])
    if first_line_title:
        title = first_line_title.group(1).strip()
    elif header_title:
        title = header_title
    else:
        body_start = header[1] + 1 if header else 0
        for line in lines[body_start:]:
            if line.strip():
                match = _TITLE_LINE_RE.match(line)
                if match:
                    title = match.group(1).strip()
                break
    if not title:
        match = _FILENAME_TITLE_RE.search(task_id)
        title = match.group(1).strip() if match else Path(task_id).stem

    if header:
        description = "\n".join(lines[header[1] + 1:]).strip()
    elif first_line_title:
        description = "\n".join(lines[1:]).strip()
    else:
        description = content.strip()

    return Task(
        id=task_id,
        title=title,
        description=description,
        status=status,
        labels=frozenset(labels),
    )


def set_status(content: str, status: str) -> str:
    """Return `content` with the header's status line set to `status`.

    Only the status line changes; every other byte is kept. A missing
    header block is synthesized at the top (after a leading title line).
    """
    parts = content.splitlines(keepends=True)
    newline = "\n"
    for part in parts:
        if part.endswith("\r\n"):
            newline = "\r\n"
            break
        if part.endswith("\n"):
            break

    status_line = f'status: "{status}"'
    lines = [p.rstrip("\r\n") for p in parts]
    header = find_header(lines)

    if header is None:
        block = f"{HEADER_SENTINEL}{newline}{status_line}{newline}{HEADER_SENTINEL}{newline}"
        if parts and _TITLE_LINE_RE.match(lines[0]):
            first = parts[0] if parts[0] != lines[0] else parts[0] + newline
            return first + block + "".join(parts[1:])
        return block + content

    start, end = header
    for i in range(start + 1, end):
        key, sep, _ = _header_field(lines[i])
        if sep and key == "status":
            ending = parts[i][len(lines[i]):]
            parts[i] = status_line + ending
            return "".join(parts)

    parts.insert(start + 1, status_line + newline)
    return "".join(parts)


def _fence_for(text: str) -> str:
    fence = "```"
    while fence in text:
        fence += "`"
    return fence


# ── Task store ───────────────────────────────────────────────────────────────


class TaskStore:
    """Reads and updates task files in the configured queue directory."""

    def __init__(self, config: Config, events: EventLog):
        self.config = config
        self.events = events

    @property
    def queue_dir(self) -> Path:
        return self.config.queue_dir

    def task_path(self, task_id: str) -> Path:
        if not task_id or Path(task_id).name != task_id:
            raise ValueError(f"Invalid task id: {task_id!r}")
        return self.queue_dir / task_id

    def _read(self, path: Path) -> str:
        # Bytes round-trip keeps CRLF endings intact; invalid bytes decode to U+FFFD.
        return path.read_bytes().decode("utf-8", errors="replace")

    def list_tasks(self) -> list[Task]:
        """Parse every task file in the queue, ordered by filename.

        Raises OSError; see `list_ready` for the soft variant.
        """
        names = sorted(
            entry.name
            for entry in self.queue_dir.iterdir()
            if entry.is_file() and TASK_FILE_RE.match(entry.name)
        )
        return [parse_task(self._read(self.queue_dir / name), name) for name in names]

    def is_ready(self, task: Task) -> bool:
        ready = self.config.ready_column
        if task.status == ready:
            return True
        return not task.status and ready == DEFAULT_READY_COLUMN

    def list_ready(self) -> list[Task]:
        """Tasks in the ready column, FIFO by filename. Never raises."""
        if not self.queue_dir.is_dir():
            self.events.warning(
                f"Queue directory not found: {self.queue_dir}", source="queue"
            )
            return []
        try:
            tasks = self.list_tasks()
        except OSError as e:
            self.events.error(f"Error reading tasks: {e}", source="queue")
            return []
        return [t for t in tasks if self.is_ready(t)]

    def get_task(self, task_id: str) -> Task | None:
        path = self.task_path(task_id)
        if not path.is_file():
            return None
        return parse_task(self._read(path), task_id)

    def _write_atomic(self, path: Path, content: str):
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def advance_status(self, task_id: str, new_status: str) -> Task:
        """Rewrite the task's status line. Idempotent for a repeated status."""
        if new_status not in self.config.columns.values():
            raise ValueError(
                f"Unknown status {new_status!r}; expected one of "
                f"{', '.join(self.config.columns.values())}"
            )
        path = self.task_path(task_id)
        content = self._read(path)
        updated = set_status(content, new_status)
        if updated != content:
            self._write_atomic(path, updated)
        self.events.success(f"Moved task to {new_status}", source="queue", task_id=task_id)
        return parse_task(updated, task_id)

    def append_audit_section(self, task_id: str, text: str, heading: str = "Agent Output") -> None:
        """Append a timestamped, fenced section to the end of the task file."""
        path = self.task_path(task_id)
        if not path.is_file():
            raise FileNotFoundError(f"Task file not found: {path}")
        fence = _fence_for(text)
        timestamp = datetime.now().isoformat(timespec="seconds")
        section = f"\n\n## {heading} ({timestamp})\n\n{fence}\n{text.rstrip()}\n{fence}\n"
        with open(path, "ab") as f:
            f.write(section.encode("utf-8"))
        logger.debug("Appended %r section to %s", heading, path)
