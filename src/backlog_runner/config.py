"""Configuration loading from the repo config file and environment variables."""

import json
import logging
import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".backlog-runner.json"
DEFAULT_READY_COLUMN = "For Agent"


class ConfigError(ValueError):
    """Raised when a configuration override is malformed."""


@dataclass(frozen=True)
class Config:
    repo_path: Path = field(default_factory=Path.cwd)
    queue_path: Path = Path("backlog/tasks")
    main_branch: str = "main"
    ready_column: str = DEFAULT_READY_COLUMN
    progress_column: str = "In Progress"
    review_column: str = "Review"
    done_column: str = "Done"
    branch_prefix: str = "task"
    timeout_ms: int = 300_000
    poll_interval_ms: int = 30_000
    auto_start: bool = False
    agent_command: tuple[str, ...] = ("opencode", "run")
    agent_interactive: bool = False
    abort_on_merge_conflict: bool = False
    event_history: int = 50
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @property
    def queue_dir(self) -> Path:
        """Queue directory, resolved against the repo root when relative."""
        if self.queue_path.is_absolute():
            return self.queue_path
        return self.repo_path / self.queue_path

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def columns(self) -> dict[str, str]:
        return {
            "ready": self.ready_column,
            "progress": self.progress_column,
            "review": self.review_column,
            "done": self.done_column,
        }

    def resolve_column(self, name: str) -> str:
        """Map a column shortcut (ready/progress/review/done) to its configured name."""
        return self.columns.get(name.lower(), name)


# ── Value coercion ───────────────────────────────────────────────────────────


def _to_path(value) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"expected a non-empty path string, got {value!r}")
    return Path(value)


def _to_str(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"expected a non-empty string, got {value!r}")
    return value


def _to_optional_str(value) -> str | None:
    if value is None:
        return None
    return _to_str(value)


def _to_positive_int(value) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"expected a positive integer, got {value!r}")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError as e:
            raise ConfigError(f"expected a positive integer, got {value!r}") from e
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise ConfigError(f"expected a positive integer, got {value!r}")
    return value


def _to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
    raise ConfigError(f"expected a boolean, got {value!r}")


def _to_command(value) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        parts = list(value)
    else:
        raise ConfigError(f"expected a command string or list of strings, got {value!r}")
    if not parts:
        raise ConfigError("agent command must not be empty")
    return tuple(parts)


# camelCase file key -> (Config field, coercion)
FILE_KEYS = {
    "repoPath": ("repo_path", _to_path),
    "queuePath": ("queue_path", _to_path),
    "backlogPath": ("queue_path", _to_path),
    "mainBranch": ("main_branch", _to_str),
    "readyColumn": ("ready_column", _to_str),
    "todoColumn": ("ready_column", _to_str),
    "progressColumn": ("progress_column", _to_str),
    "reviewColumn": ("review_column", _to_str),
    "doneColumn": ("done_column", _to_str),
    "completedColumn": ("done_column", _to_str),
    "branchPrefix": ("branch_prefix", _to_str),
    "timeoutMs": ("timeout_ms", _to_positive_int),
    "timeout": ("timeout_ms", _to_positive_int),
    "pollIntervalMs": ("poll_interval_ms", _to_positive_int),
    "pollInterval": ("poll_interval_ms", _to_positive_int),
    "autoStart": ("auto_start", _to_bool),
    "agentCommand": ("agent_command", _to_command),
    "agentInteractive": ("agent_interactive", _to_bool),
    "abortOnMergeConflict": ("abort_on_merge_conflict", _to_bool),
    "eventHistory": ("event_history", _to_positive_int),
    "slackChannel": ("slack_channel", _to_optional_str),
}

ENV_KEYS = {
    "BR_REPO_PATH": ("repo_path", _to_path),
    "BR_QUEUE_PATH": ("queue_path", _to_path),
    "BR_MAIN_BRANCH": ("main_branch", _to_str),
    "BR_BRANCH_PREFIX": ("branch_prefix", _to_str),
    "BR_TIMEOUT_MS": ("timeout_ms", _to_positive_int),
    "BR_POLL_INTERVAL_MS": ("poll_interval_ms", _to_positive_int),
    "BR_AUTO_START": ("auto_start", _to_bool),
    "BR_AGENT_COMMAND": ("agent_command", _to_command),
    "SLACK_BOT_TOKEN": ("slack_bot_token", _to_optional_str),
    "BR_SLACK_CHANNEL": ("slack_channel", _to_optional_str),
}


def _apply(overrides: dict, key: str, value, entry: tuple, source: str) -> None:
    """Coerce one override into `overrides`, warning instead of failing."""
    field_name, coerce = entry
    try:
        overrides[field_name] = coerce(value)
    except ConfigError as e:
        logger.warning("Ignoring %s from %s: %s", key, source, e)


def read_config_file(path: Path) -> dict:
    """Parse the JSON config file into Config field overrides."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"invalid config file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"invalid config file {path}: expected a JSON object")

    overrides: dict = {}
    for key, value in raw.items():
        entry = FILE_KEYS.get(key)
        if entry is None:
            logger.warning("Ignoring unknown option %r in %s", key, path)
            continue
        _apply(overrides, key, value, entry, str(path))
    return overrides


def read_env(environ: dict | None = None) -> dict:
    """Collect Config field overrides from environment variables."""
    environ = os.environ if environ is None else environ
    overrides: dict = {}
    for key, entry in ENV_KEYS.items():
        value = environ.get(key)
        if value:
            _apply(overrides, key, value, entry, "environment")
    return overrides


def load_config(
    repo_path: str | Path | None = None,
    config_file: str | Path | None = None,
    environ: dict | None = None,
) -> Config:
    """Merge defaults, the repo config file and the environment into a Config.

    Invalid overrides are logged and skipped; this never raises.
    """
    env_overrides = read_env(environ)
    if repo_path is not None:
        env_overrides["repo_path"] = Path(repo_path)
    repo = Path(env_overrides.get("repo_path") or Path.cwd())

    file_overrides: dict = {}
    path = Path(config_file) if config_file else repo / CONFIG_FILENAME
    if path.exists():
        try:
            file_overrides = read_config_file(path)
        except ConfigError as e:
            logger.warning("%s; using defaults", e)

    merged = {**file_overrides, **env_overrides}
    merged.setdefault("repo_path", repo)
    known = {f.name for f in fields(Config)}
    return replace(Config(), **{k: v for k, v in merged.items() if k in known})


def get_config() -> Config:
    return load_config()
