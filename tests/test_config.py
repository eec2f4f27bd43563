"""Tests for layered configuration loading."""

import json
import logging
from pathlib import Path

import pytest

from backlog_runner.config import (
    CONFIG_FILENAME,
    Config,
    ConfigError,
    load_config,
    read_config_file,
    read_env,
)


def test_defaults(tmp_path):
    config = load_config(repo_path=tmp_path, environ={})
    assert config.repo_path == tmp_path
    assert config.main_branch == "main"
    assert config.ready_column == "For Agent"
    assert config.review_column == "Review"
    assert config.timeout_seconds == 300
    assert config.agent_command == ("opencode", "run")
    assert config.queue_dir == tmp_path / "backlog" / "tasks"
    assert not config.auto_start


def test_file_overrides(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text(json.dumps({
        "mainBranch": "trunk",
        "todoColumn": "Queued",
        "timeoutMs": 1000,
        "agentCommand": "claude -p",
        "autoStart": True,
    }))
    config = load_config(repo_path=tmp_path, environ={})
    assert config.main_branch == "trunk"
    assert config.ready_column == "Queued"
    assert config.timeout_seconds == 1
    assert config.agent_command == ("claude", "-p")
    assert config.auto_start


def test_env_beats_file(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text(json.dumps({"mainBranch": "trunk"}))
    config = load_config(
        repo_path=tmp_path,
        environ={"BR_MAIN_BRANCH": "develop", "SLACK_BOT_TOKEN": "xoxb-1"},
    )
    assert config.main_branch == "develop"
    assert config.slack_bot_token == "xoxb-1"


def test_invalid_values_keep_defaults(tmp_path, caplog):
    (tmp_path / CONFIG_FILENAME).write_text(json.dumps({
        "timeoutMs": -5,
        "autoStart": "maybe",
        "agentCommand": [],
        "mystery": 1,
    }))
    with caplog.at_level(logging.WARNING):
        config = load_config(repo_path=tmp_path, environ={"BR_POLL_INTERVAL_MS": "soon"})
    assert config.timeout_ms == Config.timeout_ms
    assert config.auto_start is False
    assert config.agent_command == ("opencode", "run")
    assert config.poll_interval_ms == Config.poll_interval_ms
    assert "mystery" in caplog.text


def test_malformed_file_is_ignored(tmp_path, caplog):
    (tmp_path / CONFIG_FILENAME).write_text("{not json")
    with caplog.at_level(logging.WARNING):
        config = load_config(repo_path=tmp_path, environ={})
    assert config.main_branch == "main"
    assert "using defaults" in caplog.text


def test_read_config_file_rejects_non_object(tmp_path):
    path = tmp_path / "c.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigError):
        read_config_file(path)


def test_read_env_repo_path():
    overrides = read_env({"BR_REPO_PATH": "/srv/repo", "BR_AUTO_START": "yes"})
    assert overrides == {"repo_path": Path("/srv/repo"), "auto_start": True}


def test_resolve_column():
    config = Config(review_column="Ready for Review")
    assert config.resolve_column("review") == "Ready for Review"
    assert config.resolve_column("Ready") == "For Agent"
    assert config.resolve_column("Blocked") == "Blocked"
