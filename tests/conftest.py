"""Shared fixtures: temporary git repositories with a task queue."""

import subprocess
import sys
from pathlib import Path

import pytest

from backlog_runner.config import Config

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def run_git(cwd, *args) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    for key, value in GIT_IDENTITY.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")


@pytest.fixture
def git():
    return run_git


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A repo on `main` with one commit and an empty backlog/tasks directory."""
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init")
    run_git(repo, "checkout", "-b", "main")
    (repo / "README.md").write_text("# Test\n")
    queue = repo / "backlog" / "tasks"
    queue.mkdir(parents=True)
    (queue / ".gitkeep").write_text("")
    run_git(repo, "add", ".")
    run_git(repo, "commit", "-m", "init")
    return repo


@pytest.fixture
def write_task(git_repo):
    """Write a task file into the queue, committing it to main by default."""

    def _write(name: str, content: str, commit: bool = True) -> Path:
        path = git_repo / "backlog" / "tasks" / name
        path.write_text(content)
        if commit:
            run_git(git_repo, "add", str(path))
            run_git(git_repo, "commit", "-m", f"add {name}")
        return path

    return _write


@pytest.fixture
def make_config(git_repo):
    def _make(**overrides) -> Config:
        overrides.setdefault("repo_path", git_repo)
        overrides.setdefault("agent_command", (sys.executable, "-c", "pass"))
        return Config(**overrides)

    return _make
