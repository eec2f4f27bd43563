"""Git subprocess wrappers for branch, stash, snapshot and commit operations.

Every builder returns a GitResult instead of raising, so callers decide
which non-zero exits are benign ("nothing to stash", "no changes").
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Raised when a git command fails."""

    def __init__(self, result: "GitResult"):
        detail = (result.stderr or result.stdout).strip()
        super().__init__(f"git {' '.join(result.args)} failed ({result.returncode}): {detail}")
        self.result = result


@dataclass(frozen=True)
class GitResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "GitResult":
        if not self.ok:
            raise GitError(self)
        return self

    @property
    def output(self) -> str:
        return self.stdout.strip()


def git_available() -> bool:
    return shutil.which("git") is not None


def run_git(args: list[str], cwd: str | Path | None = None, check: bool = False) -> GitResult:
    """Run a git command and return its structured result."""
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
        )
    except FileNotFoundError:
        result = GitResult(tuple(args), 127, "", "git executable not found")
    else:
        result = GitResult(tuple(args), completed.returncode, completed.stdout, completed.stderr)
    logger.debug("git %s -> %s", " ".join(args), result.returncode)
    if check:
        result.check()
    return result


# ── Queries ──────────────────────────────────────────────────────────────────


def is_repository(cwd: str | Path) -> bool:
    return run_git(["rev-parse", "--git-dir"], cwd=cwd).ok


def branch_exists(cwd: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    return run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=cwd).ok


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name (empty when detached)."""
    return run_git(["branch", "--show-current"], cwd=cwd).output


def rev_parse(cwd: str | Path, ref: str = "HEAD") -> GitResult:
    return run_git(["rev-parse", "--verify", ref], cwd=cwd)


def stash_ref(cwd: str | Path) -> str | None:
    """Object id at the top of the stash, or None if the stash is empty."""
    result = run_git(["rev-parse", "-q", "--verify", "refs/stash"], cwd=cwd)
    return result.output if result.ok else None


def is_ancestor(cwd: str | Path, ancestor: str, descendant: str) -> bool:
    return run_git(["merge-base", "--is-ancestor", ancestor, descendant], cwd=cwd).ok


def has_staged_changes(cwd: str | Path) -> bool:
    # --quiet exits 1 when the index differs from HEAD
    return run_git(["diff", "--cached", "--quiet"], cwd=cwd).returncode == 1


def _pathspec(exclude: list[str] | None) -> list[str]:
    if not exclude:
        return []
    return ["--", ".", *(f":(exclude){path}" for path in exclude)]


def has_worktree_changes(
    cwd: str | Path,
    include_untracked: bool = False,
    exclude: list[str] | None = None,
) -> bool:
    untracked = "--untracked-files=all" if include_untracked else "--untracked-files=no"
    return bool(run_git(["status", "--porcelain", untracked, *_pathspec(exclude)], cwd=cwd).output)


def stash_ids(cwd: str | Path) -> list[str]:
    """Commit ids of stash entries, newest first (index order)."""
    result = run_git(["stash", "list", "--format=%H"], cwd=cwd)
    return result.output.splitlines() if result.ok else []


def last_commit_subject(cwd: str | Path, ref: str = "HEAD") -> GitResult:
    return run_git(["log", "-1", "--pretty=format:%s", ref], cwd=cwd)


# ── Mutations ────────────────────────────────────────────────────────────────


def checkout(cwd: str | Path, branch: str) -> GitResult:
    return run_git(["checkout", branch], cwd=cwd)


def create_branch(cwd: str | Path, branch: str, start_point: str) -> GitResult:
    """Create `branch` from `start_point` and switch to it."""
    return run_git(["checkout", "-b", branch, start_point], cwd=cwd)


def merge(cwd: str | Path, ref: str) -> GitResult:
    return run_git(["merge", ref, "--no-edit"], cwd=cwd)


def merge_abort(cwd: str | Path) -> GitResult:
    return run_git(["merge", "--abort"], cwd=cwd)


def stash_push(
    cwd: str | Path,
    message: str,
    include_untracked: bool = False,
    exclude: list[str] | None = None,
) -> GitResult:
    args = ["stash", "push", "-m", message]
    if include_untracked:
        args.append("--include-untracked")
    return run_git(args + _pathspec(exclude), cwd=cwd)


def stash_pop(cwd: str | Path, entry: str | None = None) -> GitResult:
    return run_git(["stash", "pop", *([entry] if entry else [])], cwd=cwd)


def add_all(cwd: str | Path, exclude: list[str] | None = None) -> GitResult:
    return run_git(["add", "-A", *_pathspec(exclude)], cwd=cwd)


def commit(cwd: str | Path, message: str) -> GitResult:
    return run_git(["commit", "-m", message], cwd=cwd)


def reset_hard(cwd: str | Path, ref: str) -> GitResult:
    return run_git(["reset", "--hard", ref], cwd=cwd)


def update_ref(cwd: str | Path, branch: str, ref: str) -> GitResult:
    """Point `branch` at `ref` without touching the working tree."""
    return run_git(["update-ref", f"refs/heads/{branch}", ref], cwd=cwd)
