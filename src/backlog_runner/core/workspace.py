"""Version-control workspace: task branches, stash safety, snapshots and rollback."""

import logging
import re
import shutil
from collections.abc import Callable

from backlog_runner.config import Config
from backlog_runner.events import EventLog
from backlog_runner.integrations import git
from backlog_runner.integrations.git import GitError
from backlog_runner.models import PreparedBranch, Snapshot, Task

logger = logging.getLogger(__name__)

STASH_MESSAGE = "backlog-runner: auto-stash before branch switch"

_TASK_NUMBER_RE = re.compile(r"task-(\d+)")


class WorkspaceError(Exception):
    """Raised when a version-control step fails for the current task."""


class EnvironmentCheckError(WorkspaceError):
    """Raised at startup when the environment cannot run tasks."""

    def __init__(self, problems: list[str]):
        super().__init__("Environment check failed:\n" + "\n".join(f"  - {p}" for p in problems))
        self.problems = problems


def slugify(value: str) -> str:
    slug = value.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def branch_name_for(task_id: str, prefix: str) -> str:
    """Deterministic branch name: `<prefix>-<task number>`."""
    match = _TASK_NUMBER_RE.search(task_id)
    if match:
        suffix = match.group(1)
    else:
        stem = task_id[:-3] if task_id.endswith(".md") else task_id
        suffix = re.sub(r"\D", "", stem) or slugify(stem) or "untitled"
    return f"{prefix}-{suffix}"


class Workspace:
    """Wraps git for one task at a time.

    Every branch or stash mutation made by `prepare_branch` is undone by
    `restore`, which never raises.
    """

    def __init__(self, config: Config, events: EventLog):
        self.config = config
        self.events = events
        self.repo = config.repo_path
        self._stash_id: str | None = None

    def _emit(self, kind: str, message: str, task_id: str | None = None):
        self.events.emit(kind, message, source="workspace", task_id=task_id)

    # ── Environment ─────────────────────────────────────────────────────────

    def ensure_environment(self) -> list[str]:
        """Return every violated precondition; empty means healthy."""
        problems = []
        main = self.config.main_branch

        if not self.repo.is_dir():
            problems.append(f'Repository path "{self.repo}" does not exist.')
        elif not git.git_available():
            problems.append("Git executable not found. Please install git first.")
        elif not git.is_repository(self.repo):
            problems.append('Not in a git repository. Please run "git init" first.')
        elif not git.branch_exists(self.repo, main):
            problems.append(f'Main branch "{main}" does not exist. Please create it first.')

        if not self.config.queue_dir.is_dir():
            problems.append(
                f'Backlog directory "{self.config.queue_dir}" not found. '
                'Please run "backlog init" first.'
            )

        agent = self.config.agent_command[0]
        if shutil.which(agent) is None:
            problems.append(f'Agent CLI "{agent}" not found. Please install it first.')

        return problems

    def current_branch(self) -> str:
        return git.get_current_branch(self.repo)

    # ── Task branch lifecycle ───────────────────────────────────────────────

    def branch_name_for(self, task: Task) -> str:
        return branch_name_for(task.id, self.config.branch_prefix)

    def _queue_exclude(self) -> list[str]:
        """Pathspec exclusion for the task queue when it lives inside the repo."""
        queue_dir = self.config.queue_dir.resolve()
        repo = self.repo.resolve()
        if queue_dir.is_relative_to(repo) and queue_dir != repo:
            return [queue_dir.relative_to(repo).as_posix()]
        return []

    def _stash(self) -> bool:
        """Stash uncommitted tracked changes outside the queue.

        Returns True if a stash was created. Task files stay in the working tree.
        """
        exclude = self._queue_exclude()
        if not git.has_worktree_changes(self.repo, exclude=exclude):
            return False
        before = git.stash_ref(self.repo)
        result = git.stash_push(self.repo, STASH_MESSAGE, exclude=exclude)
        if not result.ok:
            raise WorkspaceError(f"Could not stash uncommitted changes: {result.stderr.strip()}")
        after = git.stash_ref(self.repo)
        created = after is not None and after != before
        if created:
            self._stash_id = after
            self._emit("info", "Stashed uncommitted changes")
        return created

    def _checkout(self, branch: str):
        result = git.checkout(self.repo, branch)
        if not result.ok:
            raise WorkspaceError(f"Could not checkout {branch}: {result.stderr.strip()}")

    def prepare_branch(self, task: Task) -> PreparedBranch:
        """Switch to the task's branch, creating it from main if needed."""
        branch = self.branch_name_for(task)
        main = self.config.main_branch

        stashed = self._stash()
        self._checkout(main)

        if not git.branch_exists(self.repo, branch):
            result = git.create_branch(self.repo, branch, main)
            if not result.ok:
                raise WorkspaceError(f"Could not create branch {branch}: {result.stderr.strip()}")
            self._emit("info", f"Created branch {branch} from {main}", task.id)
            return PreparedBranch(name=branch, created=True, stashed=stashed)

        self._checkout(branch)
        self._emit("info", f"Switched to existing branch {branch}", task.id)
        if git.is_ancestor(self.repo, main, branch):
            return PreparedBranch(name=branch, created=False, stashed=stashed)

        result = git.merge(self.repo, main)
        if result.ok:
            self._emit("info", f"Merged {main} into {branch}", task.id)
            return PreparedBranch(name=branch, created=False, stashed=stashed)

        if self.config.abort_on_merge_conflict:
            git.merge_abort(self.repo)
            raise WorkspaceError(f"Merge of {main} into {branch} conflicted; merge aborted")
        self._emit(
            "warning",
            f"Merge of {main} into {branch} has conflicts; resolve manually",
            task.id,
        )
        return PreparedBranch(name=branch, created=False, stashed=stashed, conflicted=True)

    def snapshot(self) -> Snapshot:
        """Record the current HEAD position."""
        result = git.rev_parse(self.repo, "HEAD")
        if not result.ok:
            raise WorkspaceError(f"Failed to create snapshot: {result.stderr.strip()}")
        return Snapshot(ref=result.output, branch=self.current_branch() or None)

    def commit(self, message: str) -> bool:
        """Stage everything outside the queue and commit.

        Returns False when there was nothing to commit.
        """
        try:
            git.add_all(self.repo, exclude=self._queue_exclude()).check()
        except GitError as e:
            raise WorkspaceError(f"Could not stage changes: {e}") from e

        if not git.has_staged_changes(self.repo):
            self._emit("info", "No changes to commit, task may have been a no-op")
            return False

        try:
            git.commit(self.repo, message).check()
        except GitError as e:
            raise WorkspaceError(f"Commit failed: {e}") from e
        self._emit("success", f"Committed: {message}")
        return True

    def shelve_changes(self, branch: str) -> None:
        """Stash leftovers of a failed run on `branch` so they don't follow us to main.

        Task files stay in the working tree. Never raises.
        """
        try:
            if self.current_branch() != branch:
                return
            exclude = self._queue_exclude()
            if not git.has_worktree_changes(self.repo, include_untracked=True, exclude=exclude):
                return
            before = git.stash_ref(self.repo)
            result = git.stash_push(
                self.repo,
                f"backlog-runner: partial work on {branch}",
                include_untracked=True,
                exclude=exclude,
            )
            if not result.ok:
                self._emit("warning", f"Could not stash partial work: {result.stderr.strip()}")
            elif git.stash_ref(self.repo) != before:
                self._emit("info", f"Stashed partial work from {branch}")
        except OSError as e:
            self._emit("warning", f"Could not stash partial work: {e}")

    def restore(self) -> None:
        """Return to main and pop our stash. Logs problems, never raises."""
        main = self.config.main_branch
        stash_id, self._stash_id = self._stash_id, None
        try:
            result = git.checkout(self.repo, main)
            if not result.ok:
                self._emit("warning", f"Could not return to {main}: {result.stderr.strip()}")
                if stash_id:
                    self._emit("warning", "Stashed changes were left in the stash")
                return
            if stash_id:
                self._pop_stash(stash_id)
        except OSError as e:
            self._emit("warning", f"Could not restore workspace: {e}")

    def _pop_stash(self, stash_id: str):
        ids = git.stash_ids(self.repo)
        if stash_id not in ids:
            self._emit("warning", f"Stash entry {stash_id[:10]} is gone; nothing to restore")
            return
        entry = f"stash@{{{ids.index(stash_id)}}}"
        logger.debug("Popping %s (%s)", entry, stash_id)
        popped = git.stash_pop(self.repo, entry)
        if popped.ok:
            self._emit("info", "Restored stashed changes")
        else:
            self._emit(
                "warning",
                f"Could not restore stashed changes; left in stash: {popped.stderr.strip()}",
            )

    # ── Snapshots and rollback ──────────────────────────────────────────────

    def rollback_to(self, ref: str) -> None:
        """Hard-reset the working tree to `ref`. Destructive."""
        try:
            git.reset_hard(self.repo, ref).check()
        except GitError as e:
            raise WorkspaceError(f"Rollback to {ref} failed: {e}") from e
        self._emit("warning", f"Rolled back to {ref}")

    def last_commit_subject(self, ref: str = "HEAD") -> str:
        result = git.last_commit_subject(self.repo, ref)
        if not result.ok:
            raise WorkspaceError(f"Could not read last commit of {ref}: {result.stderr.strip()}")
        return result.output

    def rollback_last(
        self,
        is_task_commit: Callable[[str], bool],
        branch: str | None = None,
        snapshot_ref: str | None = None,
    ) -> bool:
        """Undo the most recent task commit on `branch` (default: current).

        Refuses unless the tip commit subject satisfies `is_task_commit`.
        A branch that is not checked out is moved without touching the tree.
        """
        current = self.current_branch()
        target = branch or current
        if not target:
            raise WorkspaceError("Cannot roll back a detached HEAD")

        subject = self.last_commit_subject(target)
        if not is_task_commit(subject):
            self._emit("warning", f"Last commit on {target} doesn't appear to be a task: {subject}")
            return False

        ref = snapshot_ref or f"{target}~1"
        resolved = git.rev_parse(self.repo, ref)
        if not resolved.ok:
            raise WorkspaceError(f"Unknown rollback target {ref}: {resolved.stderr.strip()}")
        if not git.is_ancestor(self.repo, resolved.output, target):
            self._emit("warning", f"Snapshot {ref} is not an ancestor of {target}; not rolling back")
            return False

        if target == current:
            self.rollback_to(resolved.output)
        else:
            try:
                git.update_ref(self.repo, target, resolved.output).check()
            except GitError as e:
                raise WorkspaceError(f"Rollback of {target} failed: {e}") from e
            self._emit("warning", f"Moved {target} back to {resolved.output}")
        return True
