"""Tests for git wrappers and the task workspace lifecycle."""

import pytest

from backlog_runner.core.orchestrator import is_task_commit
from backlog_runner.core.workspace import Workspace, WorkspaceError, branch_name_for
from backlog_runner.events import EventLog
from backlog_runner.integrations import git as git_mod
from backlog_runner.integrations.git import GitError
from backlog_runner.models import Task


@pytest.fixture
def workspace(make_config):
    return Workspace(make_config(), EventLog())


class TestGitWrappers:
    def test_results_do_not_raise(self, git_repo):
        result = git_mod.checkout(git_repo, "no-such-branch")
        assert not result.ok
        assert result.returncode != 0
        with pytest.raises(GitError):
            result.check()

    def test_queries(self, git_repo):
        assert git_mod.is_repository(git_repo)
        assert git_mod.branch_exists(git_repo, "main")
        assert not git_mod.branch_exists(git_repo, "nope")
        assert git_mod.get_current_branch(git_repo) == "main"
        assert git_mod.stash_ref(git_repo) is None
        assert git_mod.last_commit_subject(git_repo).output == "init"

    def test_not_a_repository(self, tmp_path):
        assert not git_mod.is_repository(tmp_path)


class TestBranchNames:
    @pytest.mark.parametrize("task_id, expected", [
        ("task-42 - Add auth.md", "task-42"),
        ("task-7.md", "task-7"),
        ("TASK-12 fix.md", "task-12"),
        ("notes.md", "task-notes"),
    ])
    def test_branch_name_for(self, task_id, expected):
        assert branch_name_for(task_id, "task") == expected

    def test_deterministic(self):
        assert branch_name_for("task-3 - A.md", "agent") == branch_name_for("task-3 - A.md", "agent")


class TestEnvironment:
    def test_healthy(self, workspace):
        assert workspace.ensure_environment() == []

    def test_reports_every_problem(self, tmp_path, make_config):
        config = make_config(
            repo_path=tmp_path,
            main_branch="main",
            agent_command=("definitely-not-an-agent-cli",),
        )
        problems = Workspace(config, EventLog()).ensure_environment()
        assert len(problems) == 3
        assert "git init" in problems[0]
        assert "Backlog directory" in problems[1]
        assert "definitely-not-an-agent-cli" in problems[2]

    def test_missing_main_branch(self, make_config):
        problems = Workspace(make_config(main_branch="trunk"), EventLog()).ensure_environment()
        assert problems == ['Main branch "trunk" does not exist. Please create it first.']


class TestPrepareBranch:
    def test_creates_branch_from_main(self, workspace, git):
        prepared = workspace.prepare_branch(Task(id="task-42 - Add auth.md"))
        assert prepared.name == "task-42"
        assert prepared.created
        assert git(workspace.repo, "branch", "--show-current") == "task-42"

    def test_reuses_and_merges_main(self, workspace, git):
        task = Task(id="task-5.md")
        workspace.prepare_branch(task)
        workspace.restore()

        (workspace.repo / "later.txt").write_text("on main\n")
        git(workspace.repo, "add", "later.txt")
        git(workspace.repo, "commit", "-m", "later")

        prepared = workspace.prepare_branch(task)
        assert not prepared.created
        assert not prepared.conflicted
        assert (workspace.repo / "later.txt").exists()

    def test_conflict_is_tolerated(self, workspace, git):
        task = Task(id="task-6.md")
        workspace.prepare_branch(task)
        (workspace.repo / "README.md").write_text("branch\n")
        workspace.commit("feat: implement six")
        workspace.restore()

        (workspace.repo / "README.md").write_text("main\n")
        git(workspace.repo, "commit", "-am", "main edit")

        prepared = workspace.prepare_branch(task)
        assert prepared.conflicted
        assert workspace.events.recent()[-1].kind.value == "warning"
        git(workspace.repo, "merge", "--abort")

    def test_conflict_aborts_when_configured(self, make_config, git):
        workspace = Workspace(make_config(abort_on_merge_conflict=True), EventLog())
        task = Task(id="task-6.md")
        workspace.prepare_branch(task)
        (workspace.repo / "README.md").write_text("branch\n")
        workspace.commit("feat: implement six")
        workspace.restore()
        (workspace.repo / "README.md").write_text("main\n")
        git(workspace.repo, "commit", "-am", "main edit")

        with pytest.raises(WorkspaceError):
            workspace.prepare_branch(task)
        assert git(workspace.repo, "status", "--porcelain") == ""

    def test_stashes_and_restores_user_changes(self, workspace, git):
        (workspace.repo / "README.md").write_text("uncommitted\n")
        prepared = workspace.prepare_branch(Task(id="task-1.md"))
        assert prepared.stashed
        assert (workspace.repo / "README.md").read_text() == "# Test\n"

        workspace.restore()
        assert git(workspace.repo, "branch", "--show-current") == "main"
        assert (workspace.repo / "README.md").read_text() == "uncommitted\n"
        assert git_mod.stash_ids(workspace.repo) == []

    def test_task_edits_stay_out_of_the_stash(self, workspace, git, write_task):
        task_file = write_task("task-1 - A.md", '---\nstatus: "To Do"\n---\n')
        task_file.write_text('---\nstatus: "For Agent"\n---\n')
        (workspace.repo / "README.md").write_text("uncommitted\n")

        prepared = workspace.prepare_branch(Task(id="task-1 - A.md"))
        assert prepared.stashed
        assert task_file.read_text() == '---\nstatus: "For Agent"\n---\n'

        task_file.write_text('---\nstatus: "Review"\n---\n')
        workspace.restore()
        assert (workspace.repo / "README.md").read_text() == "uncommitted\n"
        assert task_file.read_text() == '---\nstatus: "Review"\n---\n'
        assert git_mod.stash_ids(workspace.repo) == []

    def test_only_task_edits_does_not_stash(self, workspace, write_task):
        task_file = write_task("task-1 - A.md", '---\nstatus: "To Do"\n---\n')
        task_file.write_text('---\nstatus: "For Agent"\n---\n')
        assert not workspace.prepare_branch(Task(id="task-1 - A.md")).stashed
        workspace.restore()
        assert git_mod.stash_ids(workspace.repo) == []

    def test_clean_tree_does_not_stash(self, workspace):
        prepared = workspace.prepare_branch(Task(id="task-1.md"))
        assert not prepared.stashed
        workspace.restore()
        assert git_mod.stash_ids(workspace.repo) == []


class TestCommit:
    def test_empty_diff_is_noop(self, workspace, git):
        head = git(workspace.repo, "rev-parse", "HEAD")
        assert workspace.commit("feat: implement nothing") is False
        assert git(workspace.repo, "rev-parse", "HEAD") == head

    def test_commits_all_changes(self, workspace, git):
        (workspace.repo / "new.txt").write_text("x\n")
        assert workspace.commit("feat: implement new") is True
        assert git(workspace.repo, "log", "-1", "--pretty=%s") == "feat: implement new"

    def test_task_files_are_not_committed(self, workspace, git, write_task):
        task_file = write_task("task-1.md", "# One\n")
        task_file.write_text("# One\nnotes\n")
        (workspace.repo / "new.txt").write_text("x\n")
        assert workspace.commit("feat: implement new") is True
        assert git(workspace.repo, "show", "--name-only", "--pretty=format:", "HEAD") == "new.txt"
        assert "task-1.md" in git(workspace.repo, "status", "--porcelain")


class TestShelve:
    def test_shelves_partial_work_but_keeps_task_files(self, workspace, git, write_task):
        write_task("task-1.md", "# One\n")
        workspace.prepare_branch(Task(id="task-1.md"))
        (workspace.repo / "half-done.txt").write_text("partial\n")
        (workspace.repo / "backlog" / "tasks" / "task-1.md").write_text("# One\nnotes\n")

        workspace.shelve_changes("task-1")
        workspace.restore()

        assert not (workspace.repo / "half-done.txt").exists()
        assert (workspace.repo / "backlog" / "tasks" / "task-1.md").read_text() == "# One\nnotes\n"
        assert "partial work on task-1" in git(workspace.repo, "stash", "list")

    def test_user_stash_survives_failed_run(self, workspace, git):
        (workspace.repo / "README.md").write_text("mine\n")
        workspace.prepare_branch(Task(id="task-1.md"))
        (workspace.repo / "agent.txt").write_text("partial\n")

        workspace.shelve_changes("task-1")
        workspace.restore()

        assert (workspace.repo / "README.md").read_text() == "mine\n"
        assert not (workspace.repo / "agent.txt").exists()
        assert len(git_mod.stash_ids(workspace.repo)) == 1

    def test_other_branch_untouched(self, workspace):
        (workspace.repo / "README.md").write_text("mine\n")
        workspace.shelve_changes("task-9")
        assert git_mod.stash_ids(workspace.repo) == []


class TestRollback:
    def test_rollback_task_commit(self, workspace, git):
        before = git(workspace.repo, "rev-parse", "HEAD")
        (workspace.repo / "f.txt").write_text("x\n")
        workspace.commit("feat: implement f")
        assert workspace.rollback_last(is_task_commit) is True
        assert git(workspace.repo, "rev-parse", "HEAD") == before
        assert not (workspace.repo / "f.txt").exists()

    def test_refuses_foreign_commit(self, workspace, git):
        head = git(workspace.repo, "rev-parse", "HEAD")
        assert workspace.rollback_last(is_task_commit) is False
        assert git(workspace.repo, "rev-parse", "HEAD") == head

    def test_rollback_branch_not_checked_out(self, workspace, git):
        task = Task(id="task-2.md")
        workspace.prepare_branch(task)
        snapshot = workspace.snapshot()
        (workspace.repo / "g.txt").write_text("x\n")
        workspace.commit("fix: address feedback for g")
        workspace.restore()

        assert workspace.rollback_last(is_task_commit, branch="task-2", snapshot_ref=snapshot.ref)
        assert git(workspace.repo, "rev-parse", "task-2") == snapshot.ref
        assert git(workspace.repo, "branch", "--show-current") == "main"

    def test_snapshot_is_head(self, workspace, git):
        snapshot = workspace.snapshot()
        assert snapshot.ref == git(workspace.repo, "rev-parse", "HEAD")
        assert snapshot.branch == "main"
