"""End-to-end tests of weft operations on a real git repository."""

import pytest
from git import Repo

from conftest import commit_file, requires_git
from weft.config import Settings
from weft.errors import (
    AlreadyInitialized,
    InvalidName,
    InvalidTransition,
    MissingDependency,
    NameInUse,
    NoWorktrees,
    UncommittedChanges,
    WorkerNotFound,
    WorktreeExists,
    WorktreeNotFound,
)
from weft.models import RepoConfig
from weft.orchestrator import Orchestrator, build_agent_command, validate_name
from weft.reconcile import LiveStatus

pytestmark = requires_git


def git_repo_head(path):
    return Repo(path).head.commit.hexsha


class TestHelpers:
    def test_agent_command(self):
        assert build_agent_command("claude", None, False) == "claude"
        assert build_agent_command("claude", "fix it", True) == (
            "claude 'fix it' --dangerously-skip-permissions"
        )
        assert build_agent_command("claude", "don't", False) == "claude 'don'\"'\"'t'"

    @pytest.mark.parametrize("name", ["", "  ", "/abs", "../escape", "a/../../b", "v1.2", "a:b"])
    def test_invalid_names(self, name):
        with pytest.raises(InvalidName):
            validate_name(name)

    def test_nested_name_is_valid(self):
        assert validate_name("feature/login") == "feature/login"


class TestInit:
    def test_creates_state_and_excludes_worktrees(self, orch, git_repo):
        state = orch.init()

        assert state.session_name == "wt-project"
        assert orch.store.exists()
        assert ".worktrees/" in (git_repo / ".git" / "info" / "exclude").read_text()

    def test_refuses_twice_unless_forced(self, orch):
        orch.init()
        orch.spawn("feat")
        with pytest.raises(AlreadyInitialized):
            orch.init()

        state = orch.init(force=True)

        assert state.find_worker("feat") is not None


class TestSpawn:
    def test_creates_worktree_records_and_launches(self, orch, git_repo, fake_tmux):
        result = orch.spawn("feat", task="add login page")

        worker = result.worker
        assert result.created
        assert result.start_point == "main"
        assert (git_repo / ".worktrees" / "feat" / ".git").is_file()
        assert worker.branch == "feat"
        assert worker.task.description == "add login page"
        assert orch.store.load().find_worker("feat").id == worker.id
        assert fake_tmux.sent == [("wt-project", "feat", "claude 'add login page'")]

    def test_auto_from_config(self, git_repo, fake_tmux):
        settings = Settings()
        settings.spawn.auto = True
        orch = Orchestrator(git_repo, settings, tmux=fake_tmux, which=lambda tool: tool)

        result = orch.spawn("feat")

        assert result.auto
        assert fake_tmux.sent[0][2] == "claude --dangerously-skip-permissions"

    def test_explicit_flag_overrides_config(self, git_repo, fake_tmux):
        settings = Settings()
        settings.spawn.auto = True
        orch = Orchestrator(git_repo, settings, tmux=fake_tmux, which=lambda tool: tool)

        assert not orch.spawn("feat", auto=False).auto

    def test_missing_dependency(self, git_repo, fake_tmux):
        orch = Orchestrator(
            git_repo, Settings(), tmux=fake_tmux, which=lambda tool: None if tool == "tmux" else tool
        )
        with pytest.raises(MissingDependency) as excinfo:
            orch.spawn("feat")
        assert excinfo.value.tool == "tmux"
        assert not (git_repo / ".worktrees" / "feat").exists()

    def test_active_duplicate_is_rejected(self, orch):
        orch.spawn("feat")
        with pytest.raises(NameInUse):
            orch.spawn("feat")

    def test_reuses_existing_worktree(self, orch, git_repo):
        orch.spawn("feat")
        orch.kill("feat")

        result = orch.spawn("feat")

        assert not result.created
        assert result.worker.branch == "feat"
        assert len(orch.store.load().all_workers()) == 2

    def test_on_create_hook(self, git_repo, fake_tmux):
        settings = Settings(repo=RepoConfig(on_create_hook="touch hooked"))
        orch = Orchestrator(git_repo, settings, tmux=fake_tmux, which=lambda tool: tool)

        result = orch.spawn("feat")

        assert result.hook_ok
        assert (git_repo / ".worktrees" / "feat" / "hooked").exists()
        orch.spawn("other", run_hook=False)
        assert not (git_repo / ".worktrees" / "other" / "hooked").exists()

    def test_unknown_parent(self, orch):
        with pytest.raises(WorkerNotFound):
            orch.spawn("child", parent="ghost")

    def test_intermediate_directory_is_not_reused(self, orch, git_repo, fake_tmux):
        orch.spawn("feature/x")

        with pytest.raises(WorktreeExists) as excinfo:
            orch.spawn("feature")

        assert excinfo.value.name == "feature"
        assert orch.store.load().find_worker("feature") is None
        assert not fake_tmux.window_exists("wt-project", "feature")

    def test_missing_base_records_start_point(self, orch, git_repo):
        head = git_repo_head(git_repo)

        worker = orch.spawn("w1", base="develop").worker
        (git_repo / ".worktrees" / "w1" / "wip.txt").write_text("wip")

        assert worker.base_branch == head
        [view] = orch.ps()
        assert view.dirty
        assert view.commits_ahead == 0
        assert orch.review("w1").base_branch == head

    def test_state_records_current_config(self, orch):
        orch.init()
        orch.settings.repo.auto_review = False

        orch.spawn("feat")

        assert orch.store.load().config.auto_review is False


class TestCreate:
    def test_worktree_without_worker(self, orch, git_repo, fake_tmux):
        result = orch.create("feature/login")

        assert result.branch == "feature/login"
        assert result.start_point == "main"
        assert (git_repo / ".worktrees" / "feature" / "login" / ".git").is_file()
        assert ".worktrees/" in (git_repo / ".git" / "info" / "exclude").read_text()
        assert not orch.store.exists()
        assert fake_tmux.sent == []
        assert orch.list_worktrees() == ["feature/login"]

    def test_branch_base_and_hook(self, git_repo, fake_tmux):
        commit_file(git_repo, "a.txt", "a\n")
        orch = Orchestrator(
            git_repo,
            Settings(repo=RepoConfig(on_create_hook="touch hooked")),
            tmux=fake_tmux,
            which=lambda tool: tool,
        )

        result = orch.create("job", branch="topic", base="main~1")

        assert result.branch == "topic"
        assert result.start_point == "main~1"
        assert result.hook_ok
        assert (git_repo / ".worktrees" / "job" / "hooked").exists()
        assert orch.vcs.current_branch(result.path) == "topic"

        assert orch.create("job2", run_hook=False).hook_ok is None
        assert not (git_repo / ".worktrees" / "job2" / "hooked").exists()

    def test_existing_nested_worktree_keeps_full_name(self, orch):
        orch.create("feature/x")
        with pytest.raises(WorktreeExists) as excinfo:
            orch.create("feature/x")
        assert excinfo.value.name == "feature/x"
        assert "'feature/x'" in str(excinfo.value)


class TestQueries:
    def test_ps_reports_live_and_git_state(self, orch, git_repo, fake_tmux):
        orch.spawn("feat")
        commit_file(git_repo / ".worktrees" / "feat", "a.txt", "a\n")
        (git_repo / ".worktrees" / "feat" / "wip.txt").write_text("wip")

        [view] = orch.ps()

        assert view.name == "feat"
        assert view.live == LiveStatus.RUNNING
        assert view.branch == "feat"
        assert view.commits_ahead == 1
        assert view.dirty

    def test_killed_window_shows_no_window(self, orch, fake_tmux):
        orch.spawn("feat")
        fake_tmux.kill_window("wt-project", "feat")

        [view] = orch.ps()

        assert view.live == LiveStatus.NO_WINDOW
        assert view.status.kind == "spawned"
        assert orch.store.load().find_worker("feat").status.kind == "spawned"

    def test_ps_without_state_falls_back_to_tmux(self, orch, git_repo, fake_tmux):
        orch.vcs.create(git_repo / ".worktrees" / "manual", "manual", "main")
        fake_tmux.create_window("wt-project", "manual", git_repo / ".worktrees" / "manual")
        fake_tmux.create_window("wt-project", "stray", git_repo)

        views = orch.ps()

        assert not orch.store.exists()
        assert [v.name for v in views] == ["manual"]
        assert views[0].status is None

    def test_status_of_one_worker(self, orch):
        orch.spawn("feat", task="write docs")
        [view] = orch.status("feat")
        assert view.task == "write docs"

    def test_status_without_state(self, orch):
        assert orch.status() == []

    def test_review(self, orch, git_repo):
        orch.spawn("feat")
        commit_file(git_repo / ".worktrees" / "feat", "a.txt", "a\nb\n")

        result = orch.review("feat", full=True)

        assert result.branch == "feat"
        assert result.base_branch == "main"
        assert "+b" in result.diff
        assert len(result.commits) == 1
        assert result.stats.insertions == 2

    def test_review_unknown(self, orch):
        with pytest.raises(WorktreeNotFound):
            orch.review("ghost")


class TestWorkflow:
    def test_review_approve_merge(self, orch, git_repo, fake_tmux):
        orch.spawn("feat")
        commit_file(git_repo / ".worktrees" / "feat", "feature.txt", "done\n")

        assert orch.mark_review("feat").status.diff_stats.files_changed == 1
        assert orch.approve("feat").status.kind == "approved"
        result = orch.merge("feat")

        assert result.branch == "feat"
        assert result.into == "main"
        assert (git_repo / "feature.txt").exists()
        assert orch.store.load().find_worker("feat").status.kind == "merged"
        assert not fake_tmux.window_exists("wt-project", "feat")
        assert (git_repo / ".worktrees" / "feat").exists()

    def test_merge_and_delete(self, orch, git_repo):
        orch.spawn("feature/login")
        commit_file(git_repo / ".worktrees" / "feature" / "login", "login.txt", "x\n")

        result = orch.merge("feature/login", delete=True)

        assert result.removed
        assert not (git_repo / ".worktrees" / "feature").exists()
        assert not orch.vcs.branch_exists("feature/login")

    def test_merge_refuses_dirty_worktree(self, orch, git_repo):
        orch.spawn("feat")
        (git_repo / ".worktrees" / "feat" / "wip.txt").write_text("wip")

        with pytest.raises(UncommittedChanges):
            orch.merge("feat")
        assert orch.store.load().find_worker("feat").status.kind == "spawned"

    def test_fail_is_terminal(self, orch):
        orch.spawn("feat")
        worker = orch.fail("feat", "agent crashed")

        assert worker.status.reason == "agent crashed"
        with pytest.raises(InvalidTransition):
            orch.approve("feat")

    def test_kill_archives(self, orch, fake_tmux):
        orch.spawn("feat")
        worker = orch.kill("feat")

        assert worker.status.kind == "archived"
        assert not fake_tmux.window_exists("wt-project", "feat")
        assert orch.store.load().active_workers() == []

    def test_update_task(self, orch):
        orch.spawn("feat", task="first")
        orch.update_task("feat", description="second", issue_ref="GH-12", files_hint=["a.py"])

        task = orch.store.load().find_worker("feat").task
        assert task.description == "second"
        assert task.issue_ref == "GH-12"
        assert task.files_hint == ["a.py"]

    def test_transition_of_unknown_worker(self, orch):
        orch.init()
        with pytest.raises(WorkerNotFound):
            orch.approve("ghost")

    def test_sync(self, orch, git_repo, fake_tmux):
        orch.spawn("feat")
        commit_file(git_repo / ".worktrees" / "feat", "a.txt", "a\n")

        assert [c.current.value for c in orch.sync()] == ["running"]
        fake_tmux.exit_agent("wt-project", "feat")
        assert [c.current.value for c in orch.sync()] == ["waiting_review"]
        assert orch.store.load().find_worker("feat").status.kind == "waiting_review"


class TestRemove:
    def test_no_worktrees(self, orch):
        with pytest.raises(NoWorktrees):
            orch.plan_removal("*")

    def test_unmatched_pattern(self, orch):
        orch.spawn("feat")
        with pytest.raises(WorktreeNotFound):
            orch.plan_removal("nope*")

    def test_pattern_removal(self, orch, git_repo):
        for name in ("regex-test1", "regex-test2", "keep"):
            orch.spawn(name)

        names = orch.plan_removal("regex-test*")
        removed = orch.remove(names)

        assert removed == ["regex-test1", "regex-test2"]
        assert orch.list_worktrees() == ["keep"]
        statuses = {w.name: w.status.kind for w in orch.store.load().all_workers()}
        assert statuses == {"regex-test1": "archived", "regex-test2": "archived", "keep": "spawned"}

    def test_dirty_blocks_whole_batch(self, orch, git_repo):
        orch.spawn("a")
        orch.spawn("b")
        (git_repo / ".worktrees" / "b" / "wip.txt").write_text("wip")

        with pytest.raises(UncommittedChanges) as excinfo:
            orch.remove(["a", "b"])

        assert excinfo.value.names == ["b"]
        assert orch.list_worktrees() == ["a", "b"]

        assert orch.remove(["a", "b"], force=True) == ["a", "b"]
        assert orch.list_worktrees() == []

    def test_nested_removal_prunes_parents(self, orch, git_repo):
        orch.spawn("feature/x/y")

        orch.remove(orch.plan_removal("feature/x/y"))

        assert not (git_repo / ".worktrees" / "feature").exists()
        assert (git_repo / ".worktrees").is_dir()

    def test_recursive_removal(self, orch):
        orch.spawn("lead")
        orch.spawn("helper", parent="lead")
        orch.spawn("other")

        assert orch.plan_removal("lead") == ["lead"]
        assert orch.plan_removal("lead", recursive=True) == ["helper", "lead"]


class TestFromPath:
    def test_from_inside_worktree(self, orch, git_repo, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        orch.spawn("feat")

        built = Orchestrator.from_path(git_repo / ".worktrees" / "feat")

        assert built.repo_root == git_repo
        assert built.store.path == git_repo / ".worktrees" / ".weft-state.json"
