"""Command service: every weft operation, wired to git, tmux and the state file.

The CLI is a thin shell over ``Orchestrator``; each method loads what it needs,
talks to the adapters, persists status changes and returns plain result
objects for display.
"""

import logging
import shlex
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, List, Optional, Sequence, Union

from . import lifecycle
from .config import Settings, load_settings
from .errors import (
    AlreadyInitialized,
    InvalidName,
    MissingDependency,
    NameInUse,
    NoWorktrees,
    UncommittedChanges,
    WorktreeExists,
    WorktreeNotFound,
)
from .matching import expand_children, prune_empty_parents, resolve
from .models import (
    TMUX_SEPARATORS,
    Approved,
    Archived,
    DiffStats,
    Failed,
    Merged,
    OrchestratorState,
    TaskContext,
    WaitingReview,
    Worker,
)
from .reconcile import Reconciler, StatusChange, WorkerView
from .runner import GitRunner, SubprocessRunner
from .store import StateStore, state_file_path
from .tmux import TmuxAdapter
from .worktrees import WORKTREE_MARKER, WorktreeManager, find_repo_root

logger = logging.getLogger(__name__)

AUTO_FLAG = "--dangerously-skip-permissions"


def validate_name(name: str) -> str:
    """Check a worker name is usable as a relative worktree path."""
    if not name or not name.strip():
        raise InvalidName(name, "name is empty")
    path = PurePosixPath(name)
    if path.is_absolute():
        raise InvalidName(name, "name must be relative")
    if ".." in path.parts:
        raise InvalidName(name, "name must not contain '..'")
    bad = sorted(set(name) & set(TMUX_SEPARATORS))
    if bad:
        raise InvalidName(name, f"name must not contain {' or '.join(repr(c) for c in bad)}")
    return path.as_posix()


def build_agent_command(agent: str, task: Optional[str], auto: bool) -> str:
    """Shell line typed into the worker's window to launch the agent."""
    parts = [agent]
    if task:
        parts.append(shlex.quote(task))
    if auto:
        parts.append(AUTO_FLAG)
    return " ".join(parts)


@dataclass
class CreateResult:
    name: str
    path: Path
    branch: str
    start_point: str
    hook_ok: Optional[bool] = None


@dataclass
class SpawnResult:
    worker: Worker
    created: bool
    start_point: Optional[str]
    auto: bool
    command: str
    hook_ok: Optional[bool] = None


@dataclass
class ReviewResult:
    name: str
    branch: str
    base_branch: str
    diff: str
    commits: List[str] = field(default_factory=list)
    stats: DiffStats = field(default_factory=DiffStats)


@dataclass
class MergeResult:
    name: str
    branch: str
    into: str
    removed: bool = False


class Orchestrator:
    """All weft operations for one repository."""

    def __init__(
        self,
        repo_root: Path,
        settings: Optional[Settings] = None,
        vcs: Optional[WorktreeManager] = None,
        tmux: Optional[TmuxAdapter] = None,
        store: Optional[StateStore] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.repo_root = Path(repo_root)
        self.settings = settings or Settings()
        self.vcs = vcs or WorktreeManager(self.repo_root, GitRunner())
        self.tmux = tmux or TmuxAdapter(SubprocessRunner())
        self.store = store or StateStore(
            state_file_path(self.repo_root, self.settings.repo.worktree_dir)
        )
        self.reconciler = Reconciler(self.tmux, self.vcs)
        self.which = which

    @classmethod
    def from_path(
        cls, path: Union[str, Path, None] = None, user_config: Optional[Path] = None
    ) -> "Orchestrator":
        """Build an orchestrator for the repository containing ``path`` (default: cwd)."""
        repo_root = find_repo_root(Path(path) if path else Path.cwd())
        settings = load_settings(repo_root, user_config)
        logger.debug("repository root: %s", repo_root)
        return cls(repo_root, settings)

    @property
    def worktrees_root(self) -> Path:
        return self.repo_root / self.settings.repo.worktree_dir

    def _new_state(self) -> OrchestratorState:
        return OrchestratorState.new(self.repo_root, self.settings.repo.model_copy())

    def _save(self, state: OrchestratorState) -> None:
        state.config = self.settings.repo.model_copy()
        self.store.save(state)

    @contextmanager
    def _existing_state(self) -> Iterator[Optional[OrchestratorState]]:
        """Lock and load; save afterwards only if a state file exists."""
        with self.store.lock():
            state = self.store.load()
            yield state
            if state is not None:
                self._save(state)

    @contextmanager
    def _transaction(self) -> Iterator[OrchestratorState]:
        with self.store.transaction(self._new_state) as state:
            yield state
            state.config = self.settings.repo.model_copy()

    # Setup

    def init(self, force: bool = False) -> OrchestratorState:
        """Create the state file; ``force`` refreshes the config of an existing one."""
        self.vcs.ensure_excluded(self.settings.repo.worktree_dir)
        self.worktrees_root.mkdir(parents=True, exist_ok=True)
        with self.store.lock():
            state = self.store.load()
            if state is not None and not force:
                raise AlreadyInitialized()
            if state is None:
                state = self._new_state()
            self._save(state)
        logger.info("initialized %s", self.store.path)
        return state

    # Workers

    def _check_dependencies(self) -> None:
        agent = shlex.split(self.settings.spawn.agent_command)[0]
        for tool in ("git", "tmux", agent):
            if self.which(tool) is None:
                raise MissingDependency(tool)

    def spawn(
        self,
        name: str,
        task: Optional[str] = None,
        branch: Optional[str] = None,
        base: Optional[str] = None,
        auto: Optional[bool] = None,
        parent: Optional[str] = None,
        run_hook: bool = True,
        files_hint: Sequence[str] = (),
        issue_ref: Optional[str] = None,
    ) -> SpawnResult:
        """Create (or reuse) a worktree and launch an agent in a new tmux window."""
        name = validate_name(name)
        self._check_dependencies()
        use_auto = self.settings.spawn.auto if auto is None else auto
        base = base or self.settings.repo.base_branch
        path = self.worktrees_root / name

        with self.store.lock():
            state = self.store.load() or self._new_state()
            existing = state.find_worker(name)
            if existing is not None and existing.is_active:
                raise NameInUse(name)
            if parent is not None:
                state.require_worker(parent)

            created = False
            start_point = None
            hook_ok = None
            if not path.exists():
                made = self._create_worktree(name, branch or name, base, run_hook)
                created = True
                start_point = made.start_point
                hook_ok = made.hook_ok
                worker_branch = made.branch
            elif (path / WORKTREE_MARKER).is_file():
                worker_branch = self.vcs.current_branch(path)
            else:
                raise WorktreeExists(name)

            worker = Worker(
                name=name,
                worktree_path=path,
                branch=worker_branch,
                base_branch=self._recorded_base(base),
                session_name=state.session_name,
                parent=parent,
                auto=use_auto,
            )
            if task:
                worker.set_task(
                    TaskContext(description=task, files_hint=list(files_hint), issue_ref=issue_ref)
                )
            state.add_worker(worker)
            self._save(state)

        command = build_agent_command(self.settings.spawn.agent_command, task, use_auto)
        if not self.tmux.window_exists(worker.session_name, worker.window_name):
            self.tmux.create_window(worker.session_name, worker.window_name, path)
        self.tmux.send_keys(worker.session_name, worker.window_name, command)
        logger.info("spawned %s in %s:%s", name, worker.session_name, worker.window_name)

        return SpawnResult(
            worker=worker,
            created=created,
            start_point=start_point,
            auto=use_auto,
            command=command,
            hook_ok=hook_ok,
        )

    def _create_worktree(
        self, name: str, branch: str, base: str, run_hook: bool = True
    ) -> CreateResult:
        path = self.worktrees_root / name
        self.vcs.ensure_excluded(self.settings.repo.worktree_dir)
        start_point = self.vcs.create(path, branch, base, name=name)
        hook_ok = None
        hook = self.settings.repo.on_create_hook
        if hook and run_hook:
            hook_ok = self.vcs.run_hook(hook, path)
        return CreateResult(
            name=name, path=path, branch=branch, start_point=start_point, hook_ok=hook_ok
        )

    def _recorded_base(self, base: str) -> str:
        """The ref later diffs should use; a missing base is replaced by what it resolves to."""
        if self.vcs.resolves(base):
            return base
        resolved = self.vcs.resolve_start_point(base)
        logger.warning("base '%s' does not resolve, recording '%s' instead", base, resolved)
        return resolved

    def create(
        self,
        name: str,
        branch: Optional[str] = None,
        base: Optional[str] = None,
        run_hook: bool = True,
    ) -> CreateResult:
        """Create a worktree without recording a worker or starting an agent."""
        name = validate_name(name)
        result = self._create_worktree(
            name, branch or name, base or self.settings.repo.base_branch, run_hook
        )
        logger.info("created worktree %s", result.path)
        return result

    def kill(self, name: str) -> Optional[Worker]:
        """Close the worker's window and archive its record."""
        with self._existing_state() as state:
            worker = state.find_worker(name) if state is not None else None
            session = state.session_name if state is not None else self._new_state().session_name
            window = worker.window_name if worker is not None else name
            self.tmux.kill_window(session, window)
            if worker is not None and worker.is_active:
                lifecycle.transition(worker, Archived())
        return worker

    def attach(self, name: Optional[str] = None) -> None:
        state = self.store.load()
        session = (state or self._new_state()).session_name
        window = None
        if name is not None:
            worker = state.find_worker(name) if state is not None else None
            window = worker.window_name if worker is not None else name
        self.tmux.attach(session, window)

    # Queries

    def ps(self) -> List[WorkerView]:
        """Live view of active workers, or of bare tmux windows when nothing is recorded."""
        state = self.store.load()
        if state is None:
            return self.reconciler.fallback(
                self._new_state().session_name,
                self.worktrees_root,
                self.settings.repo.base_branch,
            )
        return self.reconciler.snapshot(state)

    def status(self, name: Optional[str] = None, include_terminal: bool = False) -> List[WorkerView]:
        state = self.store.load()
        if state is None:
            return []
        if name is not None:
            return [self.reconciler.inspect(state.require_worker(name))]
        return self.reconciler.snapshot(state, include_terminal=include_terminal)

    def list_worktrees(self) -> List[str]:
        return self.vcs.list_worktrees(self.worktrees_root)

    def _worktree(self, name: str) -> Path:
        path = self.worktrees_root / name
        if not path.is_dir():
            raise WorktreeNotFound(name)
        return path

    def review(self, name: str, full: bool = False) -> ReviewResult:
        path = self._worktree(name)
        state = self.store.load()
        worker = state.find_worker(name) if state is not None else None
        base = worker.base_branch if worker is not None else self.settings.repo.base_branch
        return ReviewResult(
            name=name,
            branch=self.vcs.current_branch(path),
            base_branch=base,
            diff=self.vcs.diff(path, base, full=full),
            commits=self.vcs.commits_ahead(path, base),
            stats=self.vcs.diff_stats(path, base),
        )

    # Workflow transitions

    def _transition(self, name: str, make_status: Callable[[Worker], object]) -> Worker:
        with self._transaction() as state:
            worker = state.require_worker(name)
            lifecycle.transition(worker, make_status(worker))
        return worker

    def mark_review(self, name: str) -> Worker:
        """Move a worker to waiting review with fresh diff stats."""
        return self._transition(
            name,
            lambda w: WaitingReview(
                diff_stats=self.vcs.diff_stats(Path(w.worktree_path), w.base_branch)
            ),
        )

    def approve(self, name: str) -> Worker:
        return self._transition(name, lambda w: Approved())

    def fail(self, name: str, reason: str = "") -> Worker:
        return self._transition(name, lambda w: Failed(reason=reason))

    def update_task(
        self,
        name: str,
        description: Optional[str] = None,
        files_hint: Optional[Sequence[str]] = None,
        depends_on: Optional[Sequence[str]] = None,
        issue_ref: Optional[str] = None,
    ) -> Worker:
        with self._transaction() as state:
            worker = state.require_worker(name)
            task = worker.task.model_copy() if worker.task else TaskContext(description="")
            if description is not None:
                task.description = description
            if files_hint is not None:
                task.files_hint = list(files_hint)
            if depends_on is not None:
                task.depends_on = list(depends_on)
            if issue_ref is not None:
                task.issue_ref = issue_ref
            worker.set_task(task)
        return worker

    def sync(self) -> List[StatusChange]:
        """Persist status changes implied by live tmux and git evidence."""
        with self._existing_state() as state:
            if state is None:
                return []
            changes = self.reconciler.sync(state, self.settings.repo.auto_review)
        return changes

    # Integration and cleanup

    def merge(self, name: str, delete: bool = False, force: bool = False) -> MergeResult:
        """Merge a worker's branch into the branch checked out at the repository root."""
        path = self._worktree(name)
        if not force and self.vcs.is_dirty(path):
            raise UncommittedChanges([name])

        branch = self.vcs.current_branch(path)
        into = self.vcs.current_branch()
        self.vcs.merge(branch)

        with self._existing_state() as state:
            worker = state.find_worker(name) if state is not None else None
            session = state.session_name if state is not None else self._new_state().session_name
            window = worker.window_name if worker is not None else name
            if worker is not None and worker.is_active:
                lifecycle.transition(worker, Merged())
        self.tmux.kill_window(session, window)

        if delete:
            self.vcs.remove(path, force=True)
            prune_empty_parents(path, self.worktrees_root)
            self.vcs.delete_branch(branch, force=True)

        return MergeResult(name=name, branch=branch, into=into, removed=delete)

    def plan_removal(self, pattern: str, recursive: bool = False) -> List[str]:
        """Worktree names a ``remove`` of ``pattern`` would delete, children first."""
        names = self.list_worktrees()
        if not names:
            raise NoWorktrees()
        matches = resolve(pattern, names, self.worktrees_root)
        if recursive:
            matches = expand_children(matches, self.store.load(), names)
        return matches

    def remove(self, names: Sequence[str], force: bool = False) -> List[str]:
        """Remove worktrees; without ``force`` a single dirty one aborts them all."""
        paths = [(name, self.worktrees_root / name) for name in names]
        if not force:
            dirty = [name for name, path in paths if path.exists() and self.vcs.is_dirty(path)]
            if dirty:
                raise UncommittedChanges(dirty)

        removed = []
        for name, path in paths:
            with self._existing_state() as state:
                worker = state.find_worker(name) if state is not None else None
                if state is not None:
                    window = worker.window_name if worker is not None else name
                    self.tmux.kill_window(state.session_name, window)
                self.vcs.remove(path, force=force)
                if worker is not None and worker.is_active:
                    lifecycle.transition(worker, Archived())
            prune_empty_parents(path, self.worktrees_root)
            removed.append(name)
            logger.info("removed %s", name)
        return removed
