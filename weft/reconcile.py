"""Reconciling persisted worker records with tmux and git.

The record store says what each worker should be, tmux says whether its
process is alive, and git says what its worktree holds. ``Reconciler``
combines the three into ``WorkerView`` objects. The live status and the
persisted workflow status stay separate fields: a killed window shows as
``no-window`` while the record still says ``running`` until ``sync`` (or an
explicit command) moves it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from . import lifecycle
from .errors import WeftError
from .models import (
    OrchestratorState,
    Running,
    StatusKind,
    WaitingReview,
    Worker,
    WorkerStatus,
)
from .tmux import TmuxAdapter
from .worktrees import WorktreeManager

logger = logging.getLogger(__name__)


class LiveStatus(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    NO_SESSION = "no-session"
    NO_WINDOW = "no-window"
    UNKNOWN = "unknown"


@dataclass
class WorkerView:
    name: str
    live: LiveStatus
    branch: Optional[str] = None
    commits_ahead: int = 0
    dirty: bool = False
    worktree_present: bool = False
    status: Optional[WorkerStatus] = None
    worker: Optional[Worker] = None
    worktree_path: Optional[Path] = None

    @property
    def task(self) -> Optional[str]:
        if self.worker is None or self.worker.task is None:
            return None
        return self.worker.task.description


@dataclass
class StatusChange:
    name: str
    previous: StatusKind
    current: StatusKind


class Reconciler:
    def __init__(self, tmux: TmuxAdapter, vcs: WorktreeManager):
        self.tmux = tmux
        self.vcs = vcs

    def probe(self, session: str, window: str) -> LiveStatus:
        """Live status of one window; adapter failures give ``unknown``."""
        try:
            if not self.tmux.session_exists(session):
                return LiveStatus.NO_SESSION
            if not self.tmux.window_exists(session, window):
                return LiveStatus.NO_WINDOW
            if self.tmux.pane_is_running(session, window):
                return LiveStatus.RUNNING
            return LiveStatus.EXITED
        except WeftError as e:
            logger.warning("could not probe %s:%s: %s", session, window, e)
            return LiveStatus.UNKNOWN

    def _git_facts(self, path: Path, base: Optional[str]) -> Tuple[Optional[str], int, bool]:
        branch = self._guarded(path, self.vcs.current_branch, path)
        ahead = 0
        if base:
            commits = self._guarded(path, self.vcs.commits_ahead, path, base)
            ahead = len(commits or [])
        dirty = bool(self._guarded(path, self.vcs.is_dirty, path))
        return branch, ahead, dirty

    def _guarded(self, path: Path, func, *args):
        """Run one git query; a failure gives ``None`` so the others still run."""
        try:
            return func(*args)
        except WeftError as e:
            logger.warning("could not inspect worktree %s: %s", path, e)
            return None

    def inspect(self, worker: Worker) -> WorkerView:
        live = self.probe(worker.session_name, worker.window_name)
        path = Path(worker.worktree_path)
        present = path.is_dir()

        branch, ahead, dirty = worker.branch, 0, False
        if present:
            found, ahead, dirty = self._git_facts(path, worker.base_branch)
            branch = found or worker.branch

        return WorkerView(
            name=worker.name,
            live=live,
            branch=branch,
            commits_ahead=ahead,
            dirty=dirty,
            worktree_present=present,
            status=worker.status,
            worker=worker,
            worktree_path=path,
        )

    def snapshot(self, state: OrchestratorState, include_terminal: bool = False) -> List[WorkerView]:
        workers = state.all_workers() if include_terminal else state.active_workers()
        views = [self.inspect(w) for w in workers]
        return sorted(views, key=lambda v: v.name)

    def fallback(
        self, session: str, worktrees_root: Path, base: Optional[str] = None
    ) -> List[WorkerView]:
        """Views built from tmux windows alone, for repositories with no state file."""
        try:
            windows = self.tmux.list_windows(session)
        except WeftError as e:
            logger.warning("could not list tmux windows for %s: %s", session, e)
            return []
        if not windows:
            return []

        views = []
        root = Path(worktrees_root)
        for name in sorted(windows):
            path = root / name
            if not path.is_dir():
                continue
            branch, ahead, dirty = self._git_facts(path, base)
            views.append(
                WorkerView(
                    name=name,
                    live=self.probe(session, name),
                    branch=branch,
                    commits_ahead=ahead,
                    dirty=dirty,
                    worktree_present=True,
                    worktree_path=path,
                )
            )
        return views

    def sync(self, state: OrchestratorState, auto_review: bool = True) -> List[StatusChange]:
        """Advance workflow status from live evidence; the caller persists."""
        changes = []
        for worker in sorted(state.active_workers(), key=lambda w: w.name):
            current = StatusKind(worker.status.kind)
            if current not in (StatusKind.SPAWNED, StatusKind.RUNNING):
                continue

            live = self.probe(worker.session_name, worker.window_name)
            new_status = None
            if live == LiveStatus.RUNNING and current == StatusKind.SPAWNED:
                new_status = Running()
            elif live == LiveStatus.EXITED and auto_review:
                new_status = self._review_status(worker)

            if new_status is None:
                continue
            lifecycle.transition(worker, new_status)
            changes.append(StatusChange(worker.name, current, StatusKind(new_status.kind)))
        return changes

    def _review_status(self, worker: Worker) -> Optional[WaitingReview]:
        path = Path(worker.worktree_path)
        if not path.is_dir():
            return None
        try:
            stats = self.vcs.diff_stats(path, worker.base_branch)
        except WeftError as e:
            logger.warning("could not diff %s: %s", worker.name, e)
            return None
        if stats.is_empty():
            return None
        return WaitingReview(diff_stats=stats)
