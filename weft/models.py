"""Persisted entities: workers, their status, and the per-repository state."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .errors import NameInUse, WorkerNotFound

STATE_VERSION = 1
SESSION_PREFIX = "wt-"

# tmux rewrites these to "_" in session names and reads them as separators in targets.
TMUX_SEPARATORS = ".:"


def session_name_for(repo_root: Path) -> str:
    """tmux session name for a repository, in the form tmux itself stores."""
    name = f"{SESSION_PREFIX}{Path(repo_root).name or 'unknown'}"
    for char in TMUX_SEPARATORS:
        name = name.replace(char, "_")
    return name


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusKind(str, Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    WAITING_REVIEW = "waiting_review"
    APPROVED = "approved"
    MERGED = "merged"
    FAILED = "failed"
    ARCHIVED = "archived"


TERMINAL_KINDS = frozenset({StatusKind.MERGED, StatusKind.FAILED, StatusKind.ARCHIVED})


class FileDiff(BaseModel):
    path: str
    insertions: int = 0
    deletions: int = 0


class DiffStats(BaseModel):
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    files: List[FileDiff] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return self.files_changed == 0


class Spawned(BaseModel):
    kind: Literal["spawned"] = "spawned"


class Running(BaseModel):
    kind: Literal["running"] = "running"


class WaitingReview(BaseModel):
    kind: Literal["waiting_review"] = "waiting_review"
    diff_stats: DiffStats = Field(default_factory=DiffStats)


class Approved(BaseModel):
    kind: Literal["approved"] = "approved"


class Merged(BaseModel):
    kind: Literal["merged"] = "merged"


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: str = ""


class Archived(BaseModel):
    kind: Literal["archived"] = "archived"


WorkerStatus = Annotated[
    Union[Spawned, Running, WaitingReview, Approved, Merged, Failed, Archived],
    Field(discriminator="kind"),
]

STATUS_TYPES = (Spawned, Running, WaitingReview, Approved, Merged, Failed, Archived)


class TaskContext(BaseModel):
    description: str
    files_hint: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    issue_ref: Optional[str] = None


class Worker(BaseModel):
    """One agent session bound to one worktree."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, frozen=True)
    name: str
    worktree_path: Path
    branch: str
    base_branch: str
    task: Optional[TaskContext] = None
    status: WorkerStatus = Field(default_factory=Spawned)
    session_name: str
    window_name: Optional[str] = None
    parent: Optional[str] = None
    auto: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _default_window(self) -> "Worker":
        if self.window_name is None:
            self.window_name = self.name
        return self

    @property
    def is_terminal(self) -> bool:
        return StatusKind(self.status.kind) in TERMINAL_KINDS

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def set_status(self, status: WorkerStatus) -> None:
        """Replace the status without validation; see ``lifecycle.transition``."""
        self.status = status
        self.updated_at = utcnow()

    def set_task(self, task: TaskContext) -> None:
        self.task = task
        self.updated_at = utcnow()


class RepoConfig(BaseModel):
    base_branch: str = "main"
    worktree_dir: str = ".worktrees"
    on_create_hook: Optional[str] = None
    auto_review: bool = True


class OrchestratorState(BaseModel):
    """Everything weft remembers about one repository."""

    version: int = STATE_VERSION
    revision: int = 0
    repo_root: Path
    workers: Dict[str, Worker] = Field(default_factory=dict)
    session_name: str
    config: RepoConfig = Field(default_factory=RepoConfig)

    @classmethod
    def new(cls, repo_root: Path, config: Optional[RepoConfig] = None) -> "OrchestratorState":
        """Create a fresh state; the tmux session name is derived here, once."""
        repo_root = Path(repo_root)
        return cls(
            repo_root=repo_root,
            session_name=session_name_for(repo_root),
            config=config or RepoConfig(),
        )

    def add_worker(self, worker: Worker) -> None:
        existing = self.find_worker(worker.name)
        if existing is not None and existing.is_active:
            raise NameInUse(worker.name)
        self.workers[worker.id] = worker

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        return self.workers.get(worker_id)

    def find_worker(self, name: str) -> Optional[Worker]:
        """Find a worker by name, preferring the active one over archived history."""
        matches = [w for w in self.workers.values() if w.name == name]
        if not matches:
            return None
        for worker in matches:
            if worker.is_active:
                return worker
        return max(matches, key=lambda w: w.updated_at)

    def require_worker(self, name: str) -> Worker:
        worker = self.find_worker(name)
        if worker is None:
            raise WorkerNotFound(name)
        return worker

    def remove_worker(self, worker_id: str) -> Optional[Worker]:
        return self.workers.pop(worker_id, None)

    def active_workers(self) -> List[Worker]:
        return [w for w in self.workers.values() if w.is_active]

    def all_workers(self) -> List[Worker]:
        return list(self.workers.values())

    def children_of(self, name: str) -> List[Worker]:
        return sorted(
            (w for w in self.workers.values() if w.parent == name),
            key=lambda w: w.name,
        )

    def descendants_of(self, name: str) -> Iterator[Worker]:
        """Yield every transitive child of ``name``, depth first."""
        seen = {name}
        stack = list(reversed(self.children_of(name)))
        while stack:
            worker = stack.pop()
            if worker.name in seen:
                continue
            seen.add(worker.name)
            yield worker
            stack.extend(reversed(self.children_of(worker.name)))
