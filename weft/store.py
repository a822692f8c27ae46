"""Durable storage for ``OrchestratorState``.

One JSON file per repository lives inside the worktrees directory. Writes go to
a temporary file that is fsynced and then renamed over the original, so a crash
mid-write leaves the previous file intact.

Concurrent CLI invocations are serialized with an advisory ``fcntl`` lock on a
sidecar lock file. Each save also bumps ``revision`` and refuses to overwrite a
file whose revision moved since the state was loaded, so a racing writer gets a
``StateConflict`` instead of silently dropping the other invocation's update.
"""

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from .errors import StateConflict, StateFileError, StorageError
from .models import STATE_VERSION, OrchestratorState

logger = logging.getLogger(__name__)

STATE_FILE_NAME = ".weft-state.json"
LOCK_FILE_NAME = ".weft-state.lock"


def state_file_path(repo_root: Path, worktree_dir: str = ".worktrees") -> Path:
    """Get the state file path for a repository."""
    return Path(repo_root) / worktree_dir / STATE_FILE_NAME


class StateStore:
    """Load and save the orchestrator state of one repository."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(LOCK_FILE_NAME)
        self._lock_depth = 0
        self._lock_file = None

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[OrchestratorState]:
        """Load state from disk; an absent file means nothing was ever spawned."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(self.path, e) from e
        return self._parse(text)

    def _parse(self, text: str) -> OrchestratorState:
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise StateFileError(self.path, str(e)) from e
        if not isinstance(raw, dict):
            raise StateFileError(self.path, "expected a JSON object")

        version = raw.get("version", STATE_VERSION)
        if not isinstance(version, int) or version > STATE_VERSION:
            raise StateFileError(
                self.path, f"unsupported state version {version!r} (this weft reads {STATE_VERSION})"
            )
        try:
            return OrchestratorState.model_validate(raw)
        except ValidationError as e:
            raise StateFileError(self.path, str(e)) from e

    def _disk_revision(self) -> Optional[int]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(self.path, e) from e
        except json.JSONDecodeError:
            # A corrupt file carries no revision worth protecting.
            return None
        return raw.get("revision", 0) if isinstance(raw, dict) else None

    def save(self, state: OrchestratorState) -> None:
        """Atomically write ``state``, refusing to clobber a newer revision."""
        with self.lock():
            on_disk = self._disk_revision()
            if on_disk is not None and on_disk != state.revision:
                raise StateConflict(self.path)

            state.revision += 1
            payload = state.model_dump_json(indent=2)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except OSError as e:
                state.revision -= 1
                raise StorageError(self.path, e) from e

        logger.debug("saved state revision %d to %s", state.revision, self.path)

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the advisory lock; nested use in one process is allowed."""
        if self._lock_depth == 0:
            try:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                self._lock_file = open(self.lock_path, "a", encoding="utf-8")
                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX)
            except OSError as e:
                if self._lock_file is not None:
                    self._lock_file.close()
                    self._lock_file = None
                raise StorageError(self.lock_path, e) from e
        self._lock_depth += 1
        try:
            yield
        finally:
            self._lock_depth -= 1
            if self._lock_depth == 0 and self._lock_file is not None:
                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
                self._lock_file.close()
                self._lock_file = None

    @contextmanager
    def transaction(
        self, factory: Callable[[], OrchestratorState]
    ) -> Iterator[OrchestratorState]:
        """Load (or create with ``factory``), yield for mutation, then save."""
        with self.lock():
            state = self.load()
            if state is None:
                state = factory()
            yield state
            self.save(state)
