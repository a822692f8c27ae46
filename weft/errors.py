"""Error types raised by weft.

Every failure that reaches the command layer is a ``WeftError``; the CLI prints
its message and exits non-zero.
"""

from pathlib import Path
from typing import Optional, Sequence, Union


class WeftError(Exception):
    """Base class for all weft errors."""


class NotARepository(WeftError):
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(f"Not in a git repository: {self.path}")


class WorktreeExists(WeftError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Worktree '{name}' already exists")


class WorktreeNotFound(WeftError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Worktree '{name}' does not exist")


class WorkerNotFound(WeftError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Worker '{name}' not found")


class NameInUse(WeftError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"An active worker named '{name}' already exists")


class InvalidName(WeftError):
    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__(f"Invalid worker name '{name}': {reason}")


class BranchNotFound(WeftError):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Branch '{branch}' does not exist")


class UncommittedChanges(WeftError):
    def __init__(self, names: Sequence[str] = ()):
        self.names = list(names)
        message = "Worktree has uncommitted changes. Use --force to override"
        if self.names:
            message = (
                f"Worktree{'s' if len(self.names) > 1 else ''} "
                f"{', '.join(self.names)} {'have' if len(self.names) > 1 else 'has'} "
                "uncommitted changes. Use --force to override"
            )
        super().__init__(message)


class NoWorktrees(WeftError):
    def __init__(self):
        super().__init__("No worktrees found")


class MissingDependency(WeftError):
    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Missing dependency: {tool} (not found on PATH)")


class SessionNotFound(WeftError):
    def __init__(self, session: str):
        self.session = session
        super().__init__(f"Tmux session not found: {session}")


class WindowNotFound(WeftError):
    def __init__(self, session: str, window: str):
        self.session = session
        self.window = window
        super().__init__(f"Tmux window not found: {session}:{window}")


class ToolError(WeftError):
    """An external tool exited non-zero; ``stderr`` is kept verbatim."""

    tool = "command"

    def __init__(self, stderr: str, returncode: Optional[int] = None, args: Sequence[str] = ()):
        self.stderr = stderr
        self.returncode = returncode
        self.command = list(args)
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"{self.tool} error: {detail}")


class VcsError(ToolError):
    tool = "git"


class TmuxError(ToolError):
    tool = "tmux"


class StorageError(WeftError):
    def __init__(self, path: Union[str, Path], error: OSError):
        self.path = Path(path)
        self.error = error
        super().__init__(f"I/O error on {self.path}: {error}")


class StateFileError(WeftError):
    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        super().__init__(f"Malformed state file {self.path}: {reason}")


class ConfigError(WeftError):
    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        super().__init__(f"Malformed config {self.path}: {reason}")


class StateConflict(WeftError):
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(
            f"State file {self.path} was modified by another weft invocation; re-run the command"
        )


class AlreadyInitialized(WeftError):
    def __init__(self):
        super().__init__("Already initialized. Use --force to reinitialize")


class InvalidTransition(WeftError):
    def __init__(self, name: str, current: str, target: str):
        self.name = name
        self.current = current
        self.target = target
        super().__init__(f"Worker '{name}' cannot move from {current} to {target}")
