"""Process runners used by the git and tmux adapters.

Adapters never call ``subprocess`` directly: they take a ``ProcessRunner`` so
tests can swap in a scripted fake. Two real runners exist:

- ``SubprocessRunner`` for tmux and hook commands,
- ``GitRunner`` which executes git through GitPython's ``Git.execute``.

Both bound every call with a timeout; a hung external tool surfaces as a
``ToolError`` instead of hanging the whole command.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from git import Git
from git.exc import GitCommandNotFound

from .errors import MissingDependency, ToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = field(default="")

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner(Protocol):
    def run(self, args: Sequence[str], cwd: Optional[Path] = None) -> CommandResult:
        ...


class SubprocessRunner:
    """Run commands with ``subprocess.run`` and capture their output."""

    def __init__(self, timeout: Optional[float] = 30.0):
        self.timeout = timeout

    def run(self, args: Sequence[str], cwd: Optional[Path] = None) -> CommandResult:
        argv = [str(a) for a in args]
        logger.debug("run: %s (cwd=%s)", " ".join(argv), cwd)
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise MissingDependency(argv[0]) from e
        except subprocess.TimeoutExpired as e:
            raise ToolError(f"timed out after {self.timeout}s", args=argv) from e
        return CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)


class GitRunner:
    """Run git commands through GitPython without raising on non-zero exit."""

    def __init__(self, timeout: Optional[float] = 60.0):
        self.timeout = timeout

    def run(self, args: Sequence[str], cwd: Optional[Path] = None) -> CommandResult:
        argv = [str(a) for a in args]
        logger.debug("git: %s (cwd=%s)", " ".join(argv), cwd)
        try:
            status, stdout, stderr = Git(str(cwd) if cwd else None).execute(
                argv,
                with_extended_output=True,
                with_exceptions=False,
                kill_after_timeout=self.timeout,
                strip_newline_in_stdout=False,
            )
        except GitCommandNotFound as e:
            raise MissingDependency("git") from e
        return CommandResult(argv, status or 0, stdout, stderr)
