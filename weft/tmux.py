"""Tmux session and window control.

One tmux session per repository, one window per worker. Every call is a
separate ``tmux`` invocation through a ``ProcessRunner``.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional, Set

from .errors import SessionNotFound, TmuxError, WindowNotFound
from .runner import CommandResult, ProcessRunner, SubprocessRunner

logger = logging.getLogger(__name__)

IDLE_SHELLS = frozenset({"bash", "zsh", "fish", "sh"})


def target(session: str, window: Optional[str] = None) -> str:
    return f"{session}:{window}" if window is not None else session


class TmuxAdapter:
    def __init__(self, runner: Optional[ProcessRunner] = None):
        self.runner = runner or SubprocessRunner()

    def _run(self, args: List[str]) -> CommandResult:
        return self.runner.run(["tmux", *args])

    def _tmux(self, args: List[str]) -> str:
        result = self._run(args)
        if not result.ok:
            raise TmuxError(result.stderr, result.returncode, result.args)
        return result.stdout

    def session_exists(self, session: str) -> bool:
        return self._run(["has-session", "-t", session]).ok

    def ensure_session(self, session: str, cwd: Optional[Path] = None) -> None:
        """Create a detached session unless it already exists."""
        if self.session_exists(session):
            return
        args = ["new-session", "-d", "-s", session]
        if cwd is not None:
            args += ["-c", str(cwd)]
        self._tmux(args)
        logger.info("created tmux session %s", session)

    def list_windows(self, session: str) -> Set[str]:
        """Window names of ``session``; empty when the session is absent."""
        result = self._run(["list-windows", "-t", session, "-F", "#{window_name}"])
        if not result.ok:
            return set()
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def window_exists(self, session: str, window: str) -> bool:
        return window in self.list_windows(session)

    def create_window(self, session: str, window: str, cwd: Path) -> None:
        """Open a window without stealing focus from the one the user is in."""
        self.ensure_session(session, cwd)
        self._tmux(["new-window", "-d", "-t", session, "-n", window, "-c", str(cwd)])
        logger.info("created tmux window %s", target(session, window))

    def send_keys(self, session: str, window: str, text: str) -> None:
        self._tmux(["send-keys", "-t", target(session, window), text, "Enter"])

    def kill_window(self, session: str, window: str) -> None:
        if not self.window_exists(session, window):
            logger.debug("window %s already gone", target(session, window))
            return
        self._tmux(["kill-window", "-t", target(session, window)])
        logger.info("killed tmux window %s", target(session, window))

    def select_window(self, session: str, window: str) -> None:
        self._tmux(["select-window", "-t", target(session, window)])

    def pane_command(self, session: str, window: str) -> Optional[str]:
        """Foreground command of the window's active pane."""
        out = self._tmux(
            ["display-message", "-p", "-t", target(session, window), "#{pane_current_command}"]
        )
        command = out.strip()
        return command or None

    def pane_is_running(self, session: str, window: str) -> bool:
        """Guess whether the agent is still running.

        An idle shell in the foreground means the agent has exited. A program
        that execs through a shell wrapper fools this check.
        """
        command = self.pane_command(session, window)
        if command is None:
            return False
        return command.lstrip("-") not in IDLE_SHELLS

    def attach(self, session: str, window: Optional[str] = None) -> None:
        """Attach the terminal to ``session``; on POSIX this never returns."""
        if not self.session_exists(session):
            raise SessionNotFound(session)
        if window is not None:
            if not self.window_exists(session, window):
                raise WindowNotFound(session, window)
            self.select_window(session, window)

        argv = ["tmux", "attach-session", "-t", session]
        logger.debug("attach: %s", " ".join(argv))
        if os.name == "posix":
            os.execvp("tmux", argv)
        else:
            subprocess.run(argv)
