"""Shared fixtures for weft tests."""

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from weft.config import Settings
from weft.models import RepoConfig
from weft.orchestrator import Orchestrator
from weft.runner import CommandResult

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

IDLE = "zsh"
AGENT = "claude"


class FakeRunner:
    """Scripted ``ProcessRunner``: the most recent rule whose prefix matches wins."""

    def __init__(self):
        self.calls: List[Tuple[List[str], Optional[Path]]] = []
        self.rules: List[Tuple[List[str], int, str, str]] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.rules.append((list(prefix), returncode, stdout, stderr))

    def run(self, args: Sequence[str], cwd: Optional[Path] = None) -> CommandResult:
        argv = [str(a) for a in args]
        self.calls.append((argv, cwd))
        for prefix, returncode, stdout, stderr in reversed(self.rules):
            if argv[: len(prefix)] == prefix:
                return CommandResult(argv, returncode, stdout, stderr)
        return CommandResult(argv, 0, "", "")

    def commands(self) -> List[List[str]]:
        return [argv for argv, _ in self.calls]

    def called(self, *prefix: str) -> bool:
        return any(argv[: len(prefix)] == list(prefix) for argv in self.commands())


class FakeTmux:
    """In-memory tmux: sessions map window names to their foreground command."""

    def __init__(self):
        self.sessions: Dict[str, Dict[str, str]] = {}
        self.sent: List[Tuple[str, str, str]] = []
        self.attached: Optional[Tuple[str, Optional[str]]] = None

    def session_exists(self, session):
        return session in self.sessions

    def ensure_session(self, session, cwd=None):
        self.sessions.setdefault(session, {})

    def list_windows(self, session):
        return set(self.sessions.get(session, {}))

    def window_exists(self, session, window):
        return window in self.sessions.get(session, {})

    def create_window(self, session, window, cwd):
        self.ensure_session(session)
        self.sessions[session][window] = IDLE

    def send_keys(self, session, window, text):
        self.sent.append((session, window, text))
        self.sessions[session][window] = AGENT

    def kill_window(self, session, window):
        self.sessions.get(session, {}).pop(window, None)

    def select_window(self, session, window):
        pass

    def pane_is_running(self, session, window):
        return self.sessions[session][window] != IDLE

    def attach(self, session, window=None):
        self.attached = (session, window)

    # Test helpers

    def exit_agent(self, session, window):
        self.sessions[session][window] = IDLE


@pytest.fixture(autouse=True)
def reset_weft_logger():
    yield
    logger = logging.getLogger("weft")
    logger.handlers[:] = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_tmux():
    return FakeTmux()


def commit_file(path: Path, name: str, content: str, message: str = "change") -> None:
    from git import Repo

    (path / name).write_text(content)
    repo = Repo(path)
    repo.git.add(name)
    repo.git.commit("-m", message)
    repo.close()


@pytest.fixture
def git_repo(tmp_path):
    """A repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    from git import Repo

    root = (tmp_path / "project").resolve()
    root.mkdir()
    repo = Repo.init(root)
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test User")
        config.set_value("user", "email", "test@example.com")
        config.set_value("commit", "gpgsign", "false")
    (root / "README.md").write_text("# project\n")
    repo.git.add("README.md")
    repo.git.commit("-m", "initial commit")
    repo.git.checkout("-B", "main")
    repo.close()
    return root


@pytest.fixture
def settings():
    return Settings(repo=RepoConfig())


@pytest.fixture
def orch(git_repo, fake_tmux, settings):
    return Orchestrator(git_repo, settings, tmux=fake_tmux, which=lambda tool: f"/usr/bin/{tool}")
