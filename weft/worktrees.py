"""Git worktree, branch and diff operations.

``WorktreeManager`` wraps the handful of git commands weft needs. Each method
maps to one or a few git invocations and always passes an explicit working
directory, so the caller's own cwd never matters. Failures come back as typed
errors carrying git's stderr verbatim:

- ``create`` raises ``WorktreeExists`` / ``BranchNotFound`` / ``VcsError``,
- ``remove`` raises ``UncommittedChanges`` when git reports modified or
  untracked files and ``force`` was not given,
- everything else raises ``VcsError`` on a non-zero exit.

Removing a worktree does not clean up now-empty parent directories: the
manager has no notion of the worktrees root, see ``matching.prune_empty_parents``.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

from git import Repo
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from .errors import BranchNotFound, NotARepository, UncommittedChanges, VcsError, WorktreeExists
from .models import DiffStats, FileDiff
from .runner import CommandResult, GitRunner, ProcessRunner

logger = logging.getLogger(__name__)

WORKTREE_MARKER = ".git"
REMOTE_PREFIX = "origin/"
DIRTY_REMOVE_MESSAGE = "contains modified or untracked files"


def find_repo_root(path: Union[str, Path]) -> Path:
    """Return the base repository root, even when ``path`` is inside a linked worktree."""
    try:
        repo = Repo(path, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        raise NotARepository(path) from e
    try:
        return Path(repo.common_dir).resolve().parent
    finally:
        repo.close()


def parse_numstat(text: str) -> DiffStats:
    """Parse ``git diff --numstat`` output.

    Binary files report ``-`` for both counts; they count as a changed file
    with zero insertions and deletions.
    """
    stats = DiffStats()
    for line in text.splitlines():
        parts = line.split("\t", 2)
        if len(parts) < 3:
            continue
        insertions = int(parts[0]) if parts[0].isdigit() else 0
        deletions = int(parts[1]) if parts[1].isdigit() else 0
        stats.files_changed += 1
        stats.insertions += insertions
        stats.deletions += deletions
        stats.files.append(FileDiff(path=parts[2], insertions=insertions, deletions=deletions))
    return stats


class WorktreeManager:
    def __init__(self, repo_root: Path, runner: Optional[ProcessRunner] = None):
        self.repo_root = Path(repo_root)
        self.runner = runner or GitRunner()

    def _run(self, args: List[str], cwd: Optional[Path] = None) -> CommandResult:
        return self.runner.run(["git", *args], cwd=cwd or self.repo_root)

    def _git(self, args: List[str], cwd: Optional[Path] = None) -> str:
        result = self._run(args, cwd=cwd)
        if not result.ok:
            raise VcsError(result.stderr, result.returncode, result.args)
        return result.stdout

    def _verify(self, ref: str) -> Optional[str]:
        result = self._run(["rev-parse", "--verify", "--quiet", ref])
        if not result.ok:
            return None
        return result.stdout.strip() or None

    # Repository-level queries

    def git_common_dir(self) -> Path:
        out = self._git(["rev-parse", "--git-common-dir"]).strip()
        path = Path(out)
        if not path.is_absolute():
            path = self.repo_root / path
        return path.resolve()

    def ensure_excluded(self, worktree_dir: str) -> None:
        """Make sure the worktrees directory is listed in ``.git/info/exclude``."""
        entry = worktree_dir.strip("/") + "/"
        exclude = self.git_common_dir() / "info" / "exclude"
        content = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if any(line.strip() in (entry, entry.rstrip("/")) for line in content.splitlines()):
            return
        exclude.parent.mkdir(parents=True, exist_ok=True)
        prefix = "" if not content or content.endswith("\n") else "\n"
        with open(exclude, "a", encoding="utf-8") as f:
            f.write(f"{prefix}{entry}\n")
        logger.debug("added %s to %s", entry, exclude)

    def resolves(self, ref: str) -> bool:
        return self._verify(ref) is not None

    def branch_exists(self, branch: str) -> bool:
        """True if ``branch`` exists locally or as ``origin/<branch>``."""
        name = branch[len(REMOTE_PREFIX):] if branch.startswith(REMOTE_PREFIX) else branch
        if self._verify(f"refs/heads/{name}"):
            return True
        return self._verify(f"refs/remotes/origin/{name}") is not None

    def resolve_start_point(self, base: str) -> str:
        """Pick the start point for a new branch; the first candidate that verifies wins."""
        if self._verify(base):
            return base

        if not base.startswith(REMOTE_PREFIX):
            with_origin = REMOTE_PREFIX + base
            if self._verify(with_origin):
                return with_origin

        sha = self._verify(f"refs/heads/{base}")
        if sha:
            return sha

        if base.startswith(REMOTE_PREFIX):
            remote_ref = f"refs/remotes/{base}"
        else:
            remote_ref = f"refs/remotes/origin/{base}"
        sha = self._verify(remote_ref)
        if sha:
            return sha

        sha = self._verify("HEAD")
        if sha:
            logger.warning("base '%s' not found, starting from HEAD (%s)", base, sha[:8])
            return sha

        raise BranchNotFound(base)

    def current_branch(self, path: Optional[Path] = None) -> str:
        return self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path).strip()

    # Worktree lifecycle

    def create(self, path: Path, branch: str, base: str, name: Optional[str] = None) -> str:
        """Create a worktree at ``path`` on ``branch``.

        ``name`` is how errors refer to the worktree (default: the last path
        component). Returns the start point the branch was created from, or
        the branch itself when an existing branch was attached.
        """
        path = Path(path)
        if path.exists():
            raise WorktreeExists(name or path.name)
        path.parent.mkdir(parents=True, exist_ok=True)

        if self.branch_exists(branch):
            self._git(["worktree", "add", str(path), branch])
            logger.info("created worktree %s on existing branch %s", path, branch)
            return branch

        start_point = self.resolve_start_point(base)
        self._git(["worktree", "add", "-b", branch, str(path), start_point])
        logger.info("created worktree %s on new branch %s from %s", path, branch, start_point)

        result = self._run(["config", "push.autoSetupRemote", "true"], cwd=path)
        if not result.ok:
            logger.warning("could not enable push.autoSetupRemote: %s", result.stderr.strip())
        return start_point

    def remove(self, path: Path, force: bool = False) -> None:
        path = Path(path)
        if not force and path.exists() and self.is_dirty(path):
            raise UncommittedChanges([path.name])

        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))

        result = self._run(args)
        if not result.ok:
            if DIRTY_REMOVE_MESSAGE in result.stderr:
                raise UncommittedChanges([path.name])
            raise VcsError(result.stderr, result.returncode, result.args)
        logger.info("removed worktree %s", path)

    def list_worktrees(self, root: Path) -> List[str]:
        """List worktree names (posix paths relative to ``root``), sorted."""
        root = Path(root)
        if not root.is_dir():
            return []

        names = []
        pending = [root]
        while pending:
            current = pending.pop()
            for entry in current.iterdir():
                if not entry.is_dir():
                    continue
                if (entry / WORKTREE_MARKER).is_file():
                    names.append(entry.relative_to(root).as_posix())
                else:
                    pending.append(entry)
        return sorted(names)

    # Inspection

    def is_dirty(self, path: Path) -> bool:
        return bool(self._git(["status", "--porcelain"], cwd=path).strip())

    def commits_ahead(self, path: Path, base: str) -> List[str]:
        out = self._git(["log", f"{base}..HEAD", "--oneline"], cwd=path)
        return [line for line in out.splitlines() if line.strip()]

    def diff_stats(self, path: Path, base: str) -> DiffStats:
        return parse_numstat(self._git(["diff", "--numstat", base], cwd=path))

    def diff(self, path: Path, base: str, full: bool = True) -> str:
        args = ["diff", base] if full else ["diff", "--stat", base]
        return self._git(args, cwd=path)

    # Integration

    def merge(self, branch: str, cwd: Optional[Path] = None) -> None:
        """Merge ``branch`` into whatever is checked out at ``cwd`` (default: repo root)."""
        self._git(["merge", "--no-edit", branch], cwd=cwd)
        logger.info("merged %s", branch)

    def delete_branch(self, branch: str, force: bool = False) -> None:
        self._git(["branch", "-D" if force else "-d", branch])
        logger.info("deleted branch %s", branch)

    def run_hook(self, command: str, cwd: Path) -> bool:
        """Run an on-create hook in ``cwd``; a failing hook is reported, not raised."""
        logger.info("running on-create hook: %s", command)
        result = self.runner.run(["sh", "-c", command], cwd=cwd)
        if not result.ok:
            logger.warning(
                "on-create hook exited %d: %s", result.returncode, result.stderr.strip()
            )
        return result.ok
