"""Worktree name patterns and parent/child expansion for removal."""

import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import WorktreeNotFound
from .models import OrchestratorState

logger = logging.getLogger(__name__)


def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a shell-style pattern. ``*`` and ``?`` also match ``/``."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$")


def resolve(pattern: str, names: Iterable[str], root: Optional[Path] = None) -> List[str]:
    """Names matching ``pattern``, in listing order.

    A pattern that matches nothing but names an existing directory under
    ``root`` is taken literally.
    """
    regex = glob_to_regex(pattern)
    matches = [name for name in names if regex.match(name)]
    if matches:
        return matches
    if root is not None and (Path(root) / pattern).is_dir():
        return [pattern]
    raise WorktreeNotFound(pattern)


def expand_children(
    matches: Iterable[str], state: Optional[OrchestratorState], known: Iterable[str]
) -> List[str]:
    """Add every recorded descendant of ``matches`` that still has a worktree.

    Children come before their parent, and each name appears once.
    """
    known = set(known)
    ordered: List[str] = []
    seen = set()

    def add(name: str) -> None:
        if name not in seen:
            seen.add(name)
            ordered.append(name)

    for name in matches:
        if state is not None:
            descendants = [w.name for w in state.descendants_of(name) if w.name in known]
            # Deepest first.
            for child in reversed(descendants):
                add(child)
        add(name)
    return ordered


def prune_empty_parents(path: Path, root: Path) -> List[Path]:
    """Remove now-empty directories between ``path`` and ``root``.

    ``root`` itself is never removed. Returns the directories deleted.
    """
    root = Path(root).resolve()
    current = Path(path).resolve().parent
    removed = []
    while current != root and root in current.parents:
        try:
            next(current.iterdir())
        except StopIteration:
            current.rmdir()
            removed.append(current)
            logger.debug("removed empty directory %s", current)
            current = current.parent
            continue
        except FileNotFoundError:
            current = current.parent
            continue
        break
    return removed
