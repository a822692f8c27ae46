"""Worker status transitions.

The happy path only moves forward::

    spawned -> running -> waiting_review -> approved -> merged

``failed`` and ``archived`` are side exits available from any active state.
``merged``, ``failed`` and ``archived`` are terminal: nothing leaves them.
"""

import logging
from typing import assert_never

from .errors import InvalidTransition
from .models import (
    TERMINAL_KINDS,
    Approved,
    Archived,
    Failed,
    Merged,
    Running,
    Spawned,
    StatusKind,
    WaitingReview,
    Worker,
    WorkerStatus,
)

logger = logging.getLogger(__name__)

HAPPY_PATH = (
    StatusKind.SPAWNED,
    StatusKind.RUNNING,
    StatusKind.WAITING_REVIEW,
    StatusKind.APPROVED,
    StatusKind.MERGED,
)

SIDE_EXITS = frozenset({StatusKind.FAILED, StatusKind.ARCHIVED})


def is_terminal(kind: StatusKind) -> bool:
    return StatusKind(kind) in TERMINAL_KINDS


def can_transition(current: StatusKind, target: StatusKind) -> bool:
    current = StatusKind(current)
    target = StatusKind(target)
    if is_terminal(current):
        return False
    if target in SIDE_EXITS:
        return True
    if current == target == StatusKind.WAITING_REVIEW:
        # Re-entering review refreshes the diff stats.
        return True
    return HAPPY_PATH.index(target) > HAPPY_PATH.index(current)


def transition(worker: Worker, status: WorkerStatus) -> Worker:
    """Move ``worker`` to ``status`` or raise ``InvalidTransition``."""
    current = StatusKind(worker.status.kind)
    target = StatusKind(status.kind)
    if not can_transition(current, target):
        raise InvalidTransition(worker.name, current.value, target.value)
    worker.set_status(status)
    logger.info("worker %s: %s -> %s", worker.name, current.value, target.value)
    return worker


def describe(status: WorkerStatus) -> str:
    """Human label for a status, including variant payloads."""
    if isinstance(status, Spawned):
        return "spawned"
    if isinstance(status, Running):
        return "running"
    if isinstance(status, WaitingReview):
        stats = status.diff_stats
        return f"waiting review ({stats.files_changed} files, +{stats.insertions}/-{stats.deletions})"
    if isinstance(status, Approved):
        return "approved"
    if isinstance(status, Merged):
        return "merged"
    if isinstance(status, Failed):
        return f"failed: {status.reason}" if status.reason else "failed"
    if isinstance(status, Archived):
        return "archived"
    assert_never(status)
