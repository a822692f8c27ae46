"""Tests for worker status transitions."""

from pathlib import Path

import pytest

from weft.errors import InvalidTransition
from weft.lifecycle import can_transition, describe, transition
from weft.models import (
    STATUS_TYPES,
    Approved,
    Archived,
    DiffStats,
    Failed,
    Merged,
    Running,
    StatusKind,
    WaitingReview,
    Worker,
)

ACTIVE = [StatusKind.SPAWNED, StatusKind.RUNNING, StatusKind.WAITING_REVIEW, StatusKind.APPROVED]
TERMINAL = [StatusKind.MERGED, StatusKind.FAILED, StatusKind.ARCHIVED]


def make_worker():
    return Worker(
        name="feat",
        worktree_path=Path("/repo/.worktrees/feat"),
        branch="feat",
        base_branch="main",
        session_name="wt-repo",
    )


class TestCanTransition:
    @pytest.mark.parametrize("current", TERMINAL)
    @pytest.mark.parametrize("target", list(StatusKind))
    def test_terminal_states_never_move(self, current, target):
        assert not can_transition(current, target)

    @pytest.mark.parametrize("current", ACTIVE)
    def test_side_exits_from_any_active_state(self, current):
        assert can_transition(current, StatusKind.FAILED)
        assert can_transition(current, StatusKind.ARCHIVED)

    def test_forward_and_skipping(self):
        assert can_transition(StatusKind.SPAWNED, StatusKind.RUNNING)
        assert can_transition(StatusKind.SPAWNED, StatusKind.WAITING_REVIEW)
        assert can_transition(StatusKind.RUNNING, StatusKind.MERGED)

    def test_no_going_back(self):
        assert not can_transition(StatusKind.RUNNING, StatusKind.SPAWNED)
        assert not can_transition(StatusKind.APPROVED, StatusKind.WAITING_REVIEW)
        assert not can_transition(StatusKind.RUNNING, StatusKind.RUNNING)

    def test_review_can_be_refreshed(self):
        assert can_transition(StatusKind.WAITING_REVIEW, StatusKind.WAITING_REVIEW)

    def test_accepts_plain_strings(self):
        assert can_transition("spawned", "running")
        assert not can_transition("merged", "failed")


class TestTransition:
    def test_happy_path(self):
        worker = make_worker()
        for status in (Running(), WaitingReview(), Approved(), Merged()):
            transition(worker, status)
        assert worker.status.kind == "merged"
        assert worker.is_terminal

    def test_invalid_move_leaves_status(self):
        worker = make_worker()
        transition(worker, Failed(reason="tests broke"))

        with pytest.raises(InvalidTransition) as excinfo:
            transition(worker, Running())

        assert excinfo.value.current == "failed"
        assert worker.status.reason == "tests broke"


class TestDescribe:
    @pytest.mark.parametrize("status_type", STATUS_TYPES)
    def test_every_variant_has_a_label(self, status_type):
        assert describe(status_type())

    def test_status_types_cover_every_kind(self):
        assert {t().kind for t in STATUS_TYPES} == {k.value for k in StatusKind}

    def test_payloads(self):
        stats = DiffStats(files_changed=2, insertions=10, deletions=4)
        assert describe(WaitingReview(diff_stats=stats)) == "waiting review (2 files, +10/-4)"
        assert describe(Failed(reason="timeout")) == "failed: timeout"
        assert describe(Archived()) == "archived"
