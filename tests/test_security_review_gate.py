"""Tests for continuum/security/review_gate.py: review mutation boundary."""

import pytest

from continuum.core.exceptions import MutationRejectedError, TaskNotFoundError, UnauthorizedMutationError
from continuum.core.models import Task, TaskStatus, TaskUpdate
from continuum.security.mutation_alert import APPROVAL_FIELD
from continuum.security.review_gate import ReviewGate, is_approval_attempt
from continuum.tools.task_board import RepositoryTaskBoard


class _VanishingBoard(RepositoryTaskBoard):
    """Board whose task is removed between the read and the write."""

    def update_task(self, task_id, update):
        self.delete_task(task_id)
        return super().update_task(task_id, update)


@pytest.fixture
def task(board):
    return board.create_task(Task(title="Fix sweeper", assignee="link", reviewer="harmony",
                                  status=TaskStatus.VALIDATING))


class TestIsApprovalAttempt:
    def test_detects_approval_keys(self):
        assert is_approval_attempt(TaskUpdate(metadata={"reviewer_approved": True}))
        assert is_approval_attempt(TaskUpdate(metadata={"review_state": "approved"}))
        assert not is_approval_attempt(TaskUpdate(metadata={"review_state": "changes_requested"}))
        assert not is_approval_attempt(TaskUpdate(status=TaskStatus.DONE))


class TestApproval:
    def test_reviewer_can_approve(self, review_gate, task, audit_ledger):
        updated = review_gate.apply_update(
            task.id, "Harmony", TaskUpdate(metadata={"reviewer_approved": True}), "approve"
        )
        assert updated.metadata.reviewer_approved is True
        entries = audit_ledger.get_audit_for_task(task.id)
        assert [e.field for e in entries] == [APPROVAL_FIELD]
        assert entries[0].actor == "Harmony"

    def test_non_reviewer_is_rejected(self, review_gate, task, board, audit_ledger, sink):
        with pytest.raises(UnauthorizedMutationError) as exc:
            review_gate.apply_update(task.id, "link", TaskUpdate(metadata={"reviewer_approved": True}))
        assert exc.value.expected_reviewer == "harmony"
        assert board.get_task(task.id).metadata.reviewer_approved is None
        assert len(audit_ledger.get_audit_for_task(task.id)) == 1
        assert len(sink.sent) == 1

    def test_task_without_reviewer_cannot_be_approved(self, review_gate, board):
        task = board.create_task(Task(title="t"))
        with pytest.raises(UnauthorizedMutationError):
            review_gate.apply_update(task.id, "harmony", TaskUpdate(metadata={"approved_by": "harmony"}))

    def test_missing_task(self, review_gate):
        with pytest.raises(TaskNotFoundError):
            review_gate.apply_update("task-missing", "harmony", TaskUpdate())


class TestFlips:
    def test_flip_written_once_and_alerts_at_threshold(self, review_gate, task, audit_ledger, alert_monitor):
        review_gate.apply_update(task.id, "harmony", TaskUpdate(metadata={"reviewer_approved": True}))
        review_gate.apply_update(task.id, "harmony", TaskUpdate(metadata={"reviewer_approved": False}))
        review_gate.apply_update(task.id, "harmony", TaskUpdate(metadata={"reviewer_approved": True}))

        approval_entries = audit_ledger.get_audit_entries(task_id=task.id, field=APPROVAL_FIELD)
        assert len(approval_entries) == 3
        assert alert_monitor.count_flips(task.id, "harmony") == 2
        assert alert_monitor.get_status()["alert_count"] == 1

    def test_failed_update_records_no_flip(self, repository, board, task, audit_ledger, alert_monitor):
        board.update_task(task.id, TaskUpdate(metadata={"reviewer_approved": True}))
        gate = ReviewGate(_VanishingBoard(repository), audit_ledger, alert_monitor)
        with pytest.raises(TaskNotFoundError):
            gate.apply_update(task.id, "harmony", TaskUpdate(metadata={"reviewer_approved": False}))
        assert audit_ledger.get_audit_entries(task_id=task.id, field=APPROVAL_FIELD) == []
        assert alert_monitor.count_flips(task.id, "harmony") == 0


class TestWipCap:
    def test_move_to_doing_over_cap_rejected(self, review_gate, board):
        board.create_task(Task(title="busy", assignee="pixel", status=TaskStatus.DOING))
        task = board.create_task(Task(title="next", assignee="pixel"))
        with pytest.raises(MutationRejectedError, match="WIP cap reached"):
            review_gate.apply_update(task.id, "pixel", TaskUpdate(status=TaskStatus.DOING))

    def test_override_allows(self, review_gate, board):
        board.create_task(Task(title="busy", assignee="pixel", status=TaskStatus.DOING))
        task = board.create_task(Task(title="next", assignee="pixel"))
        updated = review_gate.apply_update(
            task.id, "pixel",
            TaskUpdate(status=TaskStatus.DOING, metadata={"wip_override": "prod incident"}),
        )
        assert updated.status == TaskStatus.DOING

    def test_non_review_change_writes_no_audit(self, review_gate, board, audit_ledger):
        task = board.create_task(Task(title="t", assignee="link"))
        review_gate.apply_update(task.id, "link", TaskUpdate(status=TaskStatus.DOING))
        assert audit_ledger.get_audit_for_task(task.id) == []

    def test_gate_without_assignment_skips_cap(self, board, audit_ledger, alert_monitor):
        gate = ReviewGate(board, audit_ledger, alert_monitor)
        board.create_task(Task(title="busy", assignee="pixel", status=TaskStatus.DOING))
        task = board.create_task(Task(title="next", assignee="pixel"))
        updated = gate.apply_update(task.id, "pixel", TaskUpdate(status=TaskStatus.DOING))
        assert updated.status == TaskStatus.DOING
