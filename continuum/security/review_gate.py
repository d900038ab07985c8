"""Task-mutation boundary for review fields.

Every task update that can touch reviewer state goes through
ReviewGate.apply_update. The gate rejects approvals from anyone but the
assigned reviewer, flags approval toggles, enforces the WIP cap when a task
moves to doing, and writes the resulting review-field diff to the audit
ledger.
"""

from __future__ import annotations

import logging
from typing import Optional

from continuum.core.exceptions import MutationRejectedError, TaskNotFoundError, UnauthorizedMutationError
from continuum.core.models import Task, TaskStatus, TaskUpdate
from continuum.orchestrator.assignment import AssignmentEngine
from continuum.security.audit_ledger import AuditLedger, diff_review_fields
from continuum.security.mutation_alert import APPROVAL_FIELD, MutationAlertMonitor
from continuum.tools.task_board import TaskBoard

logger = logging.getLogger("continuum.security.review_gate")

APPROVAL_KEYS = ("reviewer_approved", "approved_by", "approved_at")


def is_approval_attempt(update: TaskUpdate) -> bool:
    meta = update.metadata
    if any(key in meta for key in APPROVAL_KEYS):
        return True
    return meta.get("review_state") == "approved"


class ReviewGate:
    def __init__(
        self,
        board: TaskBoard,
        ledger: AuditLedger,
        monitor: MutationAlertMonitor,
        assignment: Optional[AssignmentEngine] = None,
    ):
        self.board = board
        self.ledger = ledger
        self.monitor = monitor
        self.assignment = assignment

    def apply_update(self, task_id: str, actor: str, update: TaskUpdate, context: str = "") -> Task:
        """Validate and apply an update on behalf of actor.

        Raises:
            TaskNotFoundError: No such task.
            UnauthorizedMutationError: Actor is not the assigned reviewer but
                tried to set approval fields.
            MutationRejectedError: Moving to doing would exceed the WIP cap.
        """
        task = self.board.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if is_approval_attempt(update) and not self._is_reviewer(task, actor):
            self.monitor.alert_unauthorized_approval(
                task_id=task.id,
                task_title=task.title,
                actor=actor,
                expected_reviewer=task.reviewer,
                context=context,
            )
            raise UnauthorizedMutationError(task.id, actor, task.reviewer)

        if update.status == TaskStatus.DOING and self.assignment is not None:
            self._enforce_wip_cap(self.assignment, task, update)

        old_value = task.metadata.reviewer_approved
        new_value = update.metadata.get("reviewer_approved")
        flipped = isinstance(old_value, bool) and isinstance(new_value, bool) and old_value != new_value

        updated = self.board.update_task(task_id, update)

        if flipped:
            self.monitor.alert_flip_attempt(
                task_id=task.id,
                task_title=task.title,
                actor=actor,
                from_value=old_value,
                to_value=new_value,
                context=context,
            )

        changes = diff_review_fields(task, updated)
        if flipped:
            # already written by the flip alert
            changes = [c for c in changes if c["field"] != APPROVAL_FIELD]
        if changes:
            self.ledger.record_review_mutation(task_id, actor, context, changes)
            logger.info("Recorded %d review-field changes on %s by %s", len(changes), task_id, actor)
        return updated

    def _enforce_wip_cap(self, assignment: AssignmentEngine, task: Task, update: TaskUpdate) -> None:
        agent = update.assignee or task.assignee
        if not agent or task.status == TaskStatus.DOING:
            return
        override = update.metadata.get("wip_override") or task.metadata.wip_override
        check = assignment.check_wip_cap(agent, self.board.list_tasks(), override=override)
        if not check.allowed:
            raise MutationRejectedError(check.message or f"WIP cap reached for {agent}")
        if check.message:
            logger.warning(check.message)

    @staticmethod
    def _is_reviewer(task: Task, actor: str) -> bool:
        return bool(task.reviewer) and task.reviewer.lower() == actor.lower()
