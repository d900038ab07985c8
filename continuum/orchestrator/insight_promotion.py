"""Manual insight promotion with an accountability contract.

A human promotes an insight by naming an owner, a reviewer, an ETA, an
acceptance check, the artifact that proves the fix and the next checkpoint.
The contract becomes a todo task and a promotion audit. An insight is
promoted at most once; a second attempt is rejected with the existing task.

Recurring candidates are insights that keep being reported but have neither
a task nor a promotion audit. They are listed with a suggested owner and
lane so a human can promote them, and the continuity loop draws on them
when a queue runs dry.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from continuum.core.events import TASK_CREATED, EventBus
from continuum.core.exceptions import PromotionRejectedError, ValidationError
from continuum.core.models import (
    Insight,
    InsightStatus,
    Priority,
    PromotionAudit,
    PromotionContract,
    RecurringCandidate,
    Severity,
    Task,
    TaskMetadata,
    TaskStatus,
)
from continuum.db.base import BaseRepository
from continuum.memory.insight_store import InsightStore
from continuum.orchestrator.assignment import AssignmentEngine
from continuum.orchestrator.insight_task_bridge import (
    BUG_LANE,
    FEATURE_LANE,
    TASK_TITLE_PREFIX,
    InsightTaskBridge,
    build_task_description,
)
from continuum.tools.task_board import TaskBoard

logger = logging.getLogger("continuum.orchestrator.promotion")

PROMOTION_SOURCE = "insight-promotion"
PROMOTED_TAG = "insight-promoted"
BUSY_REFLECTION_COUNT = 4


def parse_contract(payload: Union[PromotionContract, dict[str, Any]]) -> PromotionContract:
    """Validate a promotion contract.

    Raises:
        ValidationError: naming every missing or blank field.
    """
    if isinstance(payload, PromotionContract):
        return payload
    try:
        return PromotionContract.model_validate(payload)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) or "contract" for err in e.errors()})
        raise ValidationError(f"Invalid promotion contract: {', '.join(fields)}") from e


def recurring_reason(insight: Insight) -> str:
    parts = []
    count = len(insight.reflection_ids)
    if count >= BUSY_REFLECTION_COUNT:
        parts.append(f"{count} reflections filed")
    if insight.severity_max in (Severity.HIGH, Severity.CRITICAL):
        parts.append(f"max severity: {insight.severity_max.value}")
    parts.append(f"score: {insight.score}/10")
    return "; ".join(parts)


class InsightPromoter:
    def __init__(
        self,
        store: InsightStore,
        board: TaskBoard,
        assignment: AssignmentEngine,
        repository: BaseRepository,
        bridge: InsightTaskBridge,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.board = board
        self.assignment = assignment
        self.repository = repository
        self.bridge = bridge
        self.events = events

    def promote_insight(
        self,
        insight_id: str,
        contract: Union[PromotionContract, dict[str, Any]],
        promoted_by: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[Priority] = None,
        now: Optional[datetime] = None,
    ) -> PromotionAudit:
        """Open a task for insight under contract and record the audit.

        Raises:
            ValidationError: Contract is incomplete.
            InsightNotFoundError: No such insight.
            PromotionRejectedError: Insight already has a task or an audit.
        """
        terms = parse_contract(contract)
        now = now or datetime.now(UTC)
        insight = self.store.require_insight(insight_id)

        existing = self.repository.get_promotion_audit(insight.id)
        if existing is not None:
            raise PromotionRejectedError(insight.id, existing.task_id)
        if insight.task_id:
            raise PromotionRejectedError(insight.id, insight.task_id)

        task = Task(
            title=title or f"{TASK_TITLE_PREFIX}{insight.title}",
            description=description or build_task_description(insight),
            status=TaskStatus.TODO,
            priority=priority or insight.priority,
            assignee=terms.owner,
            reviewer=terms.reviewer,
            tags=[PROMOTED_TAG, insight.failure_family],
            done_criteria=[
                terms.acceptance_check,
                f"Artifact: {terms.artifact_proof_requirement}",
                f"Checkpoint: {terms.next_checkpoint_eta}",
            ],
            created_by=promoted_by,
            metadata=TaskMetadata(
                source=PROMOTION_SOURCE,
                source_insight=insight.id,
                insight_id=insight.id,
                source_reflections=list(insight.reflection_ids),
                cluster_key=insight.cluster_key,
                severity=insight.severity_max.value if insight.severity_max else None,
                promotion_contract=terms.model_dump(),
                eta=terms.eta,
                reflection_count=len(insight.reflection_ids),
            ),
            created_at=now,
            updated_at=now,
        )
        created = self.board.create_task(task)
        linked_to = self.bridge.settle_link(insight.id, created.id, now)
        if linked_to != created.id:
            raise PromotionRejectedError(insight.id, linked_to)

        audit = PromotionAudit(
            insight_id=insight.id,
            task_id=created.id,
            promoted_by=promoted_by,
            contract=terms,
            insight_snapshot={
                "score": insight.score,
                "priority": insight.priority.value,
                "reflection_count": len(insight.reflection_ids),
                "independent_count": insight.independent_count,
                "severity_max": insight.severity_max.value if insight.severity_max else None,
                "cluster_key": insight.cluster_key,
            },
            created_at=now,
        )
        if not self.repository.create_promotion_audit(audit):
            current = self.repository.get_promotion_audit(insight.id)
            raise PromotionRejectedError(insight.id, current.task_id if current else created.id)

        self.store.start_cooldown(insight.id, "manual_promotion", InsightStatus.TASK_CREATED, now=now)
        logger.info("Insight %s promoted to task %s by %s (owner=%s, reviewer=%s)",
                    insight.id, created.id, promoted_by, terms.owner, terms.reviewer)
        if self.events is not None:
            self.events.emit(TASK_CREATED, {
                "task_id": created.id,
                "insight_id": insight.id,
                "assignee": terms.owner,
                "lane": None,
            })
        return audit

    def get_promotion_audit(self, insight_id: str) -> Optional[PromotionAudit]:
        return self.repository.get_promotion_audit(insight_id)

    def list_promotion_audits(self, limit: int = 50) -> list[PromotionAudit]:
        return self.repository.list_promotion_audits(limit)

    # -------------------------------------------------------------------
    # Recurring candidates
    # -------------------------------------------------------------------

    def list_recurring_candidates(self) -> list[RecurringCandidate]:
        insights = self.store.list_recurring_insights()
        if not insights:
            return []
        all_tasks = self.board.list_tasks()
        return [
            RecurringCandidate(
                insight_id=insight.id,
                cluster_key=insight.cluster_key,
                failure_family=insight.failure_family,
                impacted_unit=insight.impacted_unit,
                title=insight.title,
                reflection_count=len(insight.reflection_ids),
                score=insight.score,
                priority=insight.priority,
                severity_max=insight.severity_max,
                suggested_owner=self.suggest_owner(insight, all_tasks),
                suggested_lane=FEATURE_LANE if self.bridge.classifier.is_feature_request(insight) else BUG_LANE,
                reason=recurring_reason(insight),
            )
            for insight in insights
        ]

    def suggest_owner(self, insight: Insight, all_tasks: Optional[list[Task]] = None) -> Optional[str]:
        """First agent whose affinity overlaps the failure family or unit, else the assignment pick."""
        family = insight.failure_family.lower()
        unit = insight.impacted_unit.lower()
        for role in self.assignment.roles:
            for tag in role.affinity_tags:
                tag = tag.lower()
                if any(key and (key in tag or tag in key) for key in (family, unit)):
                    return role.name
        synthetic = Task(title=f"Fix {family} issue in {unit}", tags=[family, unit])
        tasks = all_tasks if all_tasks is not None else self.board.list_tasks()
        return self.assignment.suggest_assignee(synthetic, tasks).suggested
