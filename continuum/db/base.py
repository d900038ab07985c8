"""Storage contract shared by the PostgreSQL and in-memory repositories.

Components depend on this interface only. Every method that must be atomic
under concurrent callers (insight create-or-merge, suppression upsert, task
linking) is a single call here so each backend can enforce it natively.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

from continuum.core.models import (
    ContinuityAction,
    Insight,
    InsightFilter,
    InsightMetadata,
    InsightStatus,
    PauseEntry,
    PromotionAudit,
    Reflection,
    SuppressionLedgerEntry,
    Task,
    TaskStatus,
    TaskUpdate,
    TriageDecision,
)

# Receives the current insight for the cluster (or None) and every reflection
# in the cluster including the new one; returns the insight to persist.
MergeFn = Callable[[Optional[Insight], list[Reflection]], Insight]


class BaseRepository(ABC):

    # -- reflections + insights ----------------------------------------

    @abstractmethod
    def ingest(
        self,
        reflection: Reflection,
        cluster_key: str,
        dedup_since: datetime,
        merge_fn: MergeFn,
    ) -> Insight:
        """Persist a reflection and create-or-merge its insight atomically.

        Raises DuplicateReflectionError if a reflection with the same
        content_hash was created at or after ``dedup_since``.
        """

    @abstractmethod
    def get_reflection(self, reflection_id: str) -> Optional[Reflection]: ...

    @abstractmethod
    def list_reflections(self, reflection_ids: list[str]) -> list[Reflection]: ...

    @abstractmethod
    def get_insight(self, insight_id: str) -> Optional[Insight]: ...

    @abstractmethod
    def get_insight_by_cluster_key(self, cluster_key: str) -> Optional[Insight]: ...

    @abstractmethod
    def list_insights(self, insight_filter: InsightFilter) -> list[Insight]: ...

    @abstractmethod
    def insight_counts(self) -> dict[str, dict[str, int]]:
        """Return {"status": {...}, "priority": {...}} counts."""

    @abstractmethod
    def update_insight_status(
        self,
        insight_id: str,
        status: InsightStatus,
        now: datetime,
        cooldown_until: Optional[datetime] = None,
        cooldown_reason: Optional[str] = None,
        metadata: Optional[InsightMetadata] = None,
    ) -> Optional[Insight]: ...

    @abstractmethod
    def link_insight_task(self, insight_id: str, task_id: str, now: datetime) -> bool:
        """Set task_id and status=task_created only if task_id is still null."""

    @abstractmethod
    def list_unbridged_promoted(self) -> list[Insight]: ...

    @abstractmethod
    def create_triage_decision(self, decision: TriageDecision) -> TriageDecision: ...

    @abstractmethod
    def list_triage_decisions(self, insight_id: Optional[str] = None) -> list[TriageDecision]: ...

    @abstractmethod
    def list_recurring_insights(self) -> list[Insight]:
        """Recurring candidate or promoted insights with no task and no promotion audit, best score first."""

    # -- promotion audits ----------------------------------------------

    @abstractmethod
    def create_promotion_audit(self, audit: PromotionAudit) -> bool:
        """Insert audit unless the insight already has one. Returns False on conflict."""

    @abstractmethod
    def get_promotion_audit(self, insight_id: str) -> Optional[PromotionAudit]: ...

    @abstractmethod
    def list_promotion_audits(self, limit: int = 50) -> list[PromotionAudit]: ...

    # -- tasks ---------------------------------------------------------

    @abstractmethod
    def create_task(self, task: Task) -> Task: ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]: ...

    @abstractmethod
    def list_tasks(
        self,
        statuses: Optional[list[TaskStatus]] = None,
        assignee: Optional[str] = None,
    ) -> list[Task]: ...

    @abstractmethod
    def update_task(self, task_id: str, update: TaskUpdate, now: datetime) -> Optional[Task]: ...

    @abstractmethod
    def delete_task(self, task_id: str) -> bool: ...

    # -- suppression ---------------------------------------------------

    @abstractmethod
    def suppression_upsert(
        self, entry: SuppressionLedgerEntry, window_start: datetime
    ) -> SuppressionLedgerEntry:
        """Insert or refresh an entry in one atomic step.

        An existing entry whose last_seen_at >= window_start is a hit: its
        hit_count is incremented and ``suppressed`` is set. Otherwise the
        entry restarts with hit_count=1. The resulting row is returned.
        """

    @abstractmethod
    def suppression_prune(self, cutoff: datetime) -> int: ...

    @abstractmethod
    def list_suppression_entries(self) -> list[SuppressionLedgerEntry]: ...

    # -- continuity audit ----------------------------------------------

    @abstractmethod
    def create_continuity_action(self, action: ContinuityAction) -> ContinuityAction: ...

    @abstractmethod
    def list_continuity_actions(
        self,
        agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ContinuityAction]: ...

    # -- pause + settings ----------------------------------------------

    @abstractmethod
    def upsert_pause(self, entry: PauseEntry) -> PauseEntry: ...

    @abstractmethod
    def get_pause(self, scope: str) -> Optional[PauseEntry]: ...

    @abstractmethod
    def list_pauses(self) -> list[PauseEntry]: ...

    @abstractmethod
    def get_setting(self, key: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    def set_setting(self, key: str, value: dict[str, Any], now: datetime) -> None: ...
