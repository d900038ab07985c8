"""In-process repository backend.

Selected with ``database.backend: memory``. Holds every record in dicts
guarded by one re-entrant lock, so each repository call is atomic with
respect to the scheduler thread and concurrent callers. Models are copied
on the way in and out so callers never share mutable state with the store.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Optional

from continuum.core.exceptions import DuplicateReflectionError
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
from continuum.db.base import BaseRepository, MergeFn


class InMemoryRepository(BaseRepository):

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._reflections: dict[str, Reflection] = {}
        self._insights: dict[str, Insight] = {}
        self._insight_by_key: dict[str, str] = {}
        self._triage: list[TriageDecision] = []
        self._promotion_audits: dict[str, PromotionAudit] = {}
        self._tasks: dict[str, Task] = {}
        self._suppression: dict[str, SuppressionLedgerEntry] = {}
        self._continuity: list[ContinuityAction] = []
        self._pauses: dict[str, PauseEntry] = {}
        self._settings: dict[str, dict[str, Any]] = {}

    # -- reflections + insights ----------------------------------------

    def ingest(
        self,
        reflection: Reflection,
        cluster_key: str,
        dedup_since: datetime,
        merge_fn: MergeFn,
    ) -> Insight:
        with self._lock:
            for existing_ref in self._reflections.values():
                if (existing_ref.content_hash == reflection.content_hash
                        and existing_ref.created_at >= dedup_since):
                    raise DuplicateReflectionError(reflection.content_hash, existing_ref.id)

            existing_id = self._insight_by_key.get(cluster_key)
            existing = self._insights[existing_id].model_copy(deep=True) if existing_id else None
            ids = (existing.reflection_ids if existing else []) + [reflection.id]
            cluster_reflections = [self._reflections[i] for i in ids if i in self._reflections]
            cluster_reflections.append(reflection)

            # merge_fn may raise; nothing is written until it returns
            insight = merge_fn(existing, [r.model_copy(deep=True) for r in cluster_reflections])
            if existing is not None:
                insight.id = existing.id
                insight.created_at = existing.created_at
                insight.task_id = existing.task_id or insight.task_id

            self._reflections[reflection.id] = reflection.model_copy(deep=True)
            self._insights[insight.id] = insight.model_copy(deep=True)
            self._insight_by_key[cluster_key] = insight.id
            return insight

    def get_reflection(self, reflection_id: str) -> Optional[Reflection]:
        with self._lock:
            ref = self._reflections.get(reflection_id)
            return ref.model_copy(deep=True) if ref else None

    def list_reflections(self, reflection_ids: list[str]) -> list[Reflection]:
        with self._lock:
            found = [self._reflections[i] for i in reflection_ids if i in self._reflections]
            return [r.model_copy(deep=True) for r in sorted(found, key=lambda r: r.created_at)]

    def get_insight(self, insight_id: str) -> Optional[Insight]:
        with self._lock:
            insight = self._insights.get(insight_id)
            return insight.model_copy(deep=True) if insight else None

    def get_insight_by_cluster_key(self, cluster_key: str) -> Optional[Insight]:
        with self._lock:
            insight_id = self._insight_by_key.get(cluster_key)
            return self.get_insight(insight_id) if insight_id else None

    def list_insights(self, insight_filter: InsightFilter) -> list[Insight]:
        with self._lock:
            rows = [
                i for i in self._insights.values()
                if (insight_filter.status is None or i.status == insight_filter.status)
                and (insight_filter.priority is None or i.priority == insight_filter.priority)
                and (not insight_filter.workflow_stage or i.workflow_stage == insight_filter.workflow_stage)
                and (not insight_filter.failure_family or i.failure_family == insight_filter.failure_family)
                and (not insight_filter.impacted_unit or i.impacted_unit == insight_filter.impacted_unit)
                and (insight_filter.recurring_candidate is None
                     or i.recurring_candidate == insight_filter.recurring_candidate)
            ]
            rows.sort(key=lambda i: (i.score, i.updated_at), reverse=True)
            page = rows[insight_filter.offset:insight_filter.offset + insight_filter.limit]
            return [i.model_copy(deep=True) for i in page]

    def insight_counts(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {"status": {}, "priority": {}}
        with self._lock:
            for insight in self._insights.values():
                status = insight.status.value
                priority = insight.priority.value
                counts["status"][status] = counts["status"].get(status, 0) + 1
                counts["priority"][priority] = counts["priority"].get(priority, 0) + 1
        return counts

    def update_insight_status(
        self,
        insight_id: str,
        status: InsightStatus,
        now: datetime,
        cooldown_until: Optional[datetime] = None,
        cooldown_reason: Optional[str] = None,
        metadata: Optional[InsightMetadata] = None,
    ) -> Optional[Insight]:
        with self._lock:
            insight = self._insights.get(insight_id)
            if insight is None:
                return None
            insight.status = status
            insight.updated_at = now
            if cooldown_until is not None:
                insight.cooldown_until = cooldown_until
            if cooldown_reason is not None:
                insight.cooldown_reason = cooldown_reason
            if metadata is not None:
                insight.metadata = metadata.model_copy(deep=True)
            return insight.model_copy(deep=True)

    def link_insight_task(self, insight_id: str, task_id: str, now: datetime) -> bool:
        with self._lock:
            insight = self._insights.get(insight_id)
            if insight is None or insight.task_id is not None:
                return False
            insight.task_id = task_id
            insight.status = InsightStatus.TASK_CREATED
            insight.updated_at = now
            return True

    def list_unbridged_promoted(self) -> list[Insight]:
        with self._lock:
            rows = [
                i for i in self._insights.values()
                if i.status == InsightStatus.PROMOTED and i.task_id is None
            ]
            rows.sort(key=lambda i: (-i.score, i.created_at))
            return [i.model_copy(deep=True) for i in rows]

    def create_triage_decision(self, decision: TriageDecision) -> TriageDecision:
        with self._lock:
            self._triage.append(decision.model_copy(deep=True))
        return decision

    def list_triage_decisions(self, insight_id: Optional[str] = None) -> list[TriageDecision]:
        with self._lock:
            return [
                d.model_copy(deep=True) for d in self._triage
                if insight_id is None or d.insight_id == insight_id
            ]

    def list_recurring_insights(self) -> list[Insight]:
        with self._lock:
            rows = [
                i for i in self._insights.values()
                if i.recurring_candidate and i.task_id is None
                and i.status in (InsightStatus.CANDIDATE, InsightStatus.PROMOTED)
                and i.id not in self._promotion_audits
            ]
            rows.sort(key=lambda i: (-i.score, i.created_at))
            return [i.model_copy(deep=True) for i in rows]

    # -- promotion audits ----------------------------------------------

    def create_promotion_audit(self, audit: PromotionAudit) -> bool:
        with self._lock:
            if audit.insight_id in self._promotion_audits:
                return False
            self._promotion_audits[audit.insight_id] = audit.model_copy(deep=True)
            return True

    def get_promotion_audit(self, insight_id: str) -> Optional[PromotionAudit]:
        with self._lock:
            audit = self._promotion_audits.get(insight_id)
            return audit.model_copy(deep=True) if audit else None

    def list_promotion_audits(self, limit: int = 50) -> list[PromotionAudit]:
        with self._lock:
            rows = sorted(self._promotion_audits.values(), key=lambda a: a.created_at, reverse=True)
            return [a.model_copy(deep=True) for a in rows[:limit]]

    # -- tasks ---------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(
        self,
        statuses: Optional[list[TaskStatus]] = None,
        assignee: Optional[str] = None,
    ) -> list[Task]:
        with self._lock:
            rows = [
                t for t in self._tasks.values()
                if (not statuses or t.status in statuses)
                and (not assignee or (t.assignee or "").lower() == assignee.lower())
            ]
            rows.sort(key=lambda t: t.created_at)
            return [t.model_copy(deep=True) for t in rows]

    def update_task(self, task_id: str, update: TaskUpdate, now: datetime) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            updated = task.with_update(update, now)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            return self._tasks.pop(task_id, None) is not None

    # -- suppression ---------------------------------------------------

    def suppression_upsert(
        self, entry: SuppressionLedgerEntry, window_start: datetime
    ) -> SuppressionLedgerEntry:
        with self._lock:
            current = self._suppression.get(entry.dedup_key)
            if current is not None and current.last_seen_at >= window_start:
                current.hit_count += 1
                current.suppressed = True
                current.last_seen_at = entry.last_seen_at
                current.sender = entry.sender
                current.content_preview = entry.content_preview
            else:
                current = entry.model_copy(update={"hit_count": 1, "suppressed": False})
                self._suppression[entry.dedup_key] = current
            return current.model_copy()

    def suppression_prune(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [k for k, e in self._suppression.items() if e.last_seen_at < cutoff]
            for key in stale:
                del self._suppression[key]
            return len(stale)

    def list_suppression_entries(self) -> list[SuppressionLedgerEntry]:
        with self._lock:
            rows = sorted(self._suppression.values(), key=lambda e: e.last_seen_at, reverse=True)
            return [e.model_copy() for e in rows]

    # -- continuity audit ----------------------------------------------

    def create_continuity_action(self, action: ContinuityAction) -> ContinuityAction:
        with self._lock:
            self._continuity.append(action.model_copy())
        return action

    def list_continuity_actions(
        self,
        agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ContinuityAction]:
        with self._lock:
            rows = [
                a for a in self._continuity
                if (agent is None or a.agent == agent)
                and (since is None or a.timestamp >= since)
            ]
        rows.sort(key=lambda a: a.timestamp, reverse=True)
        return [a.model_copy() for a in rows[:limit]]

    # -- pause + settings ----------------------------------------------

    def upsert_pause(self, entry: PauseEntry) -> PauseEntry:
        with self._lock:
            self._pauses[entry.scope] = entry.model_copy()
        return entry

    def get_pause(self, scope: str) -> Optional[PauseEntry]:
        with self._lock:
            entry = self._pauses.get(scope)
            return entry.model_copy() if entry else None

    def list_pauses(self) -> list[PauseEntry]:
        with self._lock:
            return [self._pauses[k].model_copy() for k in sorted(self._pauses)]

    def get_setting(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            value = self._settings.get(key)
            return dict(value) if value is not None else None

    def set_setting(self, key: str, value: dict[str, Any], now: datetime) -> None:
        with self._lock:
            self._settings[key] = dict(value)
