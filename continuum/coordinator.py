"""Coordinator: the single owner of pipeline state.

Holds the ComponentBundle and exposes every pipeline operation behind one
object, so callers (CLI, embedding applications, tests) never wire
components themselves.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from continuum.core.factory import ComponentBundle, ComponentFactory
from continuum.core.models import (
    AgentRole,
    AssignmentScore,
    AssignmentSuggestion,
    AuditEntry,
    ContinuityAction,
    Insight,
    InsightFilter,
    InsightStatus,
    IntensityPreset,
    IntensityState,
    MutationAlert,
    PauseEntry,
    Priority,
    PromotionAudit,
    PromotionContract,
    RecurringCandidate,
    Reflection,
    SuppressionCheckResult,
    SuppressionStats,
    Task,
    TaskUpdate,
    TriageAction,
    TriageDecision,
    WipCheck,
)
from continuum.memory.reflections import ReflectionInput
from continuum.orchestrator.continuity_loop import TickResult
from continuum.orchestrator.insight_task_bridge import BridgeOutcome, CatchUpResult
from continuum.orchestrator.pacing import PauseStatus


class Coordinator:
    """Facade over the wired pipeline components."""

    def __init__(self, bundle: ComponentBundle):
        self.bundle = bundle

    @classmethod
    def create(
        cls,
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        backend: Optional[str] = None,
        **kwargs: Any,
    ) -> Coordinator:
        return cls(ComponentFactory.create(config_dir=config_dir, env=env, backend=backend, **kwargs))

    def close(self) -> None:
        ComponentFactory.close(self.bundle)

    def __enter__(self) -> Coordinator:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -- insights ------------------------------------------------------

    def ingest_reflection(
        self,
        payload: dict[str, Any] | ReflectionInput | Reflection,
        now: Optional[datetime] = None,
    ) -> Insight:
        return self.bundle.insight_store.ingest_reflection(payload, now=now)

    def get_insight(self, insight_id: str) -> Optional[Insight]:
        return self.bundle.insight_store.get_insight(insight_id)

    def list_insights(self, insight_filter: Optional[InsightFilter] = None) -> list[Insight]:
        return self.bundle.insight_store.list_insights(insight_filter)

    def insight_stats(self) -> dict[str, Any]:
        return self.bundle.insight_store.insight_stats()

    def update_insight_status(
        self,
        insight_id: str,
        status: InsightStatus | str,
        task_id: Optional[str] = None,
    ) -> Insight:
        return self.bundle.insight_store.update_insight_status(
            insight_id, InsightStatus(status), task_id=task_id
        )

    # -- bridge --------------------------------------------------------

    def start_insight_task_bridge(self) -> CatchUpResult:
        return self.bundle.bridge.start()

    def stop_insight_task_bridge(self) -> None:
        self.bundle.bridge.stop()

    def run_catch_up_scan(self, now: Optional[datetime] = None) -> CatchUpResult:
        return self.bundle.bridge.run_catch_up_scan(now)

    def process_insight(self, insight_id: str, force: bool = False) -> BridgeOutcome:
        return self.bundle.bridge.process_insight(insight_id, force=force)

    def triage_insight(
        self,
        insight_id: str,
        action: TriageAction | str,
        reviewer: str,
        rationale: str = "",
    ) -> TriageDecision:
        return self.bundle.bridge.triage_insight(insight_id, action, reviewer, rationale)

    def get_bridge_stats(self) -> dict[str, Any]:
        return self.bundle.bridge.get_stats()

    # -- promotion -----------------------------------------------------

    def promote_insight(
        self,
        insight_id: str,
        contract: PromotionContract | dict[str, Any],
        promoted_by: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[Priority] = None,
    ) -> PromotionAudit:
        return self.bundle.promoter.promote_insight(
            insight_id, contract, promoted_by, title=title, description=description, priority=priority
        )

    def get_promotion_audit(self, insight_id: str) -> Optional[PromotionAudit]:
        return self.bundle.promoter.get_promotion_audit(insight_id)

    def list_promotion_audits(self, limit: int = 50) -> list[PromotionAudit]:
        return self.bundle.promoter.list_promotion_audits(limit)

    def list_recurring_candidates(self) -> list[RecurringCandidate]:
        return self.bundle.promoter.list_recurring_candidates()

    # -- continuity ----------------------------------------------------

    def tick_continuity_loop(self, now: Optional[datetime] = None) -> TickResult:
        return self.bundle.scheduler.tick_now(now)

    def start_continuity_scheduler(self) -> None:
        self.bundle.scheduler.start()

    def stop_continuity_scheduler(self) -> None:
        self.bundle.scheduler.stop()

    def get_continuity_stats(self) -> dict[str, Any]:
        return self.bundle.continuity_loop.get_stats()

    def get_continuity_audit_log(self, limit: int = 50) -> list[ContinuityAction]:
        return self.bundle.continuity_loop.get_audit_log(limit)

    def get_persisted_continuity_audit(
        self,
        agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[ContinuityAction]:
        return self.bundle.continuity_loop.get_persisted_audit(agent, since, limit)

    # -- suppression ---------------------------------------------------

    def check_suppression(
        self,
        category: str,
        channel: str,
        content: str,
        sender: Optional[str] = None,
    ) -> SuppressionCheckResult:
        return self.bundle.suppression.check(category, channel, content, sender=sender)

    def prune_suppression(self) -> int:
        return self.bundle.suppression.prune()

    def get_suppression_stats(self) -> SuppressionStats:
        return self.bundle.suppression.get_stats()

    def dispatch_alert(self, category: str, channel: str, content: str, sender: str = "system") -> bool:
        return self.bundle.dispatcher.dispatch(category, channel, content, sender=sender)

    # -- audit + alerts ------------------------------------------------

    def record_review_mutation(
        self,
        task_id: str,
        actor: str,
        context: str,
        changes: list[dict[str, Any]],
    ) -> list[AuditEntry]:
        return self.bundle.audit_ledger.record_review_mutation(task_id, actor, context, changes)

    def get_audit_entries(
        self,
        task_id: Optional[str] = None,
        actor: Optional[str] = None,
        field: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> list[AuditEntry]:
        return self.bundle.audit_ledger.get_audit_entries(
            task_id=task_id, actor=actor, field=field, limit=limit
        )

    def get_audit_for_task(self, task_id: str) -> list[AuditEntry]:
        return self.bundle.audit_ledger.get_audit_for_task(task_id)

    def alert_unauthorized_approval(
        self,
        task_id: str,
        task_title: str,
        actor: str,
        expected_reviewer: Optional[str],
        context: str,
    ) -> MutationAlert:
        return self.bundle.alert_monitor.alert_unauthorized_approval(
            task_id, task_title, actor, expected_reviewer, context
        )

    def alert_flip_attempt(
        self,
        task_id: str,
        task_title: str,
        actor: str,
        from_value: Any,
        to_value: Any,
        context: str,
    ) -> Optional[MutationAlert]:
        return self.bundle.alert_monitor.alert_flip_attempt(
            task_id, task_title, actor, from_value, to_value, context
        )

    def get_alert_status(self) -> dict[str, Any]:
        return self.bundle.alert_monitor.get_status()

    # -- tasks + assignment --------------------------------------------

    def create_task(self, task: Task) -> Task:
        return self.bundle.board.create_task(task)

    def apply_task_update(self, task_id: str, actor: str, update: TaskUpdate, context: str = "") -> Task:
        return self.bundle.review_gate.apply_update(task_id, actor, update, context)

    def score_assignment(
        self,
        agent: str,
        task: Task,
        current_wip: int,
        recent_completions: int = 0,
    ) -> Optional[AssignmentScore]:
        role: Optional[AgentRole] = self.bundle.assignment.get_role(agent)
        if role is None:
            return None
        return self.bundle.assignment.score_assignment(role, task, current_wip, recent_completions)

    def suggest_assignee(
        self,
        task: Task,
        recent_completions: Optional[dict[str, int]] = None,
        wip_override: Optional[str] = None,
    ) -> AssignmentSuggestion:
        return self.bundle.assignment.suggest_assignee(
            task, self.bundle.board.list_tasks(), recent_completions, wip_override
        )

    def check_wip_cap(self, agent: str, override: Optional[str] = None) -> WipCheck:
        return self.bundle.assignment.check_wip_cap(agent, self.bundle.board.list_tasks(), override)

    # -- pause + intensity ---------------------------------------------

    def set_paused(
        self,
        scope: str,
        paused: bool,
        paused_until: Optional[datetime] = None,
        reason: Optional[str] = None,
        paused_by: Optional[str] = None,
    ) -> PauseEntry:
        return self.bundle.pacing.set_paused(scope, paused, paused_until, reason, paused_by)

    def is_paused(self, agent: Optional[str] = None) -> PauseStatus:
        return self.bundle.pacing.is_paused(agent)

    def list_pauses(self) -> list[PauseEntry]:
        return self.bundle.pacing.list_pauses()

    def get_intensity(self) -> IntensityState:
        return self.bundle.pacing.get_intensity()

    def set_intensity(self, preset: IntensityPreset | str, updated_by: str = "system") -> IntensityState:
        return self.bundle.pacing.set_intensity(preset, updated_by)
