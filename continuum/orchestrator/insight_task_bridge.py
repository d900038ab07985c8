"""Insight-to-task bridge.

Turns promoted insights into task board work exactly once. The live event
handler, the startup catch-up scan, triage approval and the continuity loop
all go through ``process_insight``:

1. An insight that already has a task_id is skipped; the link is never
   overwritten.
2. An existing task that references the insight, its reflections or its
   cluster is linked instead of creating a new one.
3. Severity routing: high/critical creates a task, medium goes to human
   triage, low waits for more corroboration.
4. Feature requests land in the backlog lane, unassigned, instead of the
   bug lane.

Task creation is followed by a compare-and-set link on the insight. If a
concurrent path linked a different task first, the task just created is
deleted so exactly one task survives.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Optional

from continuum.core.config import BridgeConfig
from continuum.core.events import INSIGHT_PROMOTED, TASK_CREATED, EventBus
from continuum.core.exceptions import BridgeError, ContinuumError
from continuum.core.models import (
    Insight,
    InsightFilter,
    InsightMetadata,
    InsightStatus,
    Severity,
    Task,
    TaskMetadata,
    TaskStatus,
    TriageAction,
    TriageDecision,
)
from continuum.db.base import BaseRepository
from continuum.memory.insight_store import InsightStore
from continuum.orchestrator.assignment import AssignmentEngine
from continuum.orchestrator.classification import InsightClassifier
from continuum.tools.task_board import TaskBoard

logger = logging.getLogger("continuum.orchestrator.bridge")

BRIDGE_SOURCE = "insight-task-bridge"
FEATURE_LANE = "feature"
BUG_LANE = "bug"
TASK_TITLE_PREFIX = "[Insight] "
_TASK_ID_RE = re.compile(r"\btask-[a-z0-9][a-z0-9-]*[a-z0-9]", re.IGNORECASE)


@dataclass
class BridgeOutcome:
    insight_id: str
    action: str  # created | backlog | linked | triaged | skipped | no_action
    task_id: Optional[str] = None
    reason: str = ""


@dataclass
class CatchUpResult:
    scanned: int = 0
    created: int = 0
    linked: int = 0
    triaged: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AssignmentDecision:
    assignee: Optional[str]
    reviewer: Optional[str]
    reason: str
    guardrail_applied: bool = False
    sole_author_fallback: bool = False
    insight_authors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BridgeStats:
    tasks_auto_created: int = 0
    backlog_created: int = 0
    insights_triaged: int = 0
    duplicates_skipped: int = 0
    errors: int = 0
    last_event_at: Optional[datetime] = None


def build_task_description(insight: Insight) -> str:
    lines = [
        f"Auto-created from promoted insight {insight.id}.",
        "",
        f"Cluster: {insight.cluster_key}",
        f"Severity: {insight.severity_max.value if insight.severity_max else 'unknown'}",
        f"Score: {insight.score}/10",
        f"Reflections: {len(insight.reflection_ids)} ({insight.independent_count} independent)",
        f"Authors: {', '.join(insight.authors)}",
        "",
        "Evidence:",
        *[f"- {e}" for e in insight.evidence_refs],
        "",
        "Investigate root cause, validate evidence, implement fix.",
        "Submit a follow-up reflection when done.",
    ]
    return "\n".join(lines)


class InsightTaskBridge:
    """Idempotent promoted-insight -> task conversion."""

    def __init__(
        self,
        store: InsightStore,
        board: TaskBoard,
        assignment: AssignmentEngine,
        repository: BaseRepository,
        config: Optional[BridgeConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.board = board
        self.assignment = assignment
        self.repository = repository
        self.config = config or BridgeConfig()
        self.events = events
        self.classifier = InsightClassifier(self.config.feature_keywords, self.config.bug_keywords)
        self.stats = BridgeStats()
        self._stats_lock = threading.Lock()
        self._started = False

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def start(self) -> CatchUpResult:
        """Subscribe to promotion events and heal anything missed while down."""
        if self.events is not None and not self._started:
            self.events.subscribe(INSIGHT_PROMOTED, self._on_promoted)
        self._started = True
        logger.info("Insight-task bridge started")
        return self.run_catch_up_scan()

    def stop(self) -> None:
        if self.events is not None:
            self.events.unsubscribe(INSIGHT_PROMOTED, self._on_promoted)
        self._started = False
        logger.info("Insight-task bridge stopped")

    @property
    def running(self) -> bool:
        return self._started

    def _on_promoted(self, payload: dict[str, Any]) -> None:
        if not self.config.enabled:
            return
        insight_id = payload.get("insight_id")
        if not insight_id:
            return
        self._bump(last_event=True)
        try:
            self.process_insight(insight_id)
        except ContinuumError as e:
            self._bump(errors=1)
            logger.error("Bridge failed for promoted insight %s: %s", insight_id, e)

    # -------------------------------------------------------------------
    # Core path
    # -------------------------------------------------------------------

    def process_insight(
        self,
        insight_id: str,
        assignee: Optional[str] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> BridgeOutcome:
        """Bridge one insight. Safe to call any number of times.

        ``force`` skips status and severity routing (triage approval, queue
        replenishment); idempotency and dedup still apply. ``assignee`` pins
        the task to a specific agent.
        """
        now = now or datetime.now(UTC)
        insight = self.store.require_insight(insight_id)

        if insight.task_id:
            return BridgeOutcome(insight.id, "skipped", insight.task_id, "already linked")
        if not force and insight.status != InsightStatus.PROMOTED:
            return BridgeOutcome(insight.id, "skipped", reason=f"status is {insight.status.value}")

        existing = self.find_existing_task(insight)
        if existing is not None:
            return self._link_existing(insight, existing, now)

        severity = insight.severity_max or Severity.MEDIUM
        if not force and severity.value not in self.config.auto_create_severities:
            if severity == Severity.MEDIUM:
                self.store.update_insight_status(insight.id, InsightStatus.PENDING_TRIAGE, now=now)
                self._bump(triaged=1)
                logger.info("Insight %s (medium) routed to triage", insight.id)
                return BridgeOutcome(insight.id, "triaged", reason="medium severity needs triage")
            logger.debug("Insight %s (%s) needs more corroboration", insight.id, severity.value)
            return BridgeOutcome(insight.id, "no_action", reason=f"{severity.value} severity")

        feature = assignee is None and self.classifier.is_feature_request(insight)
        return self._create_and_link(insight, feature, assignee, now)

    def find_existing_task(self, insight: Insight, tasks: Optional[list[Task]] = None) -> Optional[Task]:
        """Find a task that already covers this insight.

        References to the insight or its reflections match in any status.
        Cluster-key and title matches only count while the task is still open.
        """
        tasks = tasks if tasks is not None else self.board.list_tasks()
        reflection_ids = set(insight.reflection_ids)
        title = f"{TASK_TITLE_PREFIX}{insight.title}"

        cited = {m.lower() for ref in insight.evidence_refs for m in _TASK_ID_RE.findall(ref)}
        if cited:
            for task in tasks:
                if task.id.lower() in cited:
                    return task

        for task in tasks:
            meta = task.metadata
            if insight.id in (meta.source_insight, meta.insight_id):
                return task
            refs = set(meta.source_reflections or [])
            if meta.source_reflection:
                refs.add(meta.source_reflection)
            if refs & reflection_ids:
                return task

        for task in tasks:
            if task.status == TaskStatus.DONE:
                continue
            if task.metadata.cluster_key == insight.cluster_key or task.title == title:
                return task
        return None

    def _link_existing(self, insight: Insight, task: Task, now: datetime) -> BridgeOutcome:
        self._bump(duplicates=1)
        if self.store.link_task(insight.id, task.id, now):
            logger.info("Dedup: insight %s linked to existing task %s (%s)",
                        insight.id, task.id, task.status.value)
            return BridgeOutcome(insight.id, "linked", task.id, "existing task covers insight")
        current = self.store.require_insight(insight.id)
        return BridgeOutcome(insight.id, "skipped", current.task_id, "linked concurrently")

    def _create_and_link(
        self,
        insight: Insight,
        feature: bool,
        assignee: Optional[str],
        now: datetime,
    ) -> BridgeOutcome:
        all_tasks = self.board.list_tasks()
        if feature:
            decision = AssignmentDecision(
                assignee=None,
                reviewer=None,
                reason="feature request: parked in backlog lane for prioritization",
                insight_authors=list(insight.authors),
            )
        else:
            decision = self.resolve_assignment(insight, all_tasks, forced_assignee=assignee)

        task = Task(
            title=f"{TASK_TITLE_PREFIX}{insight.title}",
            description=build_task_description(insight),
            status=TaskStatus.BACKLOG if feature else TaskStatus.TODO,
            priority=insight.priority,
            assignee=decision.assignee,
            reviewer=decision.reviewer,
            tags=[insight.failure_family, insight.impacted_unit],
            done_criteria=[
                "Root cause addressed or mitigated",
                f"Evidence from insight {insight.id} validated",
                "Follow-up reflection submitted confirming fix",
            ],
            created_by=BRIDGE_SOURCE,
            metadata=TaskMetadata(
                source=BRIDGE_SOURCE,
                insight_id=insight.id,
                source_insight=insight.id,
                source_reflection=insight.reflection_ids[0] if insight.reflection_ids else None,
                source_reflections=list(insight.reflection_ids),
                cluster_key=insight.cluster_key,
                severity=insight.severity_max.value if insight.severity_max else None,
                lane=FEATURE_LANE if feature else BUG_LANE,
                assignment_decision=decision.to_dict(),
                reflection_count=len(insight.reflection_ids),
                authors=list(insight.authors),
            ),
            created_at=now,
            updated_at=now,
        )

        try:
            created = self.board.create_task(task)
        except ContinuumError as e:
            self._bump(errors=1)
            raise BridgeError(f"Failed to create task for insight {insight.id}: {e}") from e

        linked_to = self.settle_link(insight.id, created.id, now)
        if linked_to != created.id:
            return BridgeOutcome(insight.id, "skipped", linked_to, "linked concurrently")

        self.store.start_cooldown(insight.id, "task_created", InsightStatus.TASK_CREATED, now=now)
        if feature:
            self._bump(backlog=1)
        else:
            self._bump(created=1)
        logger.info("Auto-created task %s from insight %s (severity=%s, lane=%s, assignee=%s)",
                    created.id, insight.id,
                    insight.severity_max.value if insight.severity_max else "none",
                    task.metadata.lane, decision.assignee)
        if self.events is not None:
            self.events.emit(TASK_CREATED, {
                "task_id": created.id,
                "insight_id": insight.id,
                "assignee": decision.assignee,
                "lane": task.metadata.lane,
            })
        return BridgeOutcome(insight.id, "backlog" if feature else "created", created.id, decision.reason)

    def settle_link(self, insight_id: str, task_id: str, now: datetime) -> Optional[str]:
        """Link a freshly created task and return the task the insight ends up on.

        A concurrent path can find the new task by its metadata and link it
        first; the task is then already the winner and is kept. Only a task
        that lost to a different one is deleted.
        """
        if self.store.link_task(insight_id, task_id, now):
            return task_id
        current = self.store.require_insight(insight_id)
        if current.task_id == task_id:
            logger.info("Insight %s was linked to new task %s by a concurrent path", insight_id, task_id)
            return task_id
        self.board.delete_task(task_id)
        logger.info("Insight %s linked concurrently to %s; discarded %s",
                    insight_id, current.task_id, task_id)
        return current.task_id

    # -------------------------------------------------------------------
    # Ownership guardrail
    # -------------------------------------------------------------------

    def resolve_assignment(
        self,
        insight: Insight,
        all_tasks: list[Task],
        forced_assignee: Optional[str] = None,
    ) -> AssignmentDecision:
        """Pick assignee and reviewer, avoiding a sole author reviewing their own report.

        With one author, a non-author assignee is preferred; if none has
        capacity and affinity the author gets the task but the reviewer must
        be someone else.
        """
        authors = [a.lower() for a in insight.authors]
        candidates = self.config.assignable_agents or None
        synthetic = Task(
            title=f"{TASK_TITLE_PREFIX}{insight.title}",
            tags=[insight.cluster_key, insight.failure_family, insight.impacted_unit],
            done_criteria=insight.evidence_refs[:10],
        )
        sole_author = authors[0] if len(authors) == 1 else None
        guardrail = self.config.ownership_guardrail and sole_author is not None

        if forced_assignee:
            assignee: Optional[str] = forced_assignee.lower()
            reason = f"assigned to {assignee} by queue replenishment"
            guardrail_applied = False
            fallback = guardrail and assignee == sole_author
        elif guardrail:
            open_pick = self.assignment.suggest_assignee(synthetic, all_tasks, candidates=candidates)
            if open_pick.protected_match and open_pick.suggested == sole_author:
                assignee = sole_author
                reason = f"author owns protected domain ({open_pick.protected_match})"
                guardrail_applied = False
                fallback = False
            else:
                pick = self.assignment.suggest_assignee(
                    synthetic, all_tasks, exclude=authors, candidates=candidates
                )
                guardrail_applied = True
                if pick.suggested:
                    assignee = pick.suggested
                    reason = f'non-author "{assignee}" selected (sole author "{sole_author}" avoided)'
                    fallback = False
                else:
                    assignee = sole_author
                    reason = (f'no non-author candidate available; "{sole_author}" assigned as '
                              "fallback, non-author reviewer required")
                    fallback = True
        else:
            pick = self.assignment.suggest_assignee(synthetic, all_tasks, candidates=candidates)
            assignee = pick.suggested
            reason = f"scoring engine selected {assignee or 'nobody'} ({pick.reason})"
            guardrail_applied = False
            fallback = False

        reviewer = self._resolve_reviewer(synthetic, all_tasks, assignee, authors if fallback else [])
        return AssignmentDecision(
            assignee=assignee,
            reviewer=reviewer,
            reason=reason,
            guardrail_applied=guardrail_applied,
            sole_author_fallback=fallback,
            insight_authors=list(insight.authors),
        )

    def _resolve_reviewer(
        self,
        synthetic: Task,
        all_tasks: list[Task],
        assignee: Optional[str],
        excluded_authors: list[str],
    ) -> Optional[str]:
        task = synthetic.model_copy(update={"assignee": assignee})
        reviewer = self.assignment.suggest_reviewer(task, all_tasks, exclude=excluded_authors)
        if reviewer:
            return reviewer
        default = self.config.default_reviewer.lower()
        if default and default != assignee and default not in excluded_authors:
            return default
        return None

    # -------------------------------------------------------------------
    # Catch-up scan
    # -------------------------------------------------------------------

    def run_catch_up_scan(self, now: Optional[datetime] = None) -> CatchUpResult:
        """Re-run every promoted, unlinked insight through process_insight.

        Failures are isolated per insight and reported in the result.
        """
        result = CatchUpResult()
        if not self.config.enabled:
            logger.info("Bridge disabled; catch-up scan skipped")
            return result

        self.store.reevaluate_candidates(now)
        for insight in self.store.list_unbridged_promoted():
            result.scanned += 1
            try:
                outcome = self.process_insight(insight.id, now=now)
            except (ContinuumError, ValueError) as e:
                self._record_scan_failure(result, insight.id, e)
                logger.error("Catch-up failed for insight %s: %s", insight.id, e)
                continue
            except Exception as e:
                self._record_scan_failure(result, insight.id, e)
                logger.error("Unexpected error bridging insight %s: %s", insight.id, e, exc_info=True)
                continue

            if outcome.action in ("created", "backlog"):
                result.created += 1
            elif outcome.action == "linked":
                result.linked += 1
            elif outcome.action == "triaged":
                result.triaged += 1
            else:
                result.skipped += 1

        logger.info("Catch-up scan: scanned=%d created=%d linked=%d triaged=%d skipped=%d failed=%d",
                    result.scanned, result.created, result.linked, result.triaged,
                    result.skipped, result.failed)
        return result

    def _record_scan_failure(self, result: CatchUpResult, insight_id: str, error: Exception) -> None:
        result.failed += 1
        result.errors.append({"insight_id": insight_id, "error": str(error) or type(error).__name__})
        self._bump(errors=1)

    # -------------------------------------------------------------------
    # Triage
    # -------------------------------------------------------------------

    def triage_insight(
        self,
        insight_id: str,
        action: TriageAction | str,
        reviewer: str,
        rationale: str = "",
        now: Optional[datetime] = None,
    ) -> TriageDecision:
        """Resolve a pending_triage insight.

        Approve forces task creation through the normal path; dismiss returns
        the insight to candidate with a cooldown so it cannot re-promote at once.
        """
        now = now or datetime.now(UTC)
        action = TriageAction(action)
        insight = self.store.require_insight(insight_id)
        if insight.status != InsightStatus.PENDING_TRIAGE:
            raise BridgeError(
                f"Insight {insight_id} is {insight.status.value}, not pending_triage"
            )

        outcome_task_id: Optional[str] = None
        if action == TriageAction.APPROVE:
            outcome = self.process_insight(insight_id, force=True, now=now)
            outcome_task_id = outcome.task_id
            updated = self.store.require_insight(insight_id)
        else:
            metadata = InsightMetadata(**insight.metadata.model_dump())
            metadata.triage = {"dismissed_by": reviewer, "rationale": rationale, "at": now.isoformat()}
            updated = self.store.start_cooldown(
                insight_id, "triage_dismissed", InsightStatus.CANDIDATE, now=now, metadata=metadata
            )

        decision = TriageDecision(
            insight_id=insight_id,
            action=action,
            reviewer=reviewer,
            rationale=rationale,
            outcome_task_id=outcome_task_id,
            previous_status=insight.status,
            new_status=updated.status,
            timestamp=now,
        )
        self.repository.create_triage_decision(decision)
        logger.info("Triage %s on insight %s by %s -> %s",
                    action.value, insight_id, reviewer, updated.status.value)
        return decision

    def list_pending_triage(self) -> list[Insight]:
        return self.store.list_insights(InsightFilter(status=InsightStatus.PENDING_TRIAGE, limit=200))

    # -------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------

    def _bump(
        self,
        created: int = 0,
        backlog: int = 0,
        triaged: int = 0,
        duplicates: int = 0,
        errors: int = 0,
        last_event: bool = False,
    ) -> None:
        with self._stats_lock:
            self.stats.tasks_auto_created += created
            self.stats.backlog_created += backlog
            self.stats.insights_triaged += triaged
            self.stats.duplicates_skipped += duplicates
            self.stats.errors += errors
            if last_event:
                self.stats.last_event_at = datetime.now(UTC)

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            data = asdict(self.stats)
        data["running"] = self._started
        if data["last_event_at"] is not None:
            data["last_event_at"] = data["last_event_at"].isoformat()
        return data
