"""Continuity loop: keeps every monitored agent's queue fed.

Each tick inspects the configured agents. An agent is starved when it has
nothing in progress and fewer than ``min_ready`` unblocked todo tasks. A
starved agent is replenished from unassigned backlog first, then from
promoted insights that have no task yet and recurring candidates that
nobody has promoted. Every remediation is recorded as a
ContinuityAction, both persisted and in a bounded in-memory log.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from continuum.core.config import ContinuityConfig
from continuum.core.exceptions import ContinuumError
from continuum.core.models import (
    ContinuityAction,
    ContinuityActionKind,
    Insight,
    Priority,
    Task,
    TaskStatus,
    TaskUpdate,
)
from continuum.db.base import BaseRepository
from continuum.memory.insight_store import InsightStore
from continuum.orchestrator.assignment import AssignmentEngine, count_wip
from continuum.orchestrator.insight_task_bridge import InsightTaskBridge
from continuum.orchestrator.pacing import PacingControls
from continuum.tools.notifications import AlertDispatcher
from continuum.tools.task_board import TaskBoard

logger = logging.getLogger("continuum.orchestrator.continuity")

AUDIT_LOG_SIZE = 500
NOTIFY_CATEGORY = "continuity-loop"
PULL_KINDS = (ContinuityActionKind.BACKLOG_ASSIGNED, ContinuityActionKind.INSIGHT_PROMOTED)

_PRIORITY_ORDER = {Priority.P0: 0, Priority.P1: 1, Priority.P2: 2, Priority.P3: 3}


@dataclass
class TickResult:
    agents_checked: int = 0
    replenished: int = 0
    actions: list[ContinuityAction] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agents_checked": self.agents_checked,
            "replenished": self.replenished,
            "actions": [a.model_dump(mode="json") for a in self.actions],
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class ContinuityStats:
    cycles_run: int = 0
    insights_promoted: int = 0
    backlog_assigned: int = 0
    no_candidate_cycles: int = 0
    last_run_at: Optional[datetime] = None


def is_unblocked(task: Task, tasks_by_id: dict[str, Task]) -> bool:
    """A task is blocked only while one of its blockers exists and is not done."""
    for blocker_id in task.metadata.blocked_by or []:
        blocker = tasks_by_id.get(blocker_id)
        if blocker is not None and blocker.status != TaskStatus.DONE:
            return False
    return True


class ContinuityLoop:
    def __init__(
        self,
        config: ContinuityConfig,
        board: TaskBoard,
        store: InsightStore,
        bridge: InsightTaskBridge,
        assignment: AssignmentEngine,
        repository: BaseRepository,
        pacing: Optional[PacingControls] = None,
        dispatcher: Optional[AlertDispatcher] = None,
    ):
        self.config = config
        self.board = board
        self.store = store
        self.bridge = bridge
        self.assignment = assignment
        self.repository = repository
        self.pacing = pacing
        self.dispatcher = dispatcher

        self.stats = ContinuityStats()
        self._audit_log: deque[ContinuityAction] = deque(maxlen=AUDIT_LOG_SIZE)
        self._last_replenish_at: dict[str, datetime] = {}
        self._lock = threading.Lock()

    @property
    def agents(self) -> list[str]:
        return [a.lower() for a in self.config.agents]

    # -------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Run one continuity cycle. Ticks are serialized."""
        now = now or datetime.now(UTC)
        with self._lock:
            return self._tick(now)

    def _tick(self, now: datetime) -> TickResult:
        result = TickResult()
        if not self.config.enabled or not self.agents:
            return result

        self.stats.cycles_run += 1
        self.stats.last_run_at = now

        if self.pacing is not None:
            team = self.pacing.is_paused(now=now)
            if team.paused:
                logger.info("Team paused (%s); continuity tick skipped", team.reason or "no reason")
                result.skipped_reason = "team paused"
                return result

        budget = self._remaining_pulls(now)
        cooldown = timedelta(minutes=self.config.cooldown_minutes)

        for agent in self.agents:
            result.agents_checked += 1

            if self.pacing is not None and self.pacing.is_paused(agent, now=now).paused:
                logger.debug("Agent %s paused; skipping", agent)
                continue
            last = self._last_replenish_at.get(agent)
            if last is not None and now - last < cooldown:
                continue

            all_tasks = self.board.list_tasks()
            ready = self._ready_count(agent, all_tasks)
            if count_wip(agent, all_tasks) > 0 or ready >= self.config.min_ready:
                continue

            deficit = self.config.min_ready - ready
            slots = min(deficit, self.config.max_promote_per_cycle)
            if budget is not None:
                if budget <= 0:
                    logger.info("Intensity pull budget exhausted; %s left starved this hour", agent)
                    continue
                slots = min(slots, budget)

            actions = self._replenish(agent, slots, ready, now)
            self._last_replenish_at[agent] = now
            result.actions.extend(actions)

            pulled = [a for a in actions if a.kind in PULL_KINDS]
            if pulled:
                result.replenished += len(pulled)
                if budget is not None:
                    budget -= len(pulled)
                self._notify(agent, pulled)

        return result

    def _ready_count(self, agent: str, all_tasks: list[Task]) -> int:
        by_id = {t.id: t for t in all_tasks}
        return sum(
            1 for t in all_tasks
            if t.status == TaskStatus.TODO
            and (t.assignee or "").lower() == agent
            and is_unblocked(t, by_id)
        )

    def _remaining_pulls(self, now: datetime) -> Optional[int]:
        if self.pacing is None:
            return None
        limit = self.pacing.get_intensity().limits.max_pulls_per_hour
        recent = self.repository.list_continuity_actions(since=now - timedelta(hours=1), limit=1000)
        return limit - sum(1 for a in recent if a.kind in PULL_KINDS)

    # -------------------------------------------------------------------
    # Replenishment
    # -------------------------------------------------------------------

    def _replenish(self, agent: str, slots: int, ready: int, now: datetime) -> list[ContinuityAction]:
        actions: list[ContinuityAction] = []
        for _ in range(slots):
            action = self._assign_backlog(agent, now) or self._bridge_insight(agent, now)
            if action is None:
                break
            actions.append(action)

        if not actions:
            self.stats.no_candidate_cycles += 1
            actions.append(self._record(ContinuityAction(
                kind=ContinuityActionKind.NO_CANDIDATES,
                agent=agent,
                detail=(f"Queue below floor ({ready}/{self.config.min_ready}). "
                        "No backlog task or promotable insight available."),
                timestamp=now,
            )))
        return actions

    def _assign_backlog(self, agent: str, now: datetime) -> Optional[ContinuityAction]:
        all_tasks = self.board.list_tasks()
        task = self.pick_backlog_task(agent, all_tasks)
        if task is None:
            return None

        update = TaskUpdate(
            assignee=agent,
            status=TaskStatus.TODO if task.status == TaskStatus.BACKLOG else None,
        )
        try:
            self.board.update_task(task.id, update)
        except ContinuumError as e:
            logger.warning("Could not assign %s to %s: %s", task.id, agent, e)
            return None

        self.stats.backlog_assigned += 1
        return self._record(ContinuityAction(
            kind=ContinuityActionKind.BACKLOG_ASSIGNED,
            agent=agent,
            detail=f"Assigned unowned {task.status.value} task {task.id} ({task.priority.value}) to replenish queue.",
            insight_id=task.metadata.source_insight,
            task_id=task.id,
            timestamp=now,
        ))

    def pick_backlog_task(self, agent: str, all_tasks: list[Task]) -> Optional[Task]:
        """Highest affinity for this agent first, then priority, then age.

        Tasks in another agent's protected domain are left for that agent.
        """
        role = self.assignment.get_role(agent)
        by_id = {t.id: t for t in all_tasks}
        wip = count_wip(agent, all_tasks)

        ranked: list[tuple[float, int, datetime, Task]] = []
        for task in all_tasks:
            if task.assignee or task.status not in (TaskStatus.BACKLOG, TaskStatus.TODO):
                continue
            if not is_unblocked(task, by_id):
                continue
            owner = self.assignment.protected_owner(task)
            if owner is not None and owner[0].name != agent:
                continue
            score = self.assignment.score_assignment(role, task, wip).score if role else 0.0
            ranked.append((-score, _PRIORITY_ORDER[task.priority], task.created_at, task))

        if not ranked:
            return None
        ranked.sort(key=lambda r: r[:3])
        return ranked[0][3]

    def replenishment_insights(self) -> list[Insight]:
        """Promoted insights without a task plus recurring candidates, best score first."""
        merged = {i.id: i for i in self.store.list_unbridged_promoted()}
        for insight in self.store.list_recurring_insights():
            merged.setdefault(insight.id, insight)
        return sorted(merged.values(), key=lambda i: (-i.score, i.created_at))

    def _bridge_insight(self, agent: str, now: datetime) -> Optional[ContinuityAction]:
        for insight in self.replenishment_insights():
            try:
                outcome = self.bridge.process_insight(insight.id, assignee=agent, force=True, now=now)
            except ContinuumError as e:
                logger.warning("Failed to bridge insight %s for %s: %s", insight.id, agent, e)
                continue
            if outcome.action not in ("created", "backlog") or not outcome.task_id:
                continue

            self.stats.insights_promoted += 1
            return self._record(ContinuityAction(
                kind=ContinuityActionKind.INSIGHT_PROMOTED,
                agent=agent,
                detail=(f"Auto-promoted insight {insight.id} (score: {insight.score}, "
                        f"priority: {insight.priority.value}) -> task {outcome.task_id} to replenish queue."),
                insight_id=insight.id,
                task_id=outcome.task_id,
                timestamp=now,
            ))
        return None

    # -------------------------------------------------------------------
    # Audit + notify
    # -------------------------------------------------------------------

    def _record(self, action: ContinuityAction) -> ContinuityAction:
        self._audit_log.append(action)
        try:
            self.repository.create_continuity_action(action)
        except ContinuumError as e:
            logger.warning("Failed to persist continuity action %s: %s", action.id, e)
        logger.info("Continuity %s for %s: %s", action.kind.value, action.agent, action.detail)
        return action

    def _notify(self, agent: str, actions: list[ContinuityAction]) -> None:
        if self.dispatcher is None:
            return
        task_ids = ", ".join(a.task_id for a in actions if a.task_id)
        self.dispatcher.dispatch(
            NOTIFY_CATEGORY,
            self.config.channel,
            f"Continuity loop: replenished @{agent}'s queue with {len(actions)} task(s). Tasks: {task_ids}",
        )

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        data = asdict(self.stats)
        if data["last_run_at"] is not None:
            data["last_run_at"] = data["last_run_at"].isoformat()
        return data

    def get_audit_log(self, limit: int = 50) -> list[ContinuityAction]:
        """Most recent in-memory actions, oldest first."""
        items = list(self._audit_log)
        return items[-limit:] if limit > 0 else []

    def get_persisted_audit(
        self,
        agent: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[ContinuityAction]:
        return self.repository.list_continuity_actions(
            agent=agent.lower() if agent else None, since=since, limit=min(limit, 200)
        )
