"""Assignment engine: agent/task affinity scoring and WIP caps.

Scores every registered agent against a task's keywords, penalizes agents
carrying work in progress, and hard-routes protected domains (deploy,
security, ...) to the agent that owns them.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Iterable, Optional

from continuum.core.config import AgentRegistry
from continuum.core.models import (
    AgentRole,
    AssignmentScore,
    AssignmentSuggestion,
    Task,
    TaskStatus,
    WipCheck,
)

if TYPE_CHECKING:
    from continuum.orchestrator.pacing import PacingControls

logger = logging.getLogger("continuum.orchestrator.assignment")

_KEYWORD_SPLIT_RE = re.compile(r"[\s/\-_:,.()+]+")
UNKNOWN_AGENT_CAP = 999
REVIEWER_ROLE = "reviewer"


def extract_task_keywords(task: Task) -> list[str]:
    """Lower-cased words from title, tags and done criteria (longer than 2 chars)."""
    text = " ".join([task.title, *task.tags, *task.done_criteria]).lower()
    return [w for w in _KEYWORD_SPLIT_RE.split(text) if len(w) > 2]


def _matches(keyword: str, tag: str) -> bool:
    return keyword in tag or tag in keyword


def count_wip(agent: str, all_tasks: Iterable[Task]) -> int:
    name = agent.lower()
    return sum(
        1 for t in all_tasks
        if t.status == TaskStatus.DOING and (t.assignee or "").lower() == name
    )


class AssignmentEngine:
    def __init__(self, registry: AgentRegistry, pacing: Optional[PacingControls] = None):
        self.registry = registry
        self.pacing = pacing

    @property
    def roles(self) -> list[AgentRole]:
        return [
            AgentRole(name=name, **cfg.model_dump())
            for name, cfg in self.registry.agents.items()
        ]

    def get_role(self, agent: str) -> Optional[AgentRole]:
        key = agent.lower()
        cfg = self.registry.agents.get(key)
        if cfg is None:
            return None
        return AgentRole(name=key, **cfg.model_dump())

    def effective_wip_cap(self, role: AgentRole) -> int:
        """Role cap, tightened by the team intensity preset when one is set."""
        if self.pacing is None:
            return role.wip_cap
        return min(role.wip_cap, self.pacing.get_intensity().limits.wip_limit)

    def score_assignment(
        self,
        agent: AgentRole,
        task: Task,
        current_wip: int,
        recent_completions: int = 0,
    ) -> AssignmentScore:
        keywords = extract_task_keywords(task)
        cap = self.effective_wip_cap(agent)

        matched = [tag for tag in agent.affinity_tags if any(_matches(kw, tag) for kw in keywords)]
        affinity = min(len(matched) / max(len(keywords) * 0.3, 1), 1.0) if matched else 0.0

        if current_wip >= cap:
            wip_penalty = -0.5
        else:
            wip_penalty = -0.1 * current_wip
        throughput = min(recent_completions * 0.05, 0.2)

        return AssignmentScore(
            agent=agent.name,
            score=round(affinity + wip_penalty + throughput, 2),
            affinity=round(affinity, 2),
            wip_penalty=wip_penalty,
            throughput=throughput,
            wip_count=current_wip,
            wip_cap=cap,
            over_cap=current_wip >= cap,
        )

    def protected_owner(self, task: Task) -> Optional[tuple[AgentRole, str]]:
        """(owning role, domain) when a task keyword names a protected domain."""
        keywords = extract_task_keywords(task)
        for role in self.roles:
            domain = next((d for d in role.protected_domains if d in keywords), None)
            if domain is not None:
                return role, domain
        return None

    def suggest_assignee(
        self,
        task: Task,
        all_tasks: list[Task],
        recent_completions: Optional[dict[str, int]] = None,
        wip_override: Optional[str] = None,
        exclude: Iterable[str] = (),
        candidates: Optional[Iterable[str]] = None,
    ) -> AssignmentSuggestion:
        """Pick the best agent for a task, or none.

        Protected domains win outright unless the owner is over cap and no
        override is given; in that case nobody is suggested.
        """
        excluded = {e.lower() for e in exclude}
        allowed = {c.lower() for c in candidates} if candidates is not None else None

        protected = self.protected_owner(task)
        if protected is not None:
            role, domain = protected
            match = f'Protected domain "{domain}" -> {role.name}'
            wip = count_wip(role.name, all_tasks)
            if wip >= self.effective_wip_cap(role) and not wip_override:
                logger.info("%s is over WIP cap; leaving task unassigned", role.name)
                return AssignmentSuggestion(
                    suggested=None,
                    protected_match=match,
                    reason=f"{role.name} owns '{domain}' but is at WIP cap",
                )
            return AssignmentSuggestion(suggested=role.name, protected_match=match, reason=match)

        completions = recent_completions or {}
        scores = [
            self.score_assignment(
                role, task, count_wip(role.name, all_tasks), completions.get(role.name, 0)
            )
            for role in self.roles
            if role.name not in excluded and (allowed is None or role.name in allowed)
        ]
        scores.sort(key=lambda s: s.score, reverse=True)

        for score in scores:
            if score.score <= 0:
                break
            if score.over_cap and not wip_override:
                continue
            return AssignmentSuggestion(
                suggested=score.agent,
                scores=scores,
                reason=f"top score {score.score:.2f}",
            )
        return AssignmentSuggestion(suggested=None, scores=scores, reason="no agent with capacity and affinity")

    def suggest_reviewer(
        self,
        task: Task,
        all_tasks: list[Task],
        exclude: Iterable[str] = (),
    ) -> Optional[str]:
        """Prefer reviewer roles with the least open review load; never the assignee."""
        excluded = {e.lower() for e in exclude}
        if task.assignee:
            excluded.add(task.assignee.lower())

        def load(name: str) -> int:
            return sum(
                1 for t in all_tasks
                if t.status == TaskStatus.VALIDATING and (t.reviewer or "").lower() == name
            )

        pool = [r for r in self.roles if r.name not in excluded]
        reviewers = [r for r in pool if r.role == REVIEWER_ROLE]
        ranked = sorted(reviewers or pool, key=lambda r: (load(r.name), r.name))
        return ranked[0].name if ranked else None

    def check_wip_cap(
        self,
        agent: str,
        all_tasks: list[Task],
        override: Optional[str] = None,
    ) -> WipCheck:
        role = self.get_role(agent)
        if role is None:
            return WipCheck(agent=agent, allowed=True, wip_count=0, wip_cap=UNKNOWN_AGENT_CAP)

        cap = self.effective_wip_cap(role)
        wip = count_wip(role.name, all_tasks)
        if wip >= cap:
            if override:
                return WipCheck(
                    agent=role.name, allowed=True, wip_count=wip, wip_cap=cap,
                    message=f"WIP cap ({cap}) exceeded with override: {override}",
                )
            return WipCheck(
                agent=role.name, allowed=False, wip_count=wip, wip_cap=cap,
                message=(
                    f"WIP cap reached: {role.name} has {wip}/{cap} doing tasks. "
                    "Include metadata.wip_override with reason to proceed."
                ),
            )
        return WipCheck(agent=role.name, allowed=True, wip_count=wip, wip_cap=cap)
