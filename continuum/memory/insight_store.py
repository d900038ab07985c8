"""Insight store: reflection ingestion, clustering and promotion.

Each reflection is validated, checked against the content-hash dedup window
and then merged into the insight for its cluster key. Create-or-merge is a
single repository call, so two reflections racing for the same cluster
always end in one insight. Promotion only marks an insight as ready for
work; creating tasks is the bridge's job.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from continuum.core.config import InsightsConfig
from continuum.core.events import INSIGHT_PROMOTED, EventBus
from continuum.core.exceptions import InsightNotFoundError
from continuum.core.models import (
    Insight,
    InsightFilter,
    InsightMetadata,
    InsightStatus,
    PromotionReadiness,
    Reflection,
)
from continuum.db.base import BaseRepository
from continuum.memory.clustering import (
    SCORING_ENGINE_VERSION,
    ClusterKey,
    build_decision_trace,
    compute_score,
    extract_cluster_key,
    max_severity,
    score_to_priority,
    score_to_priority_with_hysteresis,
)
from continuum.memory.reflections import ReflectionInput, validate_reflection

logger = logging.getLogger("continuum.memory.insight_store")

TITLE_PAIN_LENGTH = 80


def _unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class InsightStore:
    """Clusters reflections into insights and gates their promotion."""

    def __init__(
        self,
        repository: BaseRepository,
        config: Optional[InsightsConfig] = None,
        events: Optional[EventBus] = None,
    ):
        self.repository = repository
        self.config = config or InsightsConfig()
        self.events = events

    # -------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------

    def ingest_reflection(
        self,
        payload: dict[str, Any] | ReflectionInput | Reflection,
        now: Optional[datetime] = None,
    ) -> Insight:
        """Validate, dedup, persist and cluster one reflection.

        Raises:
            ReflectionValidationError: payload failed validation.
            DuplicateReflectionError: same author + pain inside the dedup window.
        """
        now = now or datetime.now(UTC)
        reflection = payload if isinstance(payload, Reflection) else validate_reflection(payload)
        reflection.created_at = now
        key = extract_cluster_key(reflection)
        window = timedelta(seconds=self.config.reflection_dedup_window_seconds)

        transitions: dict[str, Any] = {}

        def merge(existing: Optional[Insight], reflections: list[Reflection]) -> Insight:
            transitions.clear()
            return self._merge(key, existing, reflections, now, transitions)

        insight = self.repository.ingest(reflection, str(key), now - window, merge)

        if transitions.get("created"):
            logger.info("Created insight %s for %s", insight.id, insight.cluster_key)
        else:
            logger.info("Merged reflection %s into insight %s (%d reflections, %d authors)",
                        reflection.id, insight.id, len(insight.reflection_ids),
                        insight.independent_count)
        if transitions.get("promoted"):
            self._announce_promotion(insight)
        return insight

    def _merge(
        self,
        key: ClusterKey,
        existing: Optional[Insight],
        reflections: list[Reflection],
        now: datetime,
        transitions: dict[str, Any],
    ) -> Insight:
        score = compute_score(reflections)
        previous_priority = existing.priority if existing else None

        if existing is None:
            first = reflections[0]
            insight = Insight(
                cluster_key=str(key),
                workflow_stage=key.workflow_stage,
                failure_family=key.failure_family,
                impacted_unit=key.impacted_unit,
                title=f"{key.failure_family}: {first.pain[:TITLE_PAIN_LENGTH]}",
                priority=score_to_priority(score),
                created_at=now,
            )
            transitions["created"] = True
        else:
            insight = existing.model_copy(deep=True)
            insight.priority = score_to_priority_with_hysteresis(score, existing.priority)

        authors = _unique([r.author for r in reflections])
        insight.reflection_ids = [r.id for r in reflections]
        insight.evidence_refs = _unique([e for r in reflections for e in r.evidence])
        insight.authors = authors
        insight.independent_count = len(authors)
        insight.score = score
        insight.severity_max = max_severity(reflections)
        insight.recurring_candidate = len(reflections) >= self.config.recurring_threshold
        insight.updated_at = now

        override = any(r.metadata.promotion_override for r in reflections)
        if override:
            insight.metadata.promotion_override = True

        if insight.status == InsightStatus.CANDIDATE:
            self._evaluate_promotion(insight, now, transitions)

        insight.metadata.scoring_version = SCORING_ENGINE_VERSION
        insight.metadata.decision_trace = build_decision_trace(
            reflections, insight.cluster_key, insight.promotion_readiness, previous_priority, score
        )
        return insight

    def _evaluate_promotion(self, insight: Insight, now: datetime, transitions: dict[str, Any]) -> None:
        override = bool(insight.metadata.promotion_override)
        meets_threshold = insight.independent_count >= self.config.promotion_threshold
        cooling = insight.cooldown_until is not None and insight.cooldown_until > now

        if not (meets_threshold or override):
            insight.promotion_readiness = PromotionReadiness.NOT_READY
            return
        if cooling:
            insight.promotion_readiness = PromotionReadiness.READY
            logger.debug("Insight %s eligible but cooling down until %s",
                         insight.id, insight.cooldown_until)
            return

        insight.status = InsightStatus.PROMOTED
        insight.promotion_readiness = (
            PromotionReadiness.PROMOTED if meets_threshold else PromotionReadiness.OVERRIDE
        )
        transitions["promoted"] = True

    def _announce_promotion(self, insight: Insight) -> None:
        logger.info("Promoted insight %s (%s, score=%.1f, authors=%d)",
                    insight.id, insight.cluster_key, insight.score, insight.independent_count)
        if self.events is not None:
            self.events.emit(INSIGHT_PROMOTED, {
                "insight_id": insight.id,
                "cluster_key": insight.cluster_key,
                "score": insight.score,
            })

    def reevaluate_candidates(self, now: Optional[datetime] = None) -> list[Insight]:
        """Promote candidates whose cooldown has lapsed since their last merge."""
        now = now or datetime.now(UTC)
        promoted: list[Insight] = []
        candidates = self.repository.list_insights(
            InsightFilter(status=InsightStatus.CANDIDATE, limit=200)
        )
        for insight in candidates:
            if insight.promotion_readiness != PromotionReadiness.READY:
                continue
            transitions: dict[str, Any] = {}
            self._evaluate_promotion(insight, now, transitions)
            if not transitions.get("promoted"):
                continue
            updated = self.repository.update_insight_status(insight.id, InsightStatus.PROMOTED, now)
            if updated is not None:
                promoted.append(updated)
                self._announce_promotion(updated)
        return promoted

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def get_insight(self, insight_id: str) -> Optional[Insight]:
        return self.repository.get_insight(insight_id)

    def require_insight(self, insight_id: str) -> Insight:
        insight = self.repository.get_insight(insight_id)
        if insight is None:
            raise InsightNotFoundError(insight_id)
        return insight

    def list_insights(self, insight_filter: Optional[InsightFilter] = None) -> list[Insight]:
        return self.repository.list_insights(insight_filter or InsightFilter())

    def list_unbridged_promoted(self) -> list[Insight]:
        return self.repository.list_unbridged_promoted()

    def list_recurring_insights(self) -> list[Insight]:
        """Recurring insights with no task and no manual promotion yet."""
        return self.repository.list_recurring_insights()

    def get_reflections(self, insight: Insight) -> list[Reflection]:
        return self.repository.list_reflections(insight.reflection_ids)

    def insight_stats(self) -> dict[str, Any]:
        counts = self.repository.insight_counts()
        return {
            "total": sum(counts["status"].values()),
            "by_status": counts["status"],
            "by_priority": counts["priority"],
        }

    # -------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------

    def update_insight_status(
        self,
        insight_id: str,
        status: InsightStatus,
        task_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Insight:
        """Change status; a task_id is written only if none is set yet."""
        now = now or datetime.now(UTC)
        current = self.require_insight(insight_id)

        if task_id is not None:
            if not self.link_task(insight_id, task_id, now):
                logger.warning("Insight %s already linked to %s; ignoring %s",
                               insight_id, current.task_id, task_id)
            return self.require_insight(insight_id)

        updated = self.repository.update_insight_status(insight_id, status, now)
        if updated is None:
            raise InsightNotFoundError(insight_id)
        logger.info("Insight %s: %s -> %s", insight_id, current.status.value, status.value)
        return updated

    def link_task(self, insight_id: str, task_id: str, now: Optional[datetime] = None) -> bool:
        """Compare-and-set the task link. False if another task won."""
        now = now or datetime.now(UTC)
        linked = self.repository.link_insight_task(insight_id, task_id, now)
        if linked:
            logger.info("Linked insight %s -> task %s", insight_id, task_id)
        return linked

    def start_cooldown(
        self,
        insight_id: str,
        reason: str,
        status: InsightStatus,
        now: Optional[datetime] = None,
        metadata: Optional[InsightMetadata] = None,
    ) -> Insight:
        now = now or datetime.now(UTC)
        until = now + timedelta(hours=self.config.cooldown_hours)
        updated = self.repository.update_insight_status(
            insight_id, status, now,
            cooldown_until=until, cooldown_reason=reason, metadata=metadata,
        )
        if updated is None:
            raise InsightNotFoundError(insight_id)
        logger.info("Insight %s cooling down until %s (%s)", insight_id, until.isoformat(), reason)
        return updated
