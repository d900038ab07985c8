"""Tests for continuum/memory/insight_store.py: ingestion, clustering and promotion."""

from datetime import timedelta

import pytest

from continuum.core.events import INSIGHT_PROMOTED
from continuum.core.exceptions import (
    DuplicateReflectionError,
    InsightNotFoundError,
    ReflectionValidationError,
)
from continuum.core.models import InsightFilter, InsightStatus, Priority, PromotionReadiness


@pytest.fixture
def promoted_events(events):
    received = []
    events.subscribe(INSIGHT_PROMOTED, received.append)
    return received


class TestIngest:
    def test_first_reflection_creates_candidate(self, insight_store, make_reflection, now):
        insight = insight_store.ingest_reflection(make_reflection(), now=now)
        assert insight.cluster_key == "ops::noise::sweeper"
        assert insight.status == InsightStatus.CANDIDATE
        assert insight.title.startswith("noise: Sweeper job floods")
        assert insight.independent_count == 1
        assert insight.score == 8.0
        assert insight.priority == Priority.P0
        assert insight.promotion_readiness == PromotionReadiness.NOT_READY
        assert insight.metadata.decision_trace["dedupe_cluster_id"] == insight.cluster_key

    def test_second_author_promotes(self, insight_store, make_reflection, promoted_events, now):
        first = insight_store.ingest_reflection(make_reflection(author="link"), now=now)
        second = insight_store.ingest_reflection(
            make_reflection(author="pixel", evidence=["logs/sweeper-2026-03-01.txt", "screenshot.png"]),
            now=now + timedelta(minutes=5),
        )
        assert second.id == first.id
        assert second.status == InsightStatus.PROMOTED
        assert second.promotion_readiness == PromotionReadiness.PROMOTED
        assert second.authors == ["link", "pixel"]
        assert second.evidence_refs == ["logs/sweeper-2026-03-01.txt", "screenshot.png"]
        assert [e["insight_id"] for e in promoted_events] == [first.id]

    def test_same_author_twice_does_not_promote(self, insight_store, make_reflection, now):
        insight_store.ingest_reflection(make_reflection(), now=now)
        insight = insight_store.ingest_reflection(
            make_reflection(pain="Sweeper job posts the same notice twice"), now=now
        )
        assert len(insight.reflection_ids) == 2
        assert insight.independent_count == 1
        assert insight.status == InsightStatus.CANDIDATE

    def test_promotion_override(self, insight_store, make_reflection, promoted_events, now):
        insight = insight_store.ingest_reflection(
            make_reflection(metadata={"promotion_override": True}), now=now
        )
        assert insight.status == InsightStatus.PROMOTED
        assert insight.promotion_readiness == PromotionReadiness.OVERRIDE
        assert len(promoted_events) == 1

    def test_duplicate_inside_window_rejected(self, insight_store, make_reflection, now):
        insight_store.ingest_reflection(make_reflection(), now=now)
        with pytest.raises(DuplicateReflectionError):
            insight_store.ingest_reflection(make_reflection(), now=now + timedelta(minutes=30))

    def test_duplicate_after_window_accepted(self, insight_store, make_reflection, now):
        insight_store.ingest_reflection(make_reflection(), now=now)
        insight = insight_store.ingest_reflection(make_reflection(), now=now + timedelta(hours=2))
        assert len(insight.reflection_ids) == 2

    def test_invalid_payload(self, insight_store, make_reflection):
        with pytest.raises(ReflectionValidationError):
            insight_store.ingest_reflection(make_reflection(confidence=-1))
        assert insight_store.list_insights() == []

    def test_recurring_candidate(self, insight_store, make_reflection, now):
        insight = None
        for i in range(4):
            insight = insight_store.ingest_reflection(make_reflection(author=f"agent{i}"), now=now)
        assert insight.recurring_candidate is True

    def test_promoted_insight_is_not_re_announced(self, insight_store, make_reflection, promoted_events, now):
        for author in ("link", "pixel", "sage"):
            insight_store.ingest_reflection(make_reflection(author=author), now=now)
        assert len(promoted_events) == 1


class TestCooldown:
    def test_cooldown_blocks_then_reevaluate_promotes(
        self, insight_store, make_reflection, promoted_events, now
    ):
        insight = insight_store.ingest_reflection(make_reflection(author="link"), now=now)
        insight_store.start_cooldown(insight.id, "triage_dismissed", InsightStatus.CANDIDATE, now=now)

        merged = insight_store.ingest_reflection(make_reflection(author="pixel"), now=now + timedelta(hours=1))
        assert merged.status == InsightStatus.CANDIDATE
        assert merged.promotion_readiness == PromotionReadiness.READY

        assert insight_store.reevaluate_candidates(now=now + timedelta(hours=2)) == []
        promoted = insight_store.reevaluate_candidates(now=now + timedelta(hours=25))
        assert [i.id for i in promoted] == [insight.id]
        assert insight_store.get_insight(insight.id).status == InsightStatus.PROMOTED
        assert len(promoted_events) == 1

    def test_start_cooldown_missing(self, insight_store, now):
        with pytest.raises(InsightNotFoundError):
            insight_store.start_cooldown("ins-missing", "r", InsightStatus.CANDIDATE, now=now)


class TestStatusAndLinks:
    def test_update_status(self, insight_store, make_reflection, now):
        insight = insight_store.ingest_reflection(make_reflection(), now=now)
        updated = insight_store.update_insight_status(insight.id, InsightStatus.PENDING_TRIAGE, now=now)
        assert updated.status == InsightStatus.PENDING_TRIAGE

    def test_task_link_is_write_once(self, insight_store, make_reflection, now):
        insight = insight_store.ingest_reflection(make_reflection(), now=now)
        first = insight_store.update_insight_status(insight.id, InsightStatus.TASK_CREATED, task_id="task-a")
        second = insight_store.update_insight_status(insight.id, InsightStatus.TASK_CREATED, task_id="task-b")
        assert first.task_id == "task-a"
        assert second.task_id == "task-a"
        assert insight_store.link_task(insight.id, "task-c") is False

    def test_require_insight(self, insight_store):
        with pytest.raises(InsightNotFoundError):
            insight_store.require_insight("ins-missing")
        assert insight_store.get_insight("ins-missing") is None


class TestQueries:
    def test_list_and_stats(self, insight_store, make_reflection, now):
        insight_store.ingest_reflection(make_reflection(), now=now)
        insight_store.ingest_reflection(
            make_reflection(pain="Dashboard layout jumps on load", tags=["stage:ui", "family:layout", "unit:dashboard"],
                            confidence=2, severity="low"),
            now=now,
        )
        assert len(insight_store.list_insights()) == 2
        assert len(insight_store.list_insights(InsightFilter(priority=Priority.P3))) == 1
        stats = insight_store.insight_stats()
        assert stats["total"] == 2
        assert stats["by_status"] == {"candidate": 2}

    def test_get_reflections(self, insight_store, make_reflection, now):
        insight = insight_store.ingest_reflection(make_reflection(), now=now)
        reflections = insight_store.get_reflections(insight)
        assert [r.id for r in reflections] == insight.reflection_ids
