"""Tests for continuum/tools/suppression_ledger.py: windowed alert suppression."""

from datetime import timedelta

import pytest

from continuum.core.config import SuppressionConfig
from continuum.tools.suppression_ledger import PREVIEW_LENGTH, SuppressionLedger


class TestCheck:
    def test_first_alert_passes_second_is_duplicate(self, suppression, now):
        first = suppression.check("continuity-loop", "ops", "Link is starved", now=now)
        second = suppression.check("continuity-loop", "ops", "Link is starved", now=now + timedelta(minutes=5))
        assert first.is_duplicate is False
        assert second.is_duplicate is True
        assert second.dedup_key == first.dedup_key
        assert second.existing.hit_count == 2

    def test_expired_window_allows_resend(self, suppression, now):
        suppression.check("c", "ops", "same", now=now)
        later = now + timedelta(seconds=1801)
        assert suppression.check("c", "ops", "same", now=later).is_duplicate is False

    def test_window_slides_on_each_duplicate(self, suppression, now):
        suppression.check("c", "ops", "same", now=now)
        suppression.check("c", "ops", "same", now=now + timedelta(minutes=25))
        # 50 minutes after the first sighting but 25 after the last
        result = suppression.check("c", "ops", "same", now=now + timedelta(minutes=50))
        assert result.is_duplicate is True

    def test_different_channel_is_not_duplicate(self, suppression, now):
        suppression.check("c", "ops", "same", now=now)
        assert suppression.check("c", "general", "same", now=now).is_duplicate is False

    def test_preview_is_truncated(self, suppression, repository, now):
        suppression.check("c", "ops", "y" * 500, now=now)
        entry = repository.list_suppression_entries()[0]
        assert len(entry.content_preview) == PREVIEW_LENGTH


class TestWindow:
    def test_set_window(self, repository):
        ledger = SuppressionLedger(repository, SuppressionConfig(window_seconds=60))
        assert ledger.window == timedelta(seconds=60)
        ledger.set_window(120)
        assert ledger.window == timedelta(seconds=120)

    def test_set_window_rejects_non_positive(self, suppression):
        with pytest.raises(ValueError):
            suppression.set_window(0)


class TestPruneAndStats:
    def test_prune_removes_entries_older_than_window(self, suppression, now):
        suppression.check("c", "ops", "old", now=now)
        suppression.check("c", "ops", "fresh", now=now + timedelta(minutes=40))
        assert suppression.prune(now=now + timedelta(minutes=45)) == 1
        assert suppression.get_stats(now=now + timedelta(minutes=45)).total_entries == 1

    def test_stats(self, suppression, now):
        suppression.check("loop", "ops", "a", now=now)
        suppression.check("loop", "ops", "a", now=now)
        suppression.check("audit", "general", "b", now=now)
        stats = suppression.get_stats(now=now)
        assert stats.total_entries == 2
        assert stats.total_hits == 3
        assert stats.total_suppressed == 1
        assert stats.active_entries == 2
        assert stats.window_seconds == 1800
        assert stats.by_category == {"loop": 2, "audit": 1}
        assert stats.by_channel == {"ops": 2, "general": 1}
