"""Suppression ledger for outbound operational alerts.

Every alert is keyed by category, channel and normalized content. A second
identical alert inside the window is reported as a duplicate so the caller
can drop it. The window slides: each duplicate refreshes ``last_seen_at``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

from continuum.core.config import SuppressionConfig
from continuum.core.exceptions import DatabaseError
from continuum.core.models import SuppressionCheckResult, SuppressionLedgerEntry, SuppressionStats
from continuum.db.base import BaseRepository
from continuum.tools.dedup import compute_dedup_key

logger = logging.getLogger("continuum.tools.suppression")

PREVIEW_LENGTH = 200


class SuppressionLedger:
    """Window-based duplicate detector backed by the repository."""

    def __init__(self, repository: BaseRepository, config: Optional[SuppressionConfig] = None):
        self.repository = repository
        self.config = config or SuppressionConfig()
        self._window = timedelta(seconds=self.config.window_seconds)

    @property
    def window(self) -> timedelta:
        return self._window

    def set_window(self, seconds: int) -> None:
        if seconds <= 0:
            raise ValueError("Suppression window must be positive")
        self._window = timedelta(seconds=seconds)
        logger.info("Suppression window set to %ds", seconds)

    def check(
        self,
        category: str,
        channel: str,
        content: str,
        sender: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SuppressionCheckResult:
        """Record this alert and report whether it duplicates one inside the window."""
        now = now or datetime.now(UTC)
        dedup_key = compute_dedup_key(category, channel, content)
        candidate = SuppressionLedgerEntry(
            dedup_key=dedup_key,
            category=category,
            channel=channel,
            sender=sender,
            content_preview=content[:PREVIEW_LENGTH],
            first_seen_at=now,
            last_seen_at=now,
        )
        entry = self.repository.suppression_upsert(candidate, window_start=now - self._window)

        if entry.suppressed:
            logger.debug("Suppressed duplicate %s/%s (key=%s, hits=%d)",
                         category, channel, dedup_key, entry.hit_count)
            return SuppressionCheckResult(is_duplicate=True, dedup_key=dedup_key, existing=entry)
        return SuppressionCheckResult(is_duplicate=False, dedup_key=dedup_key)

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete entries whose last sighting is older than the window."""
        now = now or datetime.now(UTC)
        try:
            removed = self.repository.suppression_prune(now - self._window)
        except DatabaseError as e:
            logger.error("Suppression prune failed: %s", e)
            return 0
        if removed:
            logger.info("Pruned %d suppression entries", removed)
        return removed

    def get_stats(self, now: Optional[datetime] = None) -> SuppressionStats:
        now = now or datetime.now(UTC)
        cutoff = now - self._window
        stats = SuppressionStats(window_seconds=int(self._window.total_seconds()))
        for entry in self.repository.list_suppression_entries():
            stats.total_entries += 1
            stats.total_hits += entry.hit_count
            if entry.suppressed:
                stats.total_suppressed += 1
            if entry.last_seen_at >= cutoff:
                stats.active_entries += 1
            stats.by_category[entry.category] = stats.by_category.get(entry.category, 0) + entry.hit_count
            stats.by_channel[entry.channel] = stats.by_channel.get(entry.channel, 0) + entry.hit_count
        return stats
