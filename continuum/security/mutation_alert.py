"""Mutation alert monitor for suspicious reviewer-state changes.

Detects two patterns:
1. A non-reviewer trying to approve a task.
2. The same actor toggling ``reviewer_approved`` back and forth.

Every occurrence is written to the audit ledger and kept in a bounded alert
log. Outbound notifications are throttled per (actor, task) pair, and flip
counts are read back from the audit ledger rather than a separate counter.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

from continuum.core.config import AuditConfig
from continuum.core.models import AlertType, AuditEntry, MutationAlert
from continuum.security.audit_ledger import AuditLedger
from continuum.tools.notifications import AlertDispatcher

logger = logging.getLogger("continuum.security.mutation_alert")

APPROVAL_FIELD = "metadata.reviewer_approved"
UNAUTHORIZED_MARKER = "REJECTED: unauthorized"
BURST_THRESHOLD = 3


class MutationAlertMonitor:
    """Records, throttles and escalates reviewer-mutation alerts."""

    def __init__(
        self,
        ledger: AuditLedger,
        config: Optional[AuditConfig] = None,
        dispatcher: Optional[AlertDispatcher] = None,
    ):
        self.ledger = ledger
        self.config = config or AuditConfig()
        self.dispatcher = dispatcher
        self._throttle = timedelta(seconds=self.config.throttle_seconds)
        self._flip_window = timedelta(seconds=self.config.flip_window_seconds)
        self._last_alert_at: dict[str, datetime] = {}
        self._alerts: deque[MutationAlert] = deque(maxlen=self.config.max_alerts)
        self._lock = threading.Lock()

    # -------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------

    def alert_unauthorized_approval(
        self,
        task_id: str,
        task_title: str,
        actor: str,
        expected_reviewer: Optional[str],
        context: str,
        now: Optional[datetime] = None,
    ) -> MutationAlert:
        now = now or datetime.now(UTC)
        self.ledger.record(AuditEntry(
            timestamp=now,
            task_id=task_id,
            actor=actor,
            field=APPROVAL_FIELD,
            before=None,
            after=UNAUTHORIZED_MARKER,
            context=f"{context} (expected reviewer: {expected_reviewer or 'none'})",
        ))

        attempts = sum(
            1 for e in self.ledger.get_audit_entries(
                task_id=task_id, actor=actor, field=APPROVAL_FIELD, since=now - self._flip_window
            )
            if e.after == UNAUTHORIZED_MARKER
        )
        if attempts >= BURST_THRESHOLD:
            message = (
                f"ALERT: {actor} has made {attempts} unauthorized approval attempts on "
                f'"{task_title}" ({task_id}) in the last {self._minutes(self._flip_window)}m. '
                f"Expected reviewer: {expected_reviewer or 'none'}. Investigate immediately."
            )
        else:
            message = (
                f'Unauthorized approval attempt: {actor} tried to approve "{task_title}" '
                f"({task_id}). Only {expected_reviewer or 'the assigned reviewer'} can approve this task."
            )

        throttled = self._claim_alert_slot(f"approval:{actor}:{task_id}", now)
        alert = MutationAlert(
            type=AlertType.UNAUTHORIZED_APPROVAL,
            actor=actor,
            task_id=task_id,
            task_title=task_title,
            expected_reviewer=expected_reviewer,
            message=message,
            throttled=throttled,
            timestamp=now,
        )
        self._publish(alert, attempts)
        return alert

    def alert_flip_attempt(
        self,
        task_id: str,
        task_title: str,
        actor: str,
        from_value: Any,
        to_value: Any,
        context: str,
        now: Optional[datetime] = None,
    ) -> Optional[MutationAlert]:
        """Record a reviewer_approved toggle; alert once flips reach the threshold.

        Returns the alert when the threshold is reached, otherwise None.
        """
        now = now or datetime.now(UTC)
        self.ledger.record(AuditEntry(
            timestamp=now,
            task_id=task_id,
            actor=actor,
            field=APPROVAL_FIELD,
            before=from_value,
            after=to_value,
            context=f"{context} (flip detected)",
        ))

        flips = self.count_flips(task_id, actor, now)
        if flips < self.config.flip_threshold:
            logger.debug("Flip %d/%d by %s on %s", flips, self.config.flip_threshold, actor, task_id)
            return None

        throttled = self._claim_alert_slot(f"flip:{actor}:{task_id}", now)
        alert = MutationAlert(
            type=AlertType.FLIP_ATTEMPT,
            actor=actor,
            task_id=task_id,
            task_title=task_title,
            from_value=from_value,
            to_value=to_value,
            message=(
                f"Approval flip detected: {actor} has toggled reviewer_approved {flips}x on "
                f'"{task_title}" ({task_id}) in the last {self._minutes(self._flip_window)}m.'
            ),
            throttled=throttled,
            timestamp=now,
        )
        self._publish(alert, flips)
        return alert

    def count_flips(self, task_id: str, actor: str, now: Optional[datetime] = None) -> int:
        """Boolean toggles of reviewer_approved by actor on task inside the flip window."""
        now = now or datetime.now(UTC)
        entries = self.ledger.get_audit_entries(
            task_id=task_id, actor=actor, field=APPROVAL_FIELD, since=now - self._flip_window
        )
        return sum(
            1 for e in entries
            if isinstance(e.after, bool) and e.before is not None and e.before != e.after
        )

    # -------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------

    def get_alerts(self, limit: Optional[int] = None) -> list[MutationAlert]:
        with self._lock:
            alerts = list(reversed(self._alerts))
        return alerts[:limit] if limit else alerts

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            alerts = list(self._alerts)
            tracked = len(self._last_alert_at)
        return {
            "alert_count": len(alerts),
            "throttled_count": sum(1 for a in alerts if a.throttled),
            "tracked_pairs": tracked,
            "recent_alerts": [a.model_dump(mode="json") for a in alerts[-10:][::-1]],
        }

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _claim_alert_slot(self, key: str, now: datetime) -> bool:
        """Return True if the key is still throttled; otherwise reserve the slot."""
        with self._lock:
            last = self._last_alert_at.get(key)
            if last is not None and now - last < self._throttle:
                return True
            self._last_alert_at[key] = now
            return False

    def _publish(self, alert: MutationAlert, count: int) -> None:
        with self._lock:
            self._alerts.append(alert)

        if alert.throttled:
            logger.info("Throttled %s: actor=%s task=%s (%d in window)",
                        alert.type.value, alert.actor, alert.task_id, count)
            return

        logger.warning("%s: actor=%s task=%s count=%d",
                       alert.type.value, alert.actor, alert.task_id, count)
        if self.dispatcher is not None:
            self.dispatcher.dispatch(
                category="mutation_alert",
                channel=self.config.alert_channel,
                content=alert.message,
                sender="security",
            )

    @staticmethod
    def _minutes(delta: timedelta) -> int:
        return int(delta.total_seconds() // 60)
