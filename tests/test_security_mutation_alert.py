"""Tests for continuum/security/mutation_alert.py: reviewer mutation alerts."""

from datetime import timedelta

from continuum.core.models import AlertType
from continuum.security.mutation_alert import APPROVAL_FIELD, UNAUTHORIZED_MARKER


class TestUnauthorizedApproval:
    def test_records_and_notifies(self, alert_monitor, audit_ledger, sink, now):
        alert = alert_monitor.alert_unauthorized_approval(
            "task-1", "Fix sweeper", "link", "harmony", "update_task", now=now
        )
        assert alert.type == AlertType.UNAUTHORIZED_APPROVAL
        assert alert.throttled is False
        entries = audit_ledger.get_audit_for_task("task-1")
        assert entries[0].field == APPROVAL_FIELD
        assert entries[0].after == UNAUTHORIZED_MARKER
        assert "harmony" in entries[0].context
        assert len(sink.contents("ops")) == 1
        assert "link tried to approve" in sink.contents("ops")[0]

    def test_repeat_attempts_are_throttled_then_escalated(self, alert_monitor, sink, now):
        alerts = [
            alert_monitor.alert_unauthorized_approval(
                "task-1", "Fix sweeper", "link", "harmony", "ctx", now=now + timedelta(minutes=i)
            )
            for i in range(3)
        ]
        assert [a.throttled for a in alerts] == [False, True, True]
        assert alerts[2].message.startswith("ALERT: link has made 3 unauthorized")
        assert len(sink.sent) == 1

    def test_throttle_expires(self, alert_monitor, now):
        alert_monitor.alert_unauthorized_approval("task-1", "t", "link", "harmony", "", now=now)
        later = alert_monitor.alert_unauthorized_approval(
            "task-1", "t", "link", "harmony", "", now=now + timedelta(seconds=301)
        )
        assert later.throttled is False

    def test_throttle_is_per_actor_and_task(self, alert_monitor, now):
        alert_monitor.alert_unauthorized_approval("task-1", "t", "link", "harmony", "", now=now)
        other = alert_monitor.alert_unauthorized_approval("task-2", "t", "link", "harmony", "", now=now)
        assert other.throttled is False


class TestFlipAttempt:
    def test_alerts_at_threshold(self, alert_monitor, sink, now):
        first = alert_monitor.alert_flip_attempt("task-1", "t", "harmony", True, False, "ctx", now=now)
        second = alert_monitor.alert_flip_attempt(
            "task-1", "t", "harmony", False, True, "ctx", now=now + timedelta(minutes=1)
        )
        assert first is None
        assert second is not None
        assert second.type == AlertType.FLIP_ATTEMPT
        assert "2x" in second.message
        assert len(sink.sent) == 1

    def test_flips_outside_window_do_not_count(self, alert_monitor, now):
        alert_monitor.alert_flip_attempt("task-1", "t", "harmony", True, False, "", now=now)
        late = alert_monitor.alert_flip_attempt(
            "task-1", "t", "harmony", False, True, "", now=now + timedelta(minutes=20)
        )
        assert late is None
        assert alert_monitor.count_flips("task-1", "harmony", now + timedelta(minutes=20)) == 1

    def test_unauthorized_entries_are_not_flips(self, alert_monitor, now):
        alert_monitor.alert_unauthorized_approval("task-1", "t", "harmony", None, "", now=now)
        assert alert_monitor.count_flips("task-1", "harmony", now) == 0


class TestStatus:
    def test_status_and_alert_log(self, alert_monitor, now):
        alert_monitor.alert_unauthorized_approval("task-1", "t", "link", "harmony", "", now=now)
        alert_monitor.alert_unauthorized_approval("task-1", "t", "link", "harmony", "", now=now)
        status = alert_monitor.get_status()
        assert status["alert_count"] == 2
        assert status["throttled_count"] == 1
        assert status["tracked_pairs"] == 1
        assert len(status["recent_alerts"]) == 2
        assert len(alert_monitor.get_alerts(limit=1)) == 1
