"""Tests for continuum/tools/notifications.py: sinks and the alert dispatcher."""

import json

import httpx
import pytest

from continuum.core.config import NotificationsConfig
from continuum.core.exceptions import DatabaseError, NotificationError
from continuum.db.memory import InMemoryRepository
from continuum.tools.notifications import (
    AlertDispatcher,
    LogNotificationSink,
    MemoryNotificationSink,
    Notification,
    NotificationSink,
    WebhookNotificationSink,
    create_sink,
)
from continuum.tools.suppression_ledger import SuppressionLedger


class _BrokenLedgerRepository(InMemoryRepository):
    def suppression_upsert(self, entry, window_start):
        raise DatabaseError("ledger offline")


class _FailingSink(NotificationSink):
    def send(self, notification):
        raise NotificationError("channel gone")


def _webhook(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WebhookNotificationSink("https://hooks.example/continuum", client=client)


class TestWebhookSink:
    def test_posts_json(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(204)

        sink = _webhook(handler)
        sink.send(Notification(channel="ops", content="hello", category="test", sender="sage"))
        assert seen[0]["channel"] == "ops"
        assert seen[0]["from"] == "sage"
        assert "timestamp" in seen[0]

    def test_http_error_status_raises(self):
        sink = _webhook(lambda request: httpx.Response(500))
        with pytest.raises(NotificationError, match="HTTP 500"):
            sink.send(Notification(channel="ops", content="x", category="test"))

    def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sink = _webhook(handler)
        with pytest.raises(NotificationError, match="delivery failed"):
            sink.send(Notification(channel="ops", content="x", category="test"))

    def test_close_is_repeatable(self):
        sink = _webhook(lambda request: httpx.Response(200))
        sink.close()
        sink.close()


class TestCreateSink:
    def test_default_is_log(self):
        assert isinstance(create_sink(NotificationsConfig()), LogNotificationSink)

    def test_memory(self):
        assert isinstance(create_sink(NotificationsConfig(sink="memory")), MemoryNotificationSink)

    def test_webhook_requires_url(self):
        with pytest.raises(NotificationError):
            create_sink(NotificationsConfig(sink="webhook"))
        sink = create_sink(NotificationsConfig(sink="webhook", webhook_url="https://hooks.example/x"))
        assert isinstance(sink, WebhookNotificationSink)


class TestAlertDispatcher:
    def test_duplicate_is_dropped(self, dispatcher, sink):
        assert dispatcher.dispatch("continuity-loop", "ops", "Link starved") is True
        assert dispatcher.dispatch("continuity-loop", "ops", "Link starved") is False
        assert sink.contents("ops") == ["Link starved"]
        assert dispatcher.sent_count == 1
        assert dispatcher.suppressed_count == 1

    def test_distinct_alerts_both_sent(self, dispatcher, sink):
        dispatcher.dispatch("c", "ops", "first")
        dispatcher.dispatch("c", "ops", "second")
        assert sink.contents() == ["first", "second"]

    def test_fails_open_when_ledger_unavailable(self):
        sink = MemoryNotificationSink()
        dispatcher = AlertDispatcher(sink, SuppressionLedger(_BrokenLedgerRepository()))
        assert dispatcher.dispatch("c", "ops", "x") is True
        assert dispatcher.dispatch("c", "ops", "x") is True
        assert len(sink.sent) == 2

    def test_sink_failure_returns_false(self, suppression):
        dispatcher = AlertDispatcher(_FailingSink(), suppression)
        assert dispatcher.dispatch("c", "ops", "x") is False
        assert dispatcher.sent_count == 0
