"""Outbound notification sinks and the suppression-gated dispatcher.

Sinks only know how to deliver a message to a channel. The AlertDispatcher
is the single path for operational alerts: it checks the suppression ledger
first and drops duplicates inside the window.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional

import httpx

from continuum.core.config import NotificationsConfig
from continuum.core.exceptions import ContinuumError, NotificationError
from continuum.tools.suppression_ledger import SuppressionLedger

logger = logging.getLogger("continuum.tools.notifications")


@dataclass
class Notification:
    channel: str
    content: str
    category: str
    sender: str = "system"
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "content": self.content,
            "category": self.category,
            "from": self.sender,
            "timestamp": (self.timestamp or datetime.now(UTC)).isoformat(),
        }


class NotificationSink(ABC):
    """Delivers a notification to a chat channel, webhook, log, etc."""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver one notification. Raises NotificationError on failure."""


class LogNotificationSink(NotificationSink):
    """Writes notifications to the application log."""

    def send(self, notification: Notification) -> None:
        logger.info("[%s] #%s %s: %s", notification.category, notification.channel,
                    notification.sender, notification.content)


class MemoryNotificationSink(NotificationSink):
    """Keeps every delivered notification in a list. Used for inspection and tests."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        with self._lock:
            self.sent.append(notification)

    def contents(self, channel: Optional[str] = None) -> list[str]:
        with self._lock:
            return [n.content for n in self.sent if channel is None or n.channel == channel]


class WebhookNotificationSink(NotificationSink):
    """POSTs notifications as JSON to a webhook URL."""

    def __init__(self, url: str, timeout_seconds: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    def send(self, notification: Notification) -> None:
        try:
            response = self.client.post(self.url, json=notification.to_dict())
            if response.status_code >= 400:
                raise NotificationError(f"Webhook returned HTTP {response.status_code}")
        except NotificationError:
            raise
        except httpx.TimeoutException:
            raise NotificationError("Webhook request timed out")
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook delivery failed: {e}") from e

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_sink(config: NotificationsConfig) -> NotificationSink:
    if config.sink == "webhook":
        if not config.webhook_url:
            raise NotificationError("notifications.sink is 'webhook' but webhook_url is not set")
        return WebhookNotificationSink(config.webhook_url, config.timeout_seconds)
    if config.sink == "memory":
        return MemoryNotificationSink()
    return LogNotificationSink()


class AlertDispatcher:
    """Gates every outbound alert through the suppression ledger."""

    def __init__(self, sink: NotificationSink, ledger: SuppressionLedger):
        self.sink = sink
        self.ledger = ledger
        self.sent_count = 0
        self.suppressed_count = 0

    def dispatch(
        self,
        category: str,
        channel: str,
        content: str,
        sender: str = "system",
    ) -> bool:
        """Send unless suppressed. Returns True when the sink received the alert."""
        try:
            result = self.ledger.check(category, channel, content, sender=sender)
            if result.is_duplicate:
                self.suppressed_count += 1
                return False
        except ContinuumError as e:
            # Ledger unavailable: deliver rather than lose the alert
            logger.warning("Suppression check failed for %s/%s: %s", category, channel, e)

        notification = Notification(
            channel=channel,
            content=content,
            category=category,
            sender=sender,
            timestamp=datetime.now(UTC),
        )
        try:
            self.sink.send(notification)
        except NotificationError as e:
            logger.error("Notification to #%s failed: %s", channel, e)
            return False
        self.sent_count += 1
        return True
