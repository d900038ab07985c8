"""Tests for continuum/core/events.py: in-process event bus."""

from continuum.core.events import INSIGHT_PROMOTED, EventBus


class TestEventBus:
    def test_delivers_to_subscribers(self):
        bus = EventBus()
        received = []
        bus.subscribe(INSIGHT_PROMOTED, received.append)
        assert bus.emit(INSIGHT_PROMOTED, {"insight_id": "ins-1"}) == 1
        assert received == [{"insight_id": "ins-1"}]

    def test_subscribe_is_idempotent(self):
        bus = EventBus()
        received = []
        bus.subscribe(INSIGHT_PROMOTED, received.append)
        bus.subscribe(INSIGHT_PROMOTED, received.append)
        assert bus.handler_count(INSIGHT_PROMOTED) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe(INSIGHT_PROMOTED, received.append)
        bus.unsubscribe(INSIGHT_PROMOTED, received.append)
        bus.unsubscribe(INSIGHT_PROMOTED, received.append)
        assert bus.emit(INSIGHT_PROMOTED, {}) == 0
        assert received == []

    def test_failing_handler_does_not_reach_publisher(self):
        bus = EventBus()
        received = []

        def broken(payload):
            raise RuntimeError("boom")

        bus.subscribe(INSIGHT_PROMOTED, broken)
        bus.subscribe(INSIGHT_PROMOTED, received.append)
        assert bus.emit(INSIGHT_PROMOTED, {"x": 1}) == 1
        assert received == [{"x": 1}]
