"""Unit tests for the event bus."""

from datetime import datetime

import pytest

from webdeploy.core.events import TERMINAL_EVENTS, Event, EventBus


class TestEventBus:
    """Tests for EventBus."""

    @pytest.mark.asyncio
    async def test_fan_out_per_project(self):
        bus = EventBus()
        first = bus.subscribe("demo")
        second = bus.subscribe("demo")
        other = bus.subscribe("shop")

        await bus.publish_step_completed("demo", "database", success=False, error="boom")

        for queue in (first, second):
            event = queue.get_nowait()
            assert event.event_type == "step_completed"
            assert event.data == {"step": "database", "success": False, "error": "boom"}
        assert other.empty()

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        await EventBus().publish_progress("demo", "hello", datetime.utcnow())

    def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe("demo")

        bus.unsubscribe("demo", queue)
        bus.unsubscribe("demo", queue)

        assert bus.subscriber_count("demo") == 0

    def test_to_sse(self):
        stamp = datetime(2024, 1, 1, 12, 0)
        event = Event("deployment_finished", {"status": "partial"}, timestamp=stamp)

        assert event.event_type in TERMINAL_EVENTS
        assert event.to_sse() == {
            "event": "deployment_finished",
            "data": {"status": "partial", "timestamp": "2024-01-01T12:00:00"},
        }
