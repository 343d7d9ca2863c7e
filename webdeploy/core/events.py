"""Event system for Server-Sent Events (SSE)."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Events after which a deployment stream closes
TERMINAL_EVENTS = ("deployment_finished",)


@dataclass
class Event:
    """An SSE event."""

    event_type: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_sse(self) -> dict[str, Any]:
        """Convert to the mapping ``EventSourceResponse`` expects."""
        return {
            "event": self.event_type,
            "data": {**self.data, "timestamp": self.timestamp.isoformat()},
        }


class EventBus:
    """Fan-out event bus keyed by project name.

    Every subscriber gets its own queue; publishing with no subscribers is a
    no-op.
    """

    def __init__(self):
        self._subscribers: dict[str, list[asyncio.Queue[Event]]] = {}

    def subscribe(self, project_name: str) -> asyncio.Queue[Event]:
        """Subscribe to events for a project."""
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._subscribers.setdefault(project_name, []).append(queue)
        return queue

    def unsubscribe(self, project_name: str, queue: asyncio.Queue[Event]) -> None:
        """Unsubscribe a queue from project events."""
        queues = self._subscribers.get(project_name, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(project_name, None)

    def subscriber_count(self, project_name: str) -> int:
        return len(self._subscribers.get(project_name, []))

    async def publish(self, project_name: str, event: Event) -> None:
        """Publish an event for a project."""
        for queue in list(self._subscribers.get(project_name, [])):
            await queue.put(event)

    async def publish_progress(self, project_name: str, message: str, timestamp: datetime) -> None:
        await self.publish(
            project_name,
            Event(event_type="progress", data={"message": message}, timestamp=timestamp),
        )

    async def publish_step_completed(
        self, project_name: str, step: str, success: bool, error: str | None = None
    ) -> None:
        await self.publish(
            project_name,
            Event(
                event_type="step_completed",
                data={"step": step, "success": success, "error": error},
            ),
        )

    async def publish_deployment_finished(
        self, project_name: str, status: str, outputs: dict[str, str]
    ) -> None:
        await self.publish(
            project_name,
            Event(
                event_type="deployment_finished",
                data={"status": status, "outputs": outputs},
            ),
        )


# Singleton instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the event bus singleton."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
