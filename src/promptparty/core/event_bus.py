"""In-memory async event bus for room notifications.

The round orchestrator publishes phase changes, image availability, scores,
and game start/end; the SSE endpoint fans them out to connected clients.
Events carry the ``room_id`` so a client can follow only its own room.
Publishing never blocks: a full subscriber queue drops the event.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

logger = logging.getLogger(__name__)

EVENT_TYPES: frozenset[str] = frozenset(
    {
        "game.started",
        "game.ended",
        "round.started",
        "round.phase_changed",
        "round.images_ready",
        "round.scored",
    }
)


class EventBus:
    """Async pub/sub keyed by room.

    Usage:
        bus = EventBus()

        async with bus.subscribe(room_id) as sub:
            event = await sub.get(timeout=15)

        await bus.publish("round.phase_changed", {"room_id": room_id, ...})
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[str | None, asyncio.Queue[dict[str, Any]]]] = []

    async def publish(self, event_type: str, data: dict[str, Any]) -> int:
        """Deliver to subscribers of the event's room and to room-agnostic ones.

        Returns how many subscribers received it.
        """
        envelope = {"type": event_type, "data": data}
        room_id = data.get("room_id")
        count = 0
        for wanted_room, queue in list(self._subscribers):
            if wanted_room is not None and wanted_room != room_id:
                continue
            try:
                queue.put_nowait(envelope)
                count += 1
            except asyncio.QueueFull:
                logger.warning("event_dropped type=%s room=%s", event_type, room_id)
        return count

    def subscribe(self, room_id: str | None = None, max_size: int = 100) -> Subscription:
        """Subscribe to one room's events, or to every room when ``room_id`` is None."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_size)
        return Subscription(self, queue, room_id)

    def _register(self, queue: asyncio.Queue[dict[str, Any]], room_id: str | None) -> None:
        self._subscribers.append((room_id, queue))

    def _unregister(self, queue: asyncio.Queue[dict[str, Any]], room_id: str | None) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove((room_id, queue))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class Subscription:
    """Active subscription; use as an async context manager."""

    def __init__(
        self,
        bus: EventBus,
        queue: asyncio.Queue[dict[str, Any]],
        room_id: str | None,
    ) -> None:
        self._bus = bus
        self._queue = queue
        self._room_id = room_id

    async def __aenter__(self) -> Subscription:
        self._bus._register(self._queue, self._room_id)
        return self

    async def __aexit__(self, *args: object) -> None:
        self._bus._unregister(self._queue, self._room_id)

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next event, or None if ``timeout`` seconds pass first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None
