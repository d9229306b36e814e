"""SSE (Server-Sent Events) endpoint for live round updates."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from promptparty.core.event_bus import EVENT_TYPES, EventBus

router = APIRouter(prefix="/api/events", tags=["events"])
logger = logging.getLogger(__name__)

_HEARTBEAT_INTERVAL = 15  # seconds

# Every open stream holds a queue; cap them so idle clients cannot exhaust memory.
_MAX_SSE_CONNECTIONS = 100
_connection_semaphore = asyncio.Semaphore(_MAX_SSE_CONNECTIONS)


def _get_bus(request: Request) -> EventBus:
    """Get the EventBus from app state."""
    return request.app.state.event_bus


def format_event(event: dict) -> str:
    """Render one bus envelope as an SSE frame."""
    data = json.dumps(event, default=str)
    return f"event: {event['type']}\ndata: {data}\n\n"


@router.get("/stream")
async def sse_stream(
    request: Request,
    room_id: str | None = None,
    event_type: str | None = None,
) -> StreamingResponse:
    """Server-Sent Events stream.

    Query params:
        room_id: only events for this room; all rooms if omitted.
        event_type: only this event type (e.g. "round.phase_changed").

    Sends an initial comment to flush proxy buffers and periodic heartbeats
    to keep the connection alive.

    Errors:
        400: unknown event_type value
        429: connection limit reached
    """
    if event_type is not None and event_type not in EVENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown event_type {event_type!r}. Valid values: {sorted(EVENT_TYPES)}",
        )
    if _connection_semaphore.locked():
        raise HTTPException(
            status_code=429,
            detail=f"Too many concurrent SSE connections (limit: {_MAX_SSE_CONNECTIONS})",
        )

    bus = _get_bus(request)

    async def generate():
        async with _connection_semaphore:
            yield ": connected\n\n"

            async with bus.subscribe(room_id) as sub:
                while True:
                    if await request.is_disconnected():
                        break
                    event = await sub.get(timeout=_HEARTBEAT_INTERVAL)
                    if event is None:
                        yield ": heartbeat\n\n"
                        continue
                    if event_type is not None and event["type"] != event_type:
                        continue
                    yield format_event(event)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/health")
async def events_health(request: Request) -> dict:
    """EventBus subscriber count and SSE connection stats."""
    bus = _get_bus(request)
    return {
        "status": "ok",
        "subscribers": bus.subscriber_count,
        "active_sse_connections": _MAX_SSE_CONNECTIONS - _connection_semaphore._value,  # noqa: SLF001
        "max_sse_connections": _MAX_SSE_CONNECTIONS,
    }
