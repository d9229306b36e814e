"""Everything a round action needs, bundled once at startup."""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from promptparty.core.clock import utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from promptparty.ai.providers import ImageProvider
    from promptparty.config import Settings
    from promptparty.core.event_bus import EventBus
    from promptparty.core.timers import Timers


@dataclasses.dataclass
class GameContext:
    engine: AsyncEngine
    settings: Settings
    timers: Timers
    event_bus: EventBus | None = None
    provider: ImageProvider | None = None
    fallback_provider: ImageProvider | None = None
    clock: Callable[[], datetime] = utcnow

    async def publish(self, event_type: str, data: dict) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, data)
