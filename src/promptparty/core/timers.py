"""Timer facility: run a named action at, or after, a point in time.

The round orchestrator never calls itself directly; it arms timers that
name an action (``advance_phase``, ``verify_and_dispatch``, ...) and its
keyword arguments. ``APSchedulerTimers`` backs this with one-shot
``DateTrigger`` jobs on APScheduler's ``AsyncIOScheduler``; ``ManualTimers``
queues them until the caller fires them, for tests and offline demos.

Delivery is at-least-once. A failing action is logged and redelivered
after ``retry_delay_ms`` until ``max_deliveries`` is reached; handlers must
therefore be safe to run twice. Jobs live in memory only; after a restart
``core.recovery.recover_rounds`` re-arms them from persisted deadlines.
"""

from __future__ import annotations

import dataclasses
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from promptparty.core.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

ActionRunner = Callable[[str, dict[str, Any]], Awaitable[None]]


class Timers(Protocol):
    """What the orchestrator needs from a scheduler."""

    def run_after(self, delay_ms: int, action: str, **kwargs: Any) -> None: ...

    def run_at(self, when: datetime, action: str, **kwargs: Any) -> None: ...


class APSchedulerTimers:
    """``Timers`` on top of an APScheduler ``AsyncIOScheduler``."""

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        retry_delay_ms: int = 5_000,
        max_deliveries: int = 3,
    ) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._runner: ActionRunner | None = None
        self.retry_delay_ms = retry_delay_ms
        self.max_deliveries = max_deliveries

    def bind(self, runner: ActionRunner) -> None:
        """Set the coroutine that executes a named action."""
        self._runner = runner

    def start(self) -> None:
        self._scheduler.start()
        logger.info("timers_started")

    def shutdown(self) -> None:
        self._scheduler.shutdown(wait=False)
        logger.info("timers_stopped")

    @property
    def pending_count(self) -> int:
        return len(self._scheduler.get_jobs())

    def run_after(self, delay_ms: int, action: str, **kwargs: Any) -> None:
        self._add(utcnow() + timedelta(milliseconds=max(0, delay_ms)), action, kwargs, 1)

    def run_at(self, when: datetime, action: str, **kwargs: Any) -> None:
        self._add(as_utc(when), action, kwargs, 1)

    def _add(self, when: datetime, action: str, payload: dict[str, Any], delivery: int) -> None:
        self._scheduler.add_job(
            self._deliver,
            trigger=DateTrigger(run_date=when),
            kwargs={"action": action, "payload": payload, "delivery": delivery},
            name=action,
            misfire_grace_time=None,
        )
        logger.debug("timer_armed action=%s at=%s delivery=%d", action, when.isoformat(), delivery)

    async def _deliver(self, action: str, payload: dict[str, Any], delivery: int) -> None:
        if self._runner is None:
            logger.error("timer_unbound action=%s", action)
            return
        try:
            await self._runner(action, payload)
        except Exception:  # Boundary handler: any action error becomes a redelivery
            logger.exception("timer_action_error action=%s delivery=%d", action, delivery)
            if delivery < self.max_deliveries:
                retry_at = utcnow() + timedelta(milliseconds=self.retry_delay_ms)
                self._add(retry_at, action, payload, delivery + 1)
            else:
                logger.error(
                    "timer_action_abandoned action=%s payload=%s deliveries=%d",
                    action,
                    payload,
                    delivery,
                )


@dataclasses.dataclass(order=True)
class ScheduledAction:
    when: datetime
    seq: int
    action: str = dataclasses.field(compare=False)
    payload: dict[str, Any] = dataclasses.field(compare=False)


class ManualTimers:
    """``Timers`` that fire only when asked, earliest first.

    Lets tests and offline demos step a game deterministically without
    waiting on the wall clock.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._queue: list[ScheduledAction] = []
        self._seq = itertools.count()

    def run_after(self, delay_ms: int, action: str, **kwargs: Any) -> None:
        when = self._clock() + timedelta(milliseconds=max(0, delay_ms))
        self._push(when, action, kwargs)

    def run_at(self, when: datetime, action: str, **kwargs: Any) -> None:
        self._push(as_utc(when), action, kwargs)

    def _push(self, when: datetime, action: str, payload: dict[str, Any]) -> None:
        heapq.heappush(self._queue, ScheduledAction(when, next(self._seq), action, payload))

    @property
    def pending(self) -> list[ScheduledAction]:
        return sorted(self._queue)

    def pending_actions(self) -> list[str]:
        return [item.action for item in self.pending]

    def pop(self) -> ScheduledAction | None:
        return heapq.heappop(self._queue) if self._queue else None

    async def run_next(self, runner: ActionRunner) -> ScheduledAction | None:
        """Fire the earliest pending action, if any."""
        item = self.pop()
        if item is not None:
            await runner(item.action, item.payload)
        return item

    async def run_all(self, runner: ActionRunner, limit: int = 100) -> list[ScheduledAction]:
        """Fire actions until none remain (including ones armed along the way)."""
        fired: list[ScheduledAction] = []
        while self._queue and len(fired) < limit:
            item = await self.run_next(runner)
            if item is not None:
                fired.append(item)
        return fired
