"""Named timer actions.

Timers carry an action name plus keyword arguments instead of a callable,
so a scheduled job stays a plain record that recovery can rebuild. This
module resolves the name to its handler.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from promptparty.core import phases, verification
from promptparty.core.context import GameContext
from promptparty.core.timers import ActionRunner

logger = logging.getLogger(__name__)

ACTIONS: dict[str, Callable[..., Awaitable[object]]] = {
    "advance_phase": phases.advance_phase,
    "verify_and_dispatch": verification.verify_and_dispatch,
    "start_next_round": phases.start_next_round,
    "end_game": phases.end_game,
}


async def run_action(ctx: GameContext, action: str, payload: dict[str, Any]) -> None:
    handler = ACTIONS.get(action)
    if handler is None:
        msg = f"Unknown timer action: {action}"
        raise ValueError(msg)
    logger.debug("timer_action action=%s payload=%s", action, payload)
    await handler(ctx, **payload)


def make_runner(ctx: GameContext) -> ActionRunner:
    """Bind ``run_action`` to a context for ``APSchedulerTimers.bind``."""
    return functools.partial(run_action, ctx)
