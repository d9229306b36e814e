"""Startup recovery sweep.

Timers live in memory, so a restart loses every armed job. The database
still records where each round is and when its phase ends; this sweep
re-arms the clock from that state. Re-arming a timer that already fired is
harmless because every action is idempotent.
"""

from __future__ import annotations

import logging

from promptparty.core.context import GameContext
from promptparty.core.phases import score_round
from promptparty.db.engine import get_session
from promptparty.db.repository import Repository

logger = logging.getLogger(__name__)


async def recover_rounds(ctx: GameContext) -> dict[str, int]:
    """Re-arm timers for every open round and every playing room between rounds.

    Returns counts per kind of recovered work, for logging and tests.
    """
    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        open_rounds = [
            (r.id, r.room_id, r.status, r.phase_deadline, r.generation_dispatched_at, r.scored_at)
            for r in await repo.get_open_rounds()
        ]
        idle_rooms: list[tuple[str, bool]] = []
        for room in await repo.get_rooms_by_status("playing"):
            if await repo.get_current_round(room.id) is not None:
                continue
            latest = await repo.get_latest_round(room.id)
            played = latest.round_number if latest else 0
            idle_rooms.append((room.id, played < room.rounds_per_game))

    counts = {"rounds": 0, "verifications": 0, "scored": 0, "next_rounds": 0, "ended": 0}
    for round_id, room_id, status, deadline, dispatched_at, scored_at in open_rounds:
        ctx.timers.run_at(deadline, "advance_phase", round_id=round_id, expected_status=status)
        counts["rounds"] += 1
        if status == "generating" and dispatched_at is None:
            ctx.timers.run_after(0, "verify_and_dispatch", round_id=round_id, attempt=0)
            counts["verifications"] += 1
        elif status == "results" and scored_at is None:
            await score_round(ctx, round_id, room_id)
            counts["scored"] += 1

    for room_id, more_rounds in idle_rooms:
        if more_rounds:
            ctx.timers.run_after(0, "start_next_round", room_id=room_id)
            counts["next_rounds"] += 1
        else:
            ctx.timers.run_after(0, "end_game", room_id=room_id)
            counts["ended"] += 1

    logger.info(
        "recovery_complete rounds=%d verifications=%d scored=%d next_rounds=%d ended=%d",
        counts["rounds"],
        counts["verifications"],
        counts["scored"],
        counts["next_rounds"],
        counts["ended"],
    )
    return counts
