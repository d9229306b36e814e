"""Round phase state machine.

A round moves prompt -> generating -> voting -> results -> complete, one
step per ``advance_phase`` call. Each call is driven by a timer armed by the
previous one, so the game runs without any client taking part:

- prompt -> generating: stamp ``generation_started_at``, queue the
  verification loop after a short delay, arm the generation deadline.
- generating -> voting: purely deadline driven. Generation that has not
  finished shows up as missing images, never as a stalled clock.
- voting -> results: apply scores. A scoring failure is logged and the
  clock keeps going.
- results -> complete: stamp ``ended_at`` and schedule the next round, or
  the end of the game after the last one.

Every transition is a compare-and-swap on the persisted status, so a timer
delivered twice, or two deliveries racing, advance the round once. Timers
are armed and events published only after the transaction commits.
"""

from __future__ import annotations

import logging
import random

from sqlalchemy.exc import IntegrityError

from promptparty.config import Settings
from promptparty.core.clock import after_ms
from promptparty.core.context import GameContext
from promptparty.core.errors import (
    AlreadyScoredError,
    GameRuleError,
    NotFoundError,
    NotHostError,
    PhaseError,
)
from promptparty.core.scoring import apply_round_scores
from promptparty.db.engine import get_session
from promptparty.db.models import RoomRow, RoundRow
from promptparty.db.repository import Repository
from promptparty.models.constants import DEFAULT_QUESTION_CARDS
from promptparty.models.round import NEXT_STATUS

logger = logging.getLogger(__name__)


def phase_duration_ms(settings: Settings, status: str, room: RoomRow | None = None) -> int:
    """How long ``status`` lasts. A room's own round time overrides the prompt phase."""
    if status == "prompt" and room is not None and room.time_per_round_seconds:
        return room.time_per_round_seconds * 1000
    return {
        "prompt": settings.prompt_phase_duration_ms,
        "generating": settings.generation_phase_duration_ms,
        "voting": settings.voting_phase_duration_ms,
        "results": settings.results_phase_duration_ms,
    }[status]


async def _pick_question(repo: Repository, room_id: str) -> str:
    """Draw a question not yet played in this room, reusing the deck once exhausted."""
    deck = [card.text for card in await repo.get_active_question_cards()] or list(
        DEFAULT_QUESTION_CARDS
    )
    used = await repo.get_used_questions(room_id)
    fresh = [text for text in deck if text not in used]
    return random.choice(fresh or deck)


async def _create_round(
    ctx: GameContext, repo: Repository, room: RoomRow, round_number: int
) -> RoundRow:
    now = ctx.clock()
    question = await _pick_question(repo, room.id)
    deadline = after_ms(now, phase_duration_ms(ctx.settings, "prompt", room))
    round_row = await repo.insert_round(room.id, round_number, question, deadline, now=now)
    await repo.set_room_current_round(room.id, round_number)
    return round_row


async def _announce_round(ctx: GameContext, round_row: RoundRow) -> None:
    ctx.timers.run_at(
        round_row.phase_deadline,
        "advance_phase",
        round_id=round_row.id,
        expected_status="prompt",
    )
    logger.info(
        "round_started room=%s round=%s number=%d",
        round_row.room_id,
        round_row.id,
        round_row.round_number,
    )
    await ctx.publish(
        "round.started",
        {
            "room_id": round_row.room_id,
            "round_id": round_row.id,
            "round_number": round_row.round_number,
            "question_text": round_row.question_text,
            "phase_deadline": round_row.phase_deadline.isoformat(),
        },
    )


async def start_game(ctx: GameContext, room_id: str, player_id: str) -> RoundRow:
    """Host starts the game: room goes to ``playing`` and round 1 begins."""
    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        room = await repo.get_room(room_id)
        if room is None:
            msg = f"Room {room_id} not found"
            raise NotFoundError(msg)
        player = await repo.get_player(player_id)
        if player is None or player.room_id != room_id:
            msg = f"Player {player_id} is not in room {room_id}"
            raise NotFoundError(msg)
        if not player.is_host:
            msg = "Only the host can start the game"
            raise NotHostError(msg)
        if room.status != "waiting":
            msg = f"Room is {room.status}, not waiting"
            raise PhaseError(msg)

        connected = await repo.get_players_for_room(room_id, connected_only=True)
        if len(connected) < ctx.settings.min_players:
            msg = f"Need at least {ctx.settings.min_players} players to start"
            raise GameRuleError(msg)

        if not await repo.transition_room(room_id, "waiting", "playing", now=ctx.clock()):
            msg = "Game already started"
            raise PhaseError(msg)
        round_row = await _create_round(ctx, repo, room, 1)
        players = len(connected)
        rounds_per_game = room.rounds_per_game

    logger.info("game_started room=%s players=%d rounds=%d", room_id, players, rounds_per_game)
    await ctx.publish(
        "game.started",
        {"room_id": room_id, "players": players, "rounds_per_game": rounds_per_game},
    )
    await _announce_round(ctx, round_row)
    return round_row


async def start_next_round(ctx: GameContext, room_id: str) -> RoundRow | None:
    """Create the room's next round. No-op unless the room is playing with no open round."""
    try:
        async with get_session(ctx.engine) as session:
            repo = Repository(session)
            room = await repo.get_room(room_id)
            if room is None or room.status != "playing":
                logger.info("next_round_skipped room=%s reason=not_playing", room_id)
                return None
            if await repo.get_current_round(room_id) is not None:
                logger.info("next_round_skipped room=%s reason=round_open", room_id)
                return None
            latest = await repo.get_latest_round(room_id)
            number = latest.round_number + 1 if latest else 1
            if number > room.rounds_per_game:
                logger.info("next_round_skipped room=%s reason=rounds_exhausted", room_id)
                return None
            round_row = await _create_round(ctx, repo, room, number)
    except IntegrityError:
        logger.info("next_round_skipped room=%s reason=already_created", room_id)
        return None

    await _announce_round(ctx, round_row)
    return round_row


async def end_game(ctx: GameContext, room_id: str) -> bool:
    """Finish a playing room and publish the final scoreboard."""
    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        if not await repo.transition_room(room_id, "playing", "finished", now=ctx.clock()):
            logger.info("end_game_skipped room=%s", room_id)
            return False
        scoreboard = [
            {"player_id": p.id, "name": p.name, "score": p.score}
            for p in await repo.get_scoreboard(room_id)
        ]

    logger.info("game_ended room=%s players=%d", room_id, len(scoreboard))
    await ctx.publish("game.ended", {"room_id": room_id, "scoreboard": scoreboard})
    return True


async def advance_phase(
    ctx: GameContext, round_id: str, expected_status: str | None = None
) -> str | None:
    """Move a round one phase forward.

    Returns the new status, or None when nothing happened (unknown round,
    already complete, status no longer ``expected_status``, or another
    delivery won the race).
    """
    now = ctx.clock()
    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        round_row = await repo.get_round(round_id)
        if round_row is None:
            logger.warning("advance_skipped round=%s reason=unknown", round_id)
            return None
        current = round_row.status
        if current == "complete" or (expected_status and current != expected_status):
            logger.info(
                "advance_skipped round=%s status=%s expected=%s",
                round_id,
                current,
                expected_status,
            )
            return None

        target = NEXT_STATUS[current]
        room = await repo.get_room(round_row.room_id)
        fields: dict[str, object] = {"phase_started_at": now}
        if target == "complete":
            fields["phase_deadline"] = now
            fields["ended_at"] = now
        else:
            fields["phase_deadline"] = after_ms(now, phase_duration_ms(ctx.settings, target, room))
        if target == "generating":
            fields["generation_started_at"] = now

        if not await repo.transition_round(round_id, current, target, **fields):
            logger.info("advance_lost_race round=%s from=%s", round_id, current)
            return None

        room_id = round_row.room_id
        round_number = round_row.round_number
        rounds_per_game = room.rounds_per_game if room else round_number
        deadline = fields["phase_deadline"]

    logger.info("phase_advanced round=%s from=%s to=%s", round_id, current, target)
    await ctx.publish(
        "round.phase_changed",
        {
            "room_id": room_id,
            "round_id": round_id,
            "round_number": round_number,
            "from": current,
            "to": target,
            "phase_deadline": deadline.isoformat(),
        },
    )

    if target == "generating":
        ctx.timers.run_after(
            ctx.settings.generation_start_delay_ms,
            "verify_and_dispatch",
            round_id=round_id,
            attempt=0,
        )
    elif target == "results":
        await score_round(ctx, round_id, room_id)

    if target != "complete":
        ctx.timers.run_at(deadline, "advance_phase", round_id=round_id, expected_status=target)
    elif round_number < rounds_per_game:
        ctx.timers.run_after(ctx.settings.next_round_delay_ms, "start_next_round", room_id=room_id)
    else:
        ctx.timers.run_after(ctx.settings.next_round_delay_ms, "end_game", room_id=room_id)
    return target


async def score_round(ctx: GameContext, round_id: str, room_id: str) -> None:
    """Apply scores in their own transaction; failures never hold up the clock."""
    try:
        async with get_session(ctx.engine) as session:
            deltas = await apply_round_scores(
                Repository(session),
                round_id,
                ctx.settings.points_per_win,
                ctx.settings.points_per_vote,
                ctx.clock(),
            )
    except AlreadyScoredError:
        logger.info("scoring_skipped round=%s reason=already_scored", round_id)
        return
    except Exception:  # Boundary: scoring must not stall the phase clock
        logger.exception("scoring_failed round=%s", round_id)
        return

    await ctx.publish(
        "round.scored", {"room_id": room_id, "round_id": round_id, "deltas": deltas}
    )
