"""Tests for the round phase state machine."""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import SeededRoom
from sqlalchemy.ext.asyncio import AsyncEngine

from promptparty.config import Settings
from promptparty.core import phases
from promptparty.core.context import GameContext
from promptparty.core.errors import GameRuleError, NotFoundError, NotHostError, PhaseError
from promptparty.core.phases import advance_phase, end_game, start_game, start_next_round
from promptparty.core.timers import ManualTimers
from promptparty.db.engine import get_session
from promptparty.db.repository import Repository


async def _room_state(engine: AsyncEngine, room_id: str):
    async with get_session(engine) as session:
        repo = Repository(session)
        return await repo.get_room(room_id), await repo.get_rounds_for_room(room_id)


async def _set_rounds(engine: AsyncEngine, room_id: str, rounds: int) -> None:
    async with get_session(engine) as session:
        room = await Repository(session).get_room(room_id)
        room.rounds_per_game = rounds


class TestPhaseDuration:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [("prompt", 60_000), ("generating", 30_000), ("voting", 45_000), ("results", 15_000)],
    )
    def test_defaults(self, status: str, expected: int):
        assert phases.phase_duration_ms(Settings(), status) == expected

    def test_generating_uses_generation_setting(self):
        settings = Settings(generation_phase_duration_ms=12_000)
        assert phases.phase_duration_ms(settings, "generating") == 12_000

    def test_room_overrides_prompt_only(self):
        class _Room:
            time_per_round_seconds = 20

        assert phases.phase_duration_ms(Settings(), "prompt", _Room()) == 20_000
        assert phases.phase_duration_ms(Settings(), "voting", _Room()) == 45_000


class TestStartGame:
    async def test_creates_round_one(
        self, game: GameContext, engine: AsyncEngine, timers: ManualTimers, room: SeededRoom
    ):
        round_row = await start_game(game, room.room_id, room.host_id)

        assert round_row.round_number == 1
        assert round_row.status == "prompt"
        assert round_row.question_text
        room_row, rounds = await _room_state(engine, room.room_id)
        assert room_row.status == "playing"
        assert room_row.current_round == 1
        assert room_row.started_at is not None
        assert len(rounds) == 1
        assert timers.pending_actions() == ["advance_phase"]
        assert timers.pending[0].payload == {"round_id": round_row.id, "expected_status": "prompt"}

    async def test_prompt_deadline(self, game: GameContext, room: SeededRoom):
        before = datetime.now(UTC)
        round_row = await start_game(game, room.room_id, room.host_id)
        assert round_row.phase_deadline - before >= timedelta(milliseconds=60_000)

    async def test_room_round_time_overrides(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        async with get_session(engine) as session:
            room_row = await Repository(session).get_room(room.room_id)
            room_row.time_per_round_seconds = 5
        round_row = await start_game(game, room.room_id, room.host_id)
        assert round_row.phase_deadline - round_row.phase_started_at == timedelta(seconds=5)

    async def test_only_host(self, game: GameContext, room: SeededRoom):
        with pytest.raises(NotHostError):
            await start_game(game, room.room_id, room.guest_id)

    async def test_unknown_room(self, game: GameContext, room: SeededRoom):
        with pytest.raises(NotFoundError):
            await start_game(game, "nope", room.host_id)

    async def test_cannot_start_twice(self, game: GameContext, room: SeededRoom):
        await start_game(game, room.room_id, room.host_id)
        with pytest.raises(PhaseError):
            await start_game(game, room.room_id, room.host_id)

    async def test_needs_min_players(self, game: GameContext, engine: AsyncEngine):
        async with get_session(engine) as session:
            repo = Repository(session)
            room_row = await repo.create_room("Lonely")
            host = await repo.add_player(room_row.id, "Solo", is_host=True)
            await repo.add_player(room_row.id, "Gone", status="disconnected")
        with pytest.raises(GameRuleError, match="at least 2"):
            await start_game(game, room_row.id, host.id)

    async def test_question_cards_used(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        async with get_session(engine) as session:
            await Repository(session).create_question_card("Draw your boss as a vegetable:")
        round_row = await start_game(game, room.room_id, room.host_id)
        assert round_row.question_text == "Draw your boss as a vegetable:"

    async def test_events(self, game: GameContext, room: SeededRoom):
        async with game.event_bus.subscribe(room.room_id) as sub:
            await start_game(game, room.room_id, room.host_id)
            first = await sub.get(timeout=1.0)
            second = await sub.get(timeout=1.0)
        assert first["type"] == "game.started"
        assert second["type"] == "round.started"
        assert second["data"]["round_number"] == 1


class TestAdvancePhase:
    async def test_transition_order(self, game: GameContext, room: SeededRoom):
        round_row = await start_game(game, room.room_id, room.host_id)
        seen = []
        while (status := await advance_phase(game, round_row.id)) is not None:
            seen.append(status)
        assert seen == ["generating", "voting", "results", "complete"]

    async def test_duplicate_delivery_is_noop(
        self, game: GameContext, timers: ManualTimers, room: SeededRoom
    ):
        round_row = await start_game(game, room.room_id, room.host_id)
        assert await advance_phase(game, round_row.id, expected_status="prompt") == "generating"
        armed = len(timers.pending)
        assert await advance_phase(game, round_row.id, expected_status="prompt") is None
        assert len(timers.pending) == armed

    async def test_unknown_round(self, game: GameContext):
        assert await advance_phase(game, "missing") is None

    async def test_generating_arms_verification_and_deadline(
        self, game: GameContext, engine: AsyncEngine, timers: ManualTimers, room: SeededRoom
    ):
        round_row = await start_game(game, room.room_id, room.host_id)
        timers.pop()
        await advance_phase(game, round_row.id)

        assert timers.pending_actions() == ["verify_and_dispatch", "advance_phase"]
        verify, deadline = timers.pending
        assert verify.payload == {"round_id": round_row.id, "attempt": 0}
        assert deadline.payload == {"round_id": round_row.id, "expected_status": "generating"}

        _, rounds = await _room_state(engine, room.room_id)
        assert rounds[0].generation_started_at is not None
        span = rounds[0].phase_deadline - rounds[0].phase_started_at
        assert span == timedelta(milliseconds=game.settings.generation_phase_duration_ms)

    async def test_voting_does_not_wait_for_generation(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        round_row = await start_game(game, room.room_id, room.host_id)
        await advance_phase(game, round_row.id)
        assert await advance_phase(game, round_row.id) == "voting"
        _, rounds = await _room_state(engine, room.room_id)
        assert rounds[0].generation_completed_at is None

    async def test_results_scores_round(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        round_row = await start_game(game, room.room_id, room.host_id)
        for _ in range(3):
            await advance_phase(game, round_row.id)
        _, rounds = await _room_state(engine, room.room_id)
        assert rounds[0].status == "results"
        assert rounds[0].scored_at is not None

    async def test_scoring_failure_does_not_block(
        self,
        game: GameContext,
        timers: ManualTimers,
        room: SeededRoom,
        monkeypatch: pytest.MonkeyPatch,
    ):
        async def broken(*args, **kwargs):
            raise RuntimeError("scoring exploded")

        monkeypatch.setattr(phases, "apply_round_scores", broken)
        round_row = await start_game(game, room.room_id, room.host_id)
        await advance_phase(game, round_row.id)
        await advance_phase(game, round_row.id)
        assert await advance_phase(game, round_row.id) == "results"
        armed = [item.payload for item in timers.pending]
        assert {"round_id": round_row.id, "expected_status": "results"} in armed

    async def test_last_round_ends_game(
        self, game: GameContext, timers: ManualTimers, room: SeededRoom
    ):
        round_row = await start_game(game, room.room_id, room.host_id)
        for _ in range(4):
            await advance_phase(game, round_row.id)
        assert "end_game" in timers.pending_actions()
        assert "start_next_round" not in timers.pending_actions()

    async def test_earlier_round_schedules_next(
        self, game: GameContext, engine: AsyncEngine, timers: ManualTimers, room: SeededRoom
    ):
        await _set_rounds(engine, room.room_id, 2)
        round_row = await start_game(game, room.room_id, room.host_id)
        for _ in range(4):
            await advance_phase(game, round_row.id)
        assert "start_next_round" in timers.pending_actions()
        assert "end_game" not in timers.pending_actions()
        _, rounds = await _room_state(engine, room.room_id)
        assert rounds[0].ended_at is not None

    async def test_phase_changed_events(self, game: GameContext, room: SeededRoom):
        round_row = await start_game(game, room.room_id, room.host_id)
        async with game.event_bus.subscribe(room.room_id) as sub:
            await advance_phase(game, round_row.id)
            event = await sub.get(timeout=1.0)
        assert event["type"] == "round.phase_changed"
        assert (event["data"]["from"], event["data"]["to"]) == ("prompt", "generating")


class TestNextRoundAndEnd:
    async def test_next_round(self, game: GameContext, engine: AsyncEngine, room: SeededRoom):
        await _set_rounds(engine, room.room_id, 2)
        first = await start_game(game, room.room_id, room.host_id)
        for _ in range(4):
            await advance_phase(game, first.id)

        second = await start_next_round(game, room.room_id)
        assert second.round_number == 2
        assert second.question_text != first.question_text
        room_row, _ = await _room_state(engine, room.room_id)
        assert room_row.current_round == 2

        # Round 2 is open, so a second delivery does nothing
        assert await start_next_round(game, room.room_id) is None

    async def test_next_round_after_last_is_noop(self, game: GameContext, room: SeededRoom):
        first = await start_game(game, room.room_id, room.host_id)
        for _ in range(4):
            await advance_phase(game, first.id)
        assert await start_next_round(game, room.room_id) is None

    async def test_end_game_once(self, game: GameContext, engine: AsyncEngine, room: SeededRoom):
        await start_game(game, room.room_id, room.host_id)
        async with game.event_bus.subscribe(room.room_id) as sub:
            assert await end_game(game, room.room_id)
            event = await sub.get(timeout=1.0)
        assert not await end_game(game, room.room_id)
        assert event["type"] == "game.ended"
        assert [p["name"] for p in event["data"]["scoreboard"]] == ["Alice", "Bob"]
        room_row, _ = await _room_state(engine, room.room_id)
        assert room_row.status == "finished"
        assert room_row.finished_at is not None
