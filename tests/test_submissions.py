"""Tests for prompt and vote submission rules."""

import pytest
from conftest import SeededRoom
from sqlalchemy.ext.asyncio import AsyncEngine

from promptparty.core.context import GameContext
from promptparty.core.errors import (
    InvalidSubmissionError,
    NotFoundError,
    PhaseError,
    SelfVoteError,
)
from promptparty.core.phases import advance_phase, start_game
from promptparty.core.submissions import submit_prompt, submit_vote
from promptparty.core.verification import verify_and_dispatch
from promptparty.db.engine import get_session
from promptparty.db.repository import Repository


async def _images_by_owner(engine: AsyncEngine, round_id: str) -> dict[str, str]:
    async with get_session(engine) as session:
        return {
            image.prompt.player_id: image.id
            for image in await Repository(session).list_images_for_round(round_id)
        }


async def _voting_round(game: GameContext, engine: AsyncEngine, room: SeededRoom) -> str:
    """Start a game, submit both prompts, generate, and open voting."""
    round_row = await start_game(game, room.room_id, room.host_id)
    await submit_prompt(game, round_row.id, room.host_id, "a cat")
    await submit_prompt(game, round_row.id, room.guest_id, "a dog")
    await advance_phase(game, round_row.id)
    await verify_and_dispatch(game, round_row.id)
    await advance_phase(game, round_row.id)
    return round_row.id


class TestSubmitPrompt:
    async def test_trimmed_and_stored(self, game: GameContext, room: SeededRoom):
        round_row = await start_game(game, room.room_id, room.host_id)
        prompt, created = await submit_prompt(game, round_row.id, room.host_id, "   a cat  ")
        assert created
        assert prompt.text == "a cat"

    async def test_resubmission_keeps_last(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        round_row = await start_game(game, room.room_id, room.host_id)
        await submit_prompt(game, round_row.id, room.host_id, "a cat")
        prompt, created = await submit_prompt(game, round_row.id, room.host_id, "a cat in a hat")
        assert not created
        async with get_session(engine) as session:
            prompts = await Repository(session).list_prompts(round_row.id)
        assert [p.text for p in prompts] == ["a cat in a hat"]

    @pytest.mark.parametrize("text", ["", "  ab  ", "x" * 201])
    async def test_length_bounds(self, game: GameContext, room: SeededRoom, text: str):
        round_row = await start_game(game, room.room_id, room.host_id)
        with pytest.raises(InvalidSubmissionError, match="3-200"):
            await submit_prompt(game, round_row.id, room.host_id, text)

    async def test_wrong_phase(self, game: GameContext, room: SeededRoom):
        round_row = await start_game(game, room.room_id, room.host_id)
        await advance_phase(game, round_row.id)
        with pytest.raises(PhaseError):
            await submit_prompt(game, round_row.id, room.host_id, "too late")

    async def test_outsider_rejected(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        async with get_session(engine) as session:
            repo = Repository(session)
            other = await repo.create_room("Other")
            stranger = await repo.add_player(other.id, "Stranger")
        round_row = await start_game(game, room.room_id, room.host_id)
        with pytest.raises(InvalidSubmissionError, match="not in this room"):
            await submit_prompt(game, round_row.id, stranger.id, "a cat")

    async def test_unknown_round(self, game: GameContext, room: SeededRoom):
        with pytest.raises(NotFoundError):
            await submit_prompt(game, "missing", room.host_id, "a cat")

    async def test_phase_closes_mid_request(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom, monkeypatch
    ):
        round_row = await start_game(game, room.room_id, room.host_id)
        original = Repository.get_player

        async def close_prompt_phase(self, player_id):
            player = await original(self, player_id)
            await self.transition_round(round_row.id, "prompt", "generating")
            return player

        monkeypatch.setattr(Repository, "get_player", close_prompt_phase)
        with pytest.raises(PhaseError, match="closed"):
            await submit_prompt(game, round_row.id, room.host_id, "a cat")
        monkeypatch.undo()

        async with get_session(engine) as session:
            assert await Repository(session).list_prompts(round_row.id) == []


class TestSubmitVote:
    async def test_vote_and_change(self, game: GameContext, engine: AsyncEngine, room: SeededRoom):
        round_id = await _voting_round(game, engine, room)
        images = await _images_by_owner(engine, round_id)

        vote, created = await submit_vote(game, round_id, room.host_id, images[room.guest_id])
        assert created
        vote, created = await submit_vote(game, round_id, room.host_id, images[room.guest_id])
        assert not created
        async with get_session(engine) as session:
            assert len(await Repository(session).list_votes(round_id)) == 1

    async def test_self_vote_rejected(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        round_id = await _voting_round(game, engine, room)
        images = await _images_by_owner(engine, round_id)
        with pytest.raises(SelfVoteError):
            await submit_vote(game, round_id, room.host_id, images[room.host_id])

    async def test_error_image_rejected(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom, provider
    ):
        provider.fail_on = {"a dog"}
        round_id = await _voting_round(game, engine, room)
        images = await _images_by_owner(engine, round_id)
        with pytest.raises(InvalidSubmissionError, match="failed to generate"):
            await submit_vote(game, round_id, room.host_id, images[room.guest_id])

    async def test_image_from_elsewhere_rejected(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom
    ):
        round_id = await _voting_round(game, engine, room)
        with pytest.raises(InvalidSubmissionError, match="not part of this round"):
            await submit_vote(game, round_id, room.host_id, "no-such-image")

    async def test_voting_closed(self, game: GameContext, engine: AsyncEngine, room: SeededRoom):
        round_id = await _voting_round(game, engine, room)
        images = await _images_by_owner(engine, round_id)
        await advance_phase(game, round_id)
        with pytest.raises(PhaseError):
            await submit_vote(game, round_id, room.host_id, images[room.guest_id])

    async def test_voting_closes_mid_request(
        self, game: GameContext, engine: AsyncEngine, room: SeededRoom, monkeypatch
    ):
        round_id = await _voting_round(game, engine, room)
        images = await _images_by_owner(engine, round_id)
        original = Repository.get_generated_image

        async def close_voting(self, image_id):
            image = await original(self, image_id)
            await self.transition_round(round_id, "voting", "results")
            return image

        monkeypatch.setattr(Repository, "get_generated_image", close_voting)
        with pytest.raises(PhaseError, match="Voting closed"):
            await submit_vote(game, round_id, room.host_id, images[room.guest_id])
        monkeypatch.undo()

        async with get_session(engine) as session:
            assert await Repository(session).list_votes(round_id) == []
