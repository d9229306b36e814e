"""Player submissions: one prompt and one vote per player per round.

Both are upserts keyed on (round, player), so resubmitting replaces the
earlier choice instead of adding a row. Rule violations raise
``GameRuleError`` subclasses before anything is written. The phase is read
up front for a clear error and checked again by the write itself, so a
transition that commits mid-request still rejects the submission.
"""

from __future__ import annotations

import logging

from promptparty.core.context import GameContext
from promptparty.core.errors import (
    InvalidSubmissionError,
    NotFoundError,
    PhaseError,
    SelfVoteError,
)
from promptparty.db.engine import get_session
from promptparty.db.models import PlayerRow, PromptRow, RoundRow, VoteRow
from promptparty.db.repository import Repository
from promptparty.models.round import PROMPT_MAX_LENGTH, PROMPT_MIN_LENGTH

logger = logging.getLogger(__name__)


async def _load_round(repo: Repository, round_id: str, phase: str) -> RoundRow:
    round_row = await repo.get_round(round_id)
    if round_row is None:
        msg = f"Round {round_id} not found"
        raise NotFoundError(msg)
    if round_row.status != phase:
        msg = f"Round is in the {round_row.status} phase, not {phase}"
        raise PhaseError(msg)
    return round_row


async def _load_member(repo: Repository, round_row: RoundRow, player_id: str) -> PlayerRow:
    player = await repo.get_player(player_id)
    if player is None or player.room_id != round_row.room_id:
        msg = "Player is not in this room"
        raise InvalidSubmissionError(msg)
    if player.status == "kicked":
        msg = "Player was removed from this room"
        raise InvalidSubmissionError(msg)
    return player


async def submit_prompt(
    ctx: GameContext, round_id: str, player_id: str, text: str
) -> tuple[PromptRow, bool]:
    """Store the player's prompt for the round. Returns ``(prompt, created)``."""
    text = text.strip()
    if not PROMPT_MIN_LENGTH <= len(text) <= PROMPT_MAX_LENGTH:
        msg = f"Prompt must be {PROMPT_MIN_LENGTH}-{PROMPT_MAX_LENGTH} characters"
        raise InvalidSubmissionError(msg)

    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        round_row = await _load_round(repo, round_id, "prompt")
        await _load_member(repo, round_row, player_id)
        written = await repo.upsert_prompt(
            round_id, player_id, text, submitted_at=ctx.clock(), require_status="prompt"
        )
        if written is None:
            msg = "The prompt phase closed before the submission was saved"
            raise PhaseError(msg)
        prompt, created = written

    logger.info(
        "prompt_%s round=%s player=%s", "submitted" if created else "updated", round_id, player_id
    )
    return prompt, created


async def submit_vote(
    ctx: GameContext, round_id: str, voter_id: str, image_id: str
) -> tuple[VoteRow, bool]:
    """Record the voter's pick for the round. Returns ``(vote, created)``."""
    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        round_row = await _load_round(repo, round_id, "voting")
        await _load_member(repo, round_row, voter_id)

        image = await repo.get_generated_image(image_id)
        if image is None or image.prompt.round_id != round_id:
            msg = "Image is not part of this round"
            raise InvalidSubmissionError(msg)
        if image.image_url is None:
            msg = "Cannot vote for an image that failed to generate"
            raise InvalidSubmissionError(msg)
        if image.prompt.player_id == voter_id:
            msg = "You cannot vote for your own image"
            raise SelfVoteError(msg)

        written = await repo.upsert_vote(
            round_id, voter_id, image_id, submitted_at=ctx.clock(), require_status="voting"
        )
        if written is None:
            msg = "Voting closed before the vote was saved"
            raise PhaseError(msg)
        vote, created = written

    logger.info(
        "vote_%s round=%s voter=%s image=%s",
        "cast" if created else "changed",
        round_id,
        voter_id,
        image_id,
    )
    return vote, created
