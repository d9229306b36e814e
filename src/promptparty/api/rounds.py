"""Round API endpoints: round state, prompt and vote submission, results."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from promptparty.api.deps import GameDep, RepoDep, http_error
from promptparty.core.errors import GameRuleError, NotFoundError
from promptparty.core.scoring import tally_votes, winning_images
from promptparty.core.submissions import submit_prompt, submit_vote
from promptparty.db.models import RoundRow
from promptparty.db.repository import Repository
from promptparty.models.round import ImageView, RoundView, VoteRecord

router = APIRouter(prefix="/api/rounds", tags=["rounds"])


# --- Request Models ---


class SubmitPromptRequest(BaseModel):
    player_id: str
    text: str


class SubmitVoteRequest(BaseModel):
    voter_id: str
    image_id: str


# --- Helpers ---


async def build_round_view(repo: Repository, round_row: RoundRow) -> RoundView:
    """Public view of a round. Images are listed once generation has begun."""
    images = []
    if round_row.status != "prompt":
        images = [
            ImageView(
                image_id=image.id,
                prompt_id=image.prompt_id,
                player_id=image.prompt.player_id,
                prompt_text=image.prompt.text,
                image_url=image.image_url,
                error=image.error,
            )
            for image in await repo.list_images_for_round(round_row.id)
        ]
    return RoundView(
        id=round_row.id,
        room_id=round_row.room_id,
        round_number=round_row.round_number,
        status=round_row.status,
        question_text=round_row.question_text,
        phase_deadline=round_row.phase_deadline,
        prompt_count=await repo.count_prompts(round_row.id),
        vote_count=len(await repo.list_votes(round_row.id)),
        images=images,
        generation_error=round_row.generation_error,
    )


# --- Endpoints ---


@router.get("/{round_id}")
async def get_round(round_id: str, repo: RepoDep) -> RoundView:
    round_row = await repo.get_round(round_id)
    if round_row is None:
        raise HTTPException(status_code=404, detail="Round not found")
    return await build_round_view(repo, round_row)


@router.post("/{round_id}/prompts")
async def api_submit_prompt(round_id: str, body: SubmitPromptRequest, game: GameDep) -> dict:
    """Submit or replace the player's prompt. Only during the prompt phase."""
    try:
        prompt, created = await submit_prompt(game, round_id, body.player_id, body.text)
    except (GameRuleError, NotFoundError) as exc:
        raise http_error(exc) from exc
    return {"prompt_id": prompt.id, "text": prompt.text, "created": created}


@router.post("/{round_id}/votes")
async def api_submit_vote(round_id: str, body: SubmitVoteRequest, game: GameDep) -> dict:
    """Cast or change a vote. Only during the voting phase; never for your own image."""
    try:
        vote, created = await submit_vote(game, round_id, body.voter_id, body.image_id)
    except (GameRuleError, NotFoundError) as exc:
        raise http_error(exc) from exc
    return {"vote_id": vote.id, "image_id": vote.image_id, "created": created}


@router.get("/{round_id}/results")
async def get_results(round_id: str, repo: RepoDep) -> dict:
    """Vote tallies and winning images once voting has closed."""
    round_row = await repo.get_round(round_id)
    if round_row is None:
        raise HTTPException(status_code=404, detail="Round not found")
    if round_row.status not in ("results", "complete"):
        raise HTTPException(status_code=409, detail="Voting has not closed yet")

    owners = {
        image.id: image.prompt.player_id
        for image in await repo.list_images_for_round(round_id)
        if image.image_url
    }
    votes = [
        VoteRecord(voter_id=v.voter_id, image_id=v.image_id)
        for v in await repo.list_votes(round_id)
    ]
    tallies = tally_votes(votes, owners)
    return {
        "round_id": round_id,
        "tallies": dict(tallies),
        "winners": [
            {"image_id": image_id, "player_id": owners[image_id]}
            for image_id in winning_images(tallies)
        ],
        "scored": round_row.scored_at is not None,
    }
