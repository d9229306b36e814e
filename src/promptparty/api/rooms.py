"""Room API endpoints: start a game, scoreboard, current round."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from promptparty.api.deps import GameDep, RepoDep, http_error
from promptparty.api.rounds import build_round_view
from promptparty.core.errors import GameRuleError, NotFoundError
from promptparty.core.phases import start_game
from promptparty.models.round import RoundView, ScoreboardEntry

router = APIRouter(prefix="/api/rooms", tags=["rooms"])


class StartGameRequest(BaseModel):
    player_id: str


@router.post("/{room_id}/start")
async def api_start_game(room_id: str, body: StartGameRequest, game: GameDep) -> dict:
    """Host starts the game; round 1 opens immediately."""
    try:
        round_row = await start_game(game, room_id, body.player_id)
    except (GameRuleError, NotFoundError) as exc:
        raise http_error(exc) from exc
    return {
        "room_id": room_id,
        "round_id": round_row.id,
        "round_number": round_row.round_number,
        "question_text": round_row.question_text,
        "phase_deadline": round_row.phase_deadline.isoformat(),
    }


@router.get("/{room_id}/scoreboard")
async def get_scoreboard(room_id: str, repo: RepoDep) -> list[ScoreboardEntry]:
    if await repo.get_room(room_id) is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return [
        ScoreboardEntry(player_id=p.id, name=p.name, score=p.score)
        for p in await repo.get_scoreboard(room_id)
    ]


@router.get("/{room_id}/rounds/current")
async def get_current_round(room_id: str, repo: RepoDep) -> RoundView:
    round_row = await repo.get_current_round(room_id)
    if round_row is None:
        raise HTTPException(status_code=404, detail="No round in progress")
    return await build_round_view(repo, round_row)
