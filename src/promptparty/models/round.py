"""Round lifecycle models.

A round moves one way through five phases:
prompt -> generating -> voting -> results -> complete.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

RoundStatus = Literal["prompt", "generating", "voting", "results", "complete"]

RoomStatus = Literal["waiting", "playing", "finished"]

PlayerStatus = Literal["connected", "disconnected", "kicked"]

NEXT_STATUS: dict[str, RoundStatus] = {
    "prompt": "generating",
    "generating": "voting",
    "voting": "results",
    "results": "complete",
}

PROMPT_MIN_LENGTH = 3
PROMPT_MAX_LENGTH = 200


class PromptItem(BaseModel):
    """A submitted prompt as handed to the generation dispatcher."""

    model_config = ConfigDict(frozen=True)

    id: str
    player_id: str
    text: str


class ImageArtifact(BaseModel):
    """What a provider returns for one prompt."""

    url: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class VoteRecord(BaseModel):
    """One ballot: ``voter_id`` picked ``image_id``."""

    model_config = ConfigDict(frozen=True)

    voter_id: str
    image_id: str


class ImageView(BaseModel):
    image_id: str
    prompt_id: str
    player_id: str
    prompt_text: str
    image_url: str | None = None
    error: str | None = None


class RoundView(BaseModel):
    """Public state of a round for clients."""

    id: str
    room_id: str
    round_number: int
    status: RoundStatus
    question_text: str
    phase_deadline: datetime
    prompt_count: int = 0
    vote_count: int = 0
    images: list[ImageView] = Field(default_factory=list)
    generation_error: str | None = None


class ScoreboardEntry(BaseModel):
    player_id: str
    name: str
    score: int = Field(ge=0)
