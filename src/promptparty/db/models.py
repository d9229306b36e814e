"""SQLAlchemy ORM models for the PromptParty database.

Tables: rooms, players, question_cards, rounds, prompts, generated_images,
votes. Rooms and players are owned by the lobby service; the round
orchestrator reads them and only ever touches ``players.score`` and the
room's status/current_round.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class RoomRow(Base):
    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(String(8), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="waiting")
    rounds_per_game: Mapped[int] = mapped_column(Integer, default=3)
    time_per_round_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_players: Mapped[int] = mapped_column(Integer, default=8)
    current_round: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    players: Mapped[list[PlayerRow]] = relationship(back_populates="room")


class PlayerRow(Base):
    __tablename__ = "players"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="connected")
    is_host: Mapped[bool] = mapped_column(Boolean, default=False)
    score: Mapped[int] = mapped_column(Integer, default=0)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    room: Mapped[RoomRow] = relationship(back_populates="players")

    __table_args__ = (Index("ix_players_room_id", "room_id"),)


class QuestionCardRow(Base):
    __tablename__ = "question_cards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class RoundRow(Base):
    __tablename__ = "rounds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id"), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="prompt")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    phase_started_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    phase_deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Generation diagnostics
    generation_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    generation_dispatched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    generation_completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    generation_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    scored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_rounds_room_status", "room_id", "status"),
        UniqueConstraint("room_id", "round_number", name="uq_round_number"),
    )


class PromptRow(Base):
    __tablename__ = "prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    round_id: Mapped[str] = mapped_column(ForeignKey("rounds.id"), nullable=False)
    player_id: Mapped[str] = mapped_column(ForeignKey("players.id"), nullable=False)
    text: Mapped[str] = mapped_column(String(200), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    image: Mapped[GeneratedImageRow | None] = relationship(back_populates="prompt")

    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_prompt_round_player"),
    )


class GeneratedImageRow(Base):
    __tablename__ = "generated_images"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    prompt_id: Mapped[str] = mapped_column(
        ForeignKey("prompts.id"), nullable=False, unique=True
    )
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    prompt: Mapped[PromptRow] = relationship(back_populates="image")


class VoteRow(Base):
    __tablename__ = "votes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    round_id: Mapped[str] = mapped_column(ForeignKey("rounds.id"), nullable=False)
    voter_id: Mapped[str] = mapped_column(ForeignKey("players.id"), nullable=False)
    image_id: Mapped[str] = mapped_column(ForeignKey("generated_images.id"), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (
        Index("ix_votes_image_id", "image_id"),
        UniqueConstraint("round_id", "voter_id", name="uq_vote_round_voter"),
    )
