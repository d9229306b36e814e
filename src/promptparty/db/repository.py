"""Repository pattern for database access.

Wraps SQLAlchemy async sessions. Every write the round orchestrator relies on
for correctness is a single atomic statement: phase transitions and
idempotency markers are conditional UPDATEs, prompt and vote resubmissions
are ``INSERT ... ON CONFLICT DO UPDATE`` keyed on the natural uniqueness
constraint, and image rows are ``ON CONFLICT DO NOTHING`` on the prompt.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Column, Table, func, literal, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from promptparty.db.models import (
    GeneratedImageRow,
    PlayerRow,
    PromptRow,
    QuestionCardRow,
    RoomRow,
    RoundRow,
    VoteRow,
)

# Round columns that may be claimed exactly once via ``claim_round_marker``.
ROUND_MARKERS = frozenset({"generation_dispatched_at", "scored_at"})


def _new_id() -> str:
    return str(uuid.uuid4())


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # --- Rooms / Players (owned by the lobby service) ---

    async def create_room(
        self,
        name: str,
        code: str | None = None,
        rounds_per_game: int = 3,
        time_per_round_seconds: int | None = None,
        max_players: int = 8,
    ) -> RoomRow:
        row = RoomRow(
            name=name,
            code=code or uuid.uuid4().hex[:6].upper(),
            rounds_per_game=rounds_per_game,
            time_per_round_seconds=time_per_round_seconds,
            max_players=max_players,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_room(self, room_id: str) -> RoomRow | None:
        return await self.session.get(RoomRow, room_id, populate_existing=True)

    async def get_rooms_by_status(self, status: str) -> list[RoomRow]:
        stmt = select(RoomRow).where(RoomRow.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def transition_room(
        self,
        room_id: str,
        from_status: str,
        to_status: str,
        now: datetime | None = None,
    ) -> bool:
        """Compare-and-swap the room status, stamping ``started_at``/``finished_at``."""
        now = now or datetime.now(UTC)
        fields: dict[str, object] = {"status": to_status}
        if to_status == "playing":
            fields["started_at"] = now
        elif to_status == "finished":
            fields["finished_at"] = now
        stmt = (
            update(RoomRow)
            .where(RoomRow.id == room_id, RoomRow.status == from_status)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def set_room_current_round(self, room_id: str, round_number: int) -> None:
        stmt = (
            update(RoomRow)
            .where(RoomRow.id == room_id)
            .values(current_round=round_number)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def add_player(
        self,
        room_id: str,
        name: str,
        is_host: bool = False,
        status: str = "connected",
    ) -> PlayerRow:
        row = PlayerRow(room_id=room_id, name=name, is_host=is_host, status=status)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_player(self, player_id: str) -> PlayerRow | None:
        return await self.session.get(PlayerRow, player_id, populate_existing=True)

    async def get_players_for_room(
        self, room_id: str, connected_only: bool = False
    ) -> list[PlayerRow]:
        stmt = select(PlayerRow).where(PlayerRow.room_id == room_id)
        if connected_only:
            stmt = stmt.where(PlayerRow.status == "connected")
        stmt = stmt.order_by(PlayerRow.joined_at).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def patch_player_score(self, player_id: str, delta: int) -> None:
        """Add ``delta`` to a player's cumulative score in one statement."""
        if delta < 0:
            msg = f"Score deltas are non-negative, got {delta}"
            raise ValueError(msg)
        stmt = (
            update(PlayerRow)
            .where(PlayerRow.id == player_id)
            .values(score=PlayerRow.score + delta)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def get_scoreboard(self, room_id: str) -> list[PlayerRow]:
        """Room members by score, highest first (kicked players excluded)."""
        stmt = (
            select(PlayerRow)
            .where(PlayerRow.room_id == room_id, PlayerRow.status != "kicked")
            .order_by(PlayerRow.score.desc(), PlayerRow.joined_at)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Question cards ---

    async def create_question_card(
        self, text: str, category: str | None = None, is_active: bool = True
    ) -> QuestionCardRow:
        row = QuestionCardRow(text=text, category=category, is_active=is_active)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_active_question_cards(self) -> list[QuestionCardRow]:
        stmt = select(QuestionCardRow).where(QuestionCardRow.is_active.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_used_questions(self, room_id: str) -> set[str]:
        """Question texts already played in this room."""
        stmt = select(RoundRow.question_text).where(RoundRow.room_id == room_id)
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    # --- Rounds ---

    async def insert_round(
        self,
        room_id: str,
        round_number: int,
        question_text: str,
        phase_deadline: datetime,
        now: datetime | None = None,
    ) -> RoundRow:
        now = now or datetime.now(UTC)
        row = RoundRow(
            room_id=room_id,
            round_number=round_number,
            question_text=question_text,
            status="prompt",
            started_at=now,
            phase_started_at=now,
            phase_deadline=phase_deadline,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_round(self, round_id: str) -> RoundRow | None:
        """Read a round fresh from the database (never from the identity map)."""
        return await self.session.get(RoundRow, round_id, populate_existing=True)

    async def get_current_round(self, room_id: str) -> RoundRow | None:
        """The room's one non-complete round, if any."""
        stmt = (
            select(RoundRow)
            .where(RoundRow.room_id == room_id, RoundRow.status != "complete")
            .order_by(RoundRow.round_number.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_round(self, room_id: str) -> RoundRow | None:
        stmt = (
            select(RoundRow)
            .where(RoundRow.room_id == room_id)
            .order_by(RoundRow.round_number.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_rounds_for_room(self, room_id: str) -> list[RoundRow]:
        stmt = (
            select(RoundRow)
            .where(RoundRow.room_id == room_id)
            .order_by(RoundRow.round_number)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_open_rounds(self) -> list[RoundRow]:
        """All non-complete rounds across every room (startup recovery)."""
        stmt = (
            select(RoundRow)
            .where(RoundRow.status != "complete")
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def patch_round(self, round_id: str, **fields: object) -> None:
        """Unconditional update of round diagnostics."""
        stmt = (
            update(RoundRow)
            .where(RoundRow.id == round_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def transition_round(
        self,
        round_id: str,
        from_status: str,
        to_status: str,
        **fields: object,
    ) -> bool:
        """Compare-and-swap the round status.

        Returns True only for the caller whose UPDATE matched ``from_status``;
        concurrent or duplicate callers get False and must not act.
        """
        stmt = (
            update(RoundRow)
            .where(RoundRow.id == round_id, RoundRow.status == from_status)
            .values(status=to_status, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def claim_round_marker(self, round_id: str, marker: str, when: datetime) -> bool:
        """Set a once-only timestamp column; True if this call set it."""
        if marker not in ROUND_MARKERS:
            msg = f"Unknown round marker {marker!r}"
            raise ValueError(msg)
        column = getattr(RoundRow, marker)
        stmt = (
            update(RoundRow)
            .where(RoundRow.id == round_id, column.is_(None))
            .values({marker: when})
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def _upsert_in_round(
        self,
        table: Table,
        values: dict[str, object],
        conflict: list[Column],
        set_: dict[str, object],
        require_status: str | None,
    ) -> bool:
        """``INSERT ... ON CONFLICT DO UPDATE`` for a per-round submission.

        With ``require_status`` the row is produced by ``INSERT ... SELECT``
        guarded on the round's status, so the phase check and the write are
        one statement and a transition committed in between wins.
        """
        if require_status is None:
            stmt = sqlite_insert(table).values(**values)
        else:
            round_open = (
                select(RoundRow.id)
                .where(RoundRow.id == values["round_id"], RoundRow.status == require_status)
                .exists()
            )
            row = select(
                *(literal(value, table.c[name].type).label(name) for name, value in values.items())
            ).where(round_open)
            stmt = sqlite_insert(table).from_select(list(values), row)
        stmt = stmt.on_conflict_do_update(index_elements=conflict, set_=set_)
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # --- Prompts ---

    async def get_prompt_for_player(self, round_id: str, player_id: str) -> PromptRow | None:
        stmt = (
            select(PromptRow)
            .where(PromptRow.round_id == round_id, PromptRow.player_id == player_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_prompt(
        self,
        round_id: str,
        player_id: str,
        text: str,
        submitted_at: datetime | None = None,
        require_status: str | None = None,
    ) -> tuple[PromptRow, bool] | None:
        """Insert or overwrite the player's prompt for the round.

        Returns ``(row, created)``. A duplicate key is the same submission
        with refreshed content, never an error. With ``require_status`` the
        write only lands while the round is in that status, and None is
        returned otherwise.
        """
        now = submitted_at or datetime.now(UTC)
        existing = await self.get_prompt_for_player(round_id, player_id)
        table = PromptRow.__table__
        written = await self._upsert_in_round(
            table,
            {
                "id": _new_id(),
                "round_id": round_id,
                "player_id": player_id,
                "text": text,
                "submitted_at": now,
            },
            [table.c.round_id, table.c.player_id],
            {"text": text, "submitted_at": now},
            require_status,
        )
        if not written:
            return None
        stmt = (
            select(PromptRow)
            .where(PromptRow.round_id == round_id, PromptRow.player_id == player_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one()
        return row, existing is None

    async def list_prompts(self, round_id: str) -> list[PromptRow]:
        stmt = (
            select(PromptRow)
            .where(PromptRow.round_id == round_id)
            .order_by(PromptRow.submitted_at)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_prompts(self, round_id: str) -> int:
        stmt = select(func.count()).select_from(PromptRow).where(PromptRow.round_id == round_id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    # --- Generated images ---

    async def insert_generated_image(
        self,
        prompt_id: str,
        image_url: str | None = None,
        error: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        """Record the single outcome for a prompt.

        Exactly one of ``image_url`` / ``error`` must be given. Returns False
        if the prompt already has a row (redelivered work is dropped).
        """
        if (image_url is None) == (error is None):
            msg = "Exactly one of image_url or error is required"
            raise ValueError(msg)
        table = GeneratedImageRow.__table__
        stmt = (
            sqlite_insert(table)
            .values(
                id=_new_id(),
                prompt_id=prompt_id,
                image_url=image_url,
                error=error,
                metadata=metadata,
                generated_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=[table.c.prompt_id])
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def get_generated_image(self, image_id: str) -> GeneratedImageRow | None:
        stmt = (
            select(GeneratedImageRow)
            .where(GeneratedImageRow.id == image_id)
            .options(selectinload(GeneratedImageRow.prompt))
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_images_for_round(self, round_id: str) -> list[GeneratedImageRow]:
        """Image rows (successes and errors) for a round, prompt preloaded."""
        stmt = (
            select(GeneratedImageRow)
            .join(PromptRow, GeneratedImageRow.prompt_id == PromptRow.id)
            .where(PromptRow.round_id == round_id)
            .options(selectinload(GeneratedImageRow.prompt))
            .order_by(PromptRow.submitted_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # --- Votes ---

    async def get_vote_for_voter(self, round_id: str, voter_id: str) -> VoteRow | None:
        stmt = (
            select(VoteRow)
            .where(VoteRow.round_id == round_id, VoteRow.voter_id == voter_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_vote(
        self,
        round_id: str,
        voter_id: str,
        image_id: str,
        submitted_at: datetime | None = None,
        require_status: str | None = None,
    ) -> tuple[VoteRow, bool] | None:
        """Insert or overwrite the voter's ballot for the round.

        Returns ``(row, created)``, or None when ``require_status`` is given and
        the round is no longer in it.
        """
        now = submitted_at or datetime.now(UTC)
        existing = await self.get_vote_for_voter(round_id, voter_id)
        table = VoteRow.__table__
        written = await self._upsert_in_round(
            table,
            {
                "id": _new_id(),
                "round_id": round_id,
                "voter_id": voter_id,
                "image_id": image_id,
                "submitted_at": now,
            },
            [table.c.round_id, table.c.voter_id],
            {"image_id": image_id, "submitted_at": now},
            require_status,
        )
        if not written:
            return None
        stmt = (
            select(VoteRow)
            .where(VoteRow.round_id == round_id, VoteRow.voter_id == voter_id)
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one()
        return row, existing is None

    async def list_votes(self, round_id: str) -> list[VoteRow]:
        stmt = (
            select(VoteRow)
            .where(VoteRow.round_id == round_id)
            .order_by(VoteRow.submitted_at)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
