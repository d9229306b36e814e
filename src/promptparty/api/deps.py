"""FastAPI dependency injection for database sessions, repository, and game context."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from promptparty.core.context import GameContext
from promptparty.core.errors import (
    AlreadyScoredError,
    GameRuleError,
    NotFoundError,
    NotHostError,
    PhaseError,
)
from promptparty.db.engine import create_session_factory
from promptparty.db.repository import Repository


async def get_engine(request: Request) -> AsyncEngine:
    """Get the database engine from app state."""
    return request.app.state.engine


async def get_session(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session."""
    factory = create_session_factory(engine)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Re-raise pattern: must catch all to ensure rollback on any error
            await session.rollback()
            raise


async def get_repo(session: Annotated[AsyncSession, Depends(get_session)]) -> Repository:
    """Get a repository instance bound to the current session."""
    return Repository(session)


async def get_game(request: Request) -> GameContext:
    """Get the round orchestrator context from app state."""
    return request.app.state.game


RepoDep = Annotated[Repository, Depends(get_repo)]
GameDep = Annotated[GameContext, Depends(get_game)]


def http_error(exc: GameRuleError | NotFoundError) -> HTTPException:
    """Map a game rule violation to the HTTP status a client should see."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotHostError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, (PhaseError, AlreadyScoredError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
