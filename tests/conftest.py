"""Shared test fixtures."""

import asyncio
import dataclasses

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from promptparty.ai.providers import GenerationError, ProviderUnavailableError
from promptparty.config import Settings
from promptparty.core.actions import make_runner
from promptparty.core.context import GameContext
from promptparty.core.event_bus import EventBus
from promptparty.core.timers import ManualTimers
from promptparty.db.engine import create_engine, get_session
from promptparty.db.models import Base
from promptparty.db.repository import Repository
from promptparty.models.round import ImageArtifact


class FakeProvider:
    """Scriptable ``ImageProvider``.

    ``fail_on`` prompts raise ``GenerationError``; ``unavailable`` makes every
    call raise ``ProviderUnavailableError``; ``delay`` slows each call down.
    """

    def __init__(
        self,
        name: str = "fake",
        max_concurrent: int = 3,
        fail_on: set[str] | None = None,
        unavailable: bool = False,
        preflight_error: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.model = f"{name}-model"
        self.max_concurrent = max_concurrent
        self.inter_batch_delay_ms = 0
        self.fail_on = fail_on or set()
        self.unavailable = unavailable
        self.preflight_error = preflight_error
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    def preflight(self) -> None:
        if self.preflight_error:
            msg = f"{self.name} has no API key"
            raise ProviderUnavailableError(msg)

    async def generate(self, prompt: str, context_text: str) -> ImageArtifact:
        self.calls.append((prompt, context_text))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if self.unavailable:
            msg = f"{self.name} rejected credentials"
            raise ProviderUnavailableError(msg)
        if prompt in self.fail_on:
            msg = f"{self.name} could not draw {prompt!r}"
            raise GenerationError(msg)
        return ImageArtifact(
            url=f"https://img.test/{self.name}/{prompt.replace(' ', '-')}.png",
            metadata={"provider": self.name, "model": self.model},
        )


@dataclasses.dataclass
class SeededRoom:
    room_id: str
    host_id: str
    guest_id: str


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(
        promptparty_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        generation_provider="mock",
        inter_batch_delay_ms=0,
    )


@pytest.fixture
async def engine() -> AsyncEngine:
    """Create an in-memory SQLite engine with all tables."""
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def timers() -> ManualTimers:
    return ManualTimers()


@pytest.fixture
def game(
    engine: AsyncEngine, settings: Settings, timers: ManualTimers, provider: FakeProvider
) -> GameContext:
    return GameContext(
        engine=engine,
        settings=settings,
        timers=timers,
        event_bus=EventBus(),
        provider=provider,
    )


@pytest.fixture
def runner(game: GameContext):
    return make_runner(game)


@pytest.fixture
async def room(engine: AsyncEngine) -> SeededRoom:
    """A waiting one-round room with a host and one guest."""
    async with get_session(engine) as session:
        repo = Repository(session)
        row = await repo.create_room("Test Room", rounds_per_game=1)
        host = await repo.add_player(row.id, "Alice", is_host=True)
        guest = await repo.add_player(row.id, "Bob")
        return SeededRoom(room_id=row.id, host_id=host.id, guest_id=guest.id)
