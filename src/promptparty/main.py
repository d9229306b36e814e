"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from promptparty.ai.providers import select_providers
from promptparty.api.events import router as events_router
from promptparty.api.rooms import router as rooms_router
from promptparty.api.rounds import router as rounds_router
from promptparty.config import Settings
from promptparty.core.actions import make_runner
from promptparty.core.context import GameContext
from promptparty.core.event_bus import EventBus
from promptparty.core.recovery import recover_rounds
from promptparty.core.timers import APSchedulerTimers
from promptparty.db.engine import create_engine, create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: engine and tables, providers, timers, then re-arm open rounds."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine
    app.state.event_bus = EventBus()

    provider, fallback = select_providers(settings)
    timers = APSchedulerTimers(
        retry_delay_ms=settings.timer_retry_delay_ms,
        max_deliveries=settings.timer_max_deliveries,
    )
    game = GameContext(
        engine=engine,
        settings=settings,
        timers=timers,
        event_bus=app.state.event_bus,
        provider=provider,
        fallback_provider=fallback,
    )
    timers.bind(make_runner(game))
    app.state.game = game
    logger.info(
        "providers_selected primary=%s fallback=%s",
        provider.name,
        fallback.name if fallback else None,
    )

    if settings.promptparty_auto_advance:
        timers.start()
        await recover_rounds(game)
    else:
        logger.info("timers_disabled")

    yield

    if settings.promptparty_auto_advance:
        timers.shutdown()
    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the PromptParty FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.promptparty_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="PromptParty",
        version="0.1.0",
        description="Party game: write a prompt, watch it become an image, vote for the best",
        docs_url="/docs" if settings.promptparty_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.include_router(rooms_router)
    app.include_router(rounds_router)
    app.include_router(events_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.promptparty_env}

    return app


app = create_app()
