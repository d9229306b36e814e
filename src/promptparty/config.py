"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings

VALID_PROVIDERS = frozenset({"google", "openai", "mock"})

# Alternate provider tried once when the primary fails systemically.
FALLBACK_PROVIDER: dict[str, str | None] = {
    "google": "openai",
    "openai": "google",
    "mock": None,
}


class Settings(BaseSettings):
    """PromptParty application configuration.

    All values can be overridden via environment variables or .env file.
    Durations are in milliseconds unless the name says otherwise.
    """

    # External services
    openai_api_key: str = ""
    gemini_api_key: str = ""

    # Database
    database_url: str = "sqlite+aiosqlite:///promptparty.db"

    # Environment
    promptparty_env: str = "development"
    promptparty_auto_advance: bool = True

    # Phase clock
    prompt_phase_duration_ms: int = 60_000
    generation_phase_duration_ms: int = 30_000
    voting_phase_duration_ms: int = 45_000
    results_phase_duration_ms: int = 15_000
    generation_start_delay_ms: int = 1_000
    next_round_delay_ms: int = 5_000

    # Scoring
    points_per_win: int = 100
    points_per_vote: int = 10

    # Generation
    generation_provider: str = "google"
    max_generation_concurrency: int | None = None  # None = provider default
    inter_batch_delay_ms: int | None = None  # None = provider default
    provider_timeout_seconds: float = 60.0

    # Verification loop
    max_verification_retries: int = 3
    verification_base_delay_ms: int = 1_000

    # Timer delivery
    timer_retry_delay_ms: int = 5_000
    timer_max_deliveries: int = 3

    # Rooms
    min_players: int = 2

    # Logging
    promptparty_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_provider(self) -> Settings:
        if self.generation_provider not in VALID_PROVIDERS:
            msg = (
                f"GENERATION_PROVIDER must be one of {sorted(VALID_PROVIDERS)}, "
                f"got {self.generation_provider!r}"
            )
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _check_durations(self) -> Settings:
        """Every phase needs a positive duration or the clock would never tick."""
        for name in (
            "prompt_phase_duration_ms",
            "generation_phase_duration_ms",
            "voting_phase_duration_ms",
            "results_phase_duration_ms",
        ):
            if getattr(self, name) <= 0:
                msg = f"{name.upper()} must be positive"
                raise ValueError(msg)
        return self

    def fallback_provider(self) -> str | None:
        """Return the provider used when ``generation_provider`` fails systemically."""
        return FALLBACK_PROVIDER.get(self.generation_provider)
