"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from promptparty.config import Settings


class TestDefaults:
    def test_phase_durations(self) -> None:
        settings = Settings(database_url="sqlite+aiosqlite:///:memory:")
        assert settings.prompt_phase_duration_ms == 60_000
        assert settings.generation_phase_duration_ms == 30_000
        assert settings.voting_phase_duration_ms == 45_000
        assert settings.results_phase_duration_ms == 15_000

    def test_scoring_and_verification(self) -> None:
        settings = Settings(database_url="sqlite+aiosqlite:///:memory:")
        assert settings.points_per_win == 100
        assert settings.points_per_vote == 10
        assert settings.max_verification_retries == 3
        assert settings.verification_base_delay_ms == 1_000

    def test_concurrency_defaults_to_provider(self) -> None:
        settings = Settings(database_url="sqlite+aiosqlite:///:memory:")
        assert settings.max_generation_concurrency is None
        assert settings.inter_batch_delay_ms is None


class TestProviderPolicy:
    def test_fallback_pairs(self) -> None:
        assert Settings(generation_provider="google").fallback_provider() == "openai"
        assert Settings(generation_provider="openai").fallback_provider() == "google"
        assert Settings(generation_provider="mock").fallback_provider() is None

    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(ValidationError, match="GENERATION_PROVIDER"):
            Settings(generation_provider="midjourney")


class TestValidation:
    def test_zero_duration_rejected(self) -> None:
        with pytest.raises(ValidationError, match="VOTING_PHASE_DURATION_MS"):
            Settings(voting_phase_duration_ms=0)

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROMPT_PHASE_DURATION_MS", "1000")
        monkeypatch.setenv("POINTS_PER_WIN", "50")
        settings = Settings()
        assert settings.prompt_phase_duration_ms == 1000
        assert settings.points_per_win == 50
