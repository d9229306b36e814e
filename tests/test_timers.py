"""Tests for the timer facility and named actions."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from promptparty.core.actions import ACTIONS, run_action
from promptparty.core.context import GameContext
from promptparty.core.timers import APSchedulerTimers, ManualTimers


class TestAPSchedulerTimers:
    async def test_runs_named_action(self):
        calls = []

        async def runner(action, payload):
            calls.append((action, payload))

        timers = APSchedulerTimers()
        timers.bind(runner)
        timers.start()
        try:
            timers.run_after(10, "advance_phase", round_id="r-1", expected_status="prompt")
            await asyncio.sleep(0.3)
        finally:
            timers.shutdown()

        assert calls == [("advance_phase", {"round_id": "r-1", "expected_status": "prompt"})]

    async def test_run_at_past_time_still_fires(self):
        calls = []

        async def runner(action, payload):
            calls.append(action)

        timers = APSchedulerTimers()
        timers.bind(runner)
        timers.start()
        try:
            timers.run_at(datetime.now(UTC) - timedelta(seconds=5), "end_game", room_id="x")
            await asyncio.sleep(0.3)
        finally:
            timers.shutdown()

        assert calls == ["end_game"]

    async def test_failed_delivery_is_retried(self):
        attempts = []

        async def flaky(action, payload):
            attempts.append(action)
            if len(attempts) == 1:
                raise RuntimeError("database is locked")

        timers = APSchedulerTimers(retry_delay_ms=10, max_deliveries=3)
        timers.bind(flaky)
        timers.start()
        try:
            timers.run_after(0, "start_next_round", room_id="room-1")
            await asyncio.sleep(0.5)
        finally:
            timers.shutdown()

        assert attempts == ["start_next_round", "start_next_round"]

    async def test_gives_up_after_max_deliveries(self, caplog: pytest.LogCaptureFixture):
        attempts = []

        async def broken(action, payload):
            attempts.append(action)
            raise RuntimeError("boom")

        timers = APSchedulerTimers(retry_delay_ms=10, max_deliveries=2)
        timers.bind(broken)
        timers.start()
        try:
            timers.run_after(0, "end_game", room_id="room-1")
            await asyncio.sleep(0.5)
        finally:
            timers.shutdown()

        assert len(attempts) == 2
        assert "timer_action_abandoned" in caplog.text


class TestManualTimers:
    async def test_fires_earliest_first(self):
        now = datetime.now(UTC)
        timers = ManualTimers(clock=lambda: now)
        fired = []

        async def runner(action, payload):
            fired.append(action)

        timers.run_after(5_000, "end_game", room_id="r")
        timers.run_at(now + timedelta(seconds=1), "advance_phase", round_id="a")
        timers.run_after(2_000, "verify_and_dispatch", round_id="a", attempt=0)

        assert timers.pending_actions() == ["advance_phase", "verify_and_dispatch", "end_game"]
        await timers.run_all(runner)
        assert fired == ["advance_phase", "verify_and_dispatch", "end_game"]
        assert timers.pop() is None

    async def test_same_time_keeps_arm_order(self):
        now = datetime.now(UTC)
        timers = ManualTimers(clock=lambda: now)
        timers.run_after(0, "first")
        timers.run_after(0, "second")
        assert timers.pending_actions() == ["first", "second"]

    async def test_naive_datetimes_treated_as_utc(self):
        now = datetime.now(UTC)
        timers = ManualTimers(clock=lambda: now)
        timers.run_at(now.replace(tzinfo=None) + timedelta(seconds=1), "late")
        timers.run_after(500, "early")
        assert timers.pending_actions() == ["early", "late"]


class TestActions:
    def test_registry(self):
        assert set(ACTIONS) == {
            "advance_phase",
            "verify_and_dispatch",
            "start_next_round",
            "end_game",
        }

    async def test_unknown_action(self, game: GameContext):
        with pytest.raises(ValueError, match="Unknown timer action"):
            await run_action(game, "explode", {})

    async def test_dispatches_payload(self, game: GameContext):
        # Unknown round: advance_phase logs and does nothing
        await run_action(game, "advance_phase", {"round_id": "missing"})
