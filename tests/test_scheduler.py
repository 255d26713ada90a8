import asyncio

import pytest

from conftest import FakeClock
from config import Settings
from monitor.core.events import SCHEDULER_STATUS, SESSION_STATUS, SYSTEM_WAKE, USAGE_UPDATE
from monitor.errors import (
    CloudflareBlocked,
    ParseError,
    RefreshRateLimited,
    SessionExpired,
)
from monitor.services.scheduler_service import (
    MIN_REFRESH_INTERVAL_SECS,
    adaptive_interval,
)


def _cycle(harness):
    """Run one fetch cycle, then move the clock past the rate-limit floor."""
    ran = asyncio.run(harness.scheduler.fetch_cycle())
    harness.clock.advance(MIN_REFRESH_INTERVAL_SECS)
    return ran


@pytest.mark.parametrize("requested,expected", [(0, 10), (3, 10), (10, 10), (45, 45), (900, 900)])
def test_set_interval_respects_floor(harness, requested, expected):
    assert harness.scheduler.set_interval(requested) == expected
    assert harness.scheduler.get_status()["interval"] == expected


@pytest.mark.parametrize(
    "utilization,interval",
    [(95, 60), (90.0, 60), (89.9, 180), (80, 180), (75, 180), (60, 300), (50, 300), (10, 600), (0, 600)],
)
def test_adaptive_interval_bands(utilization, interval):
    assert adaptive_interval(utilization) == interval


def test_force_refresh_is_rate_limited(harness):
    harness.add_account("Work")

    asyncio.run(harness.scheduler.force_refresh())
    harness.clock.advance(MIN_REFRESH_INTERVAL_SECS - 1)
    with pytest.raises(RefreshRateLimited) as exc_info:
        asyncio.run(harness.scheduler.force_refresh())
    assert exc_info.value.retry_after == pytest.approx(1)

    harness.clock.advance(1)
    asyncio.run(harness.scheduler.force_refresh())
    assert len(harness.provider.calls) == 2


def test_fetch_cycle_skips_when_gate_is_held(harness):
    harness.add_account("Work")

    async def run():
        async with harness.scheduler.state.fetch_gate:
            return await harness.scheduler.fetch_cycle()

    assert asyncio.run(run()) is False
    assert harness.provider.calls == []
    assert harness.scheduler.state.fetch_gate.locked() is False


def test_gate_released_after_internal_fault(harness, monkeypatch):
    harness.add_account("Work")

    def broken_settings():
        raise RuntimeError("settings exploded")

    monkeypatch.setattr(harness.scheduler.settings, "get", broken_settings)
    assert _cycle(harness) is True
    assert harness.scheduler.state.fetch_gate.locked() is False


def test_auth_failures_pause_account(harness):
    account = harness.add_account("Work")
    harness.provider.script(account.id, SessionExpired())

    for _ in range(3):
        _cycle(harness)

    assert harness.sessions.is_paused(account.id) is True
    assert harness.sessions.error_count(account.id) == 3
    assert harness.scheduler.get_session_status()["any_paused"] is True

    _cycle(harness)
    assert harness.provider.calls == [account.id] * 3
    assert harness.sessions.error_count(account.id) == 3
    # every auth failure triggers an expiry notice
    assert harness.notifier.titles().count("Session Expiring") == 3
    assert harness.sink.of(SESSION_STATUS)[-1]["paused"] is True


def test_only_active_accounts_are_polled(harness):
    paused = harness.add_account("Expired")
    active = harness.add_account("Active")
    harness.provider.script(paused.id, SessionExpired())
    harness.provider.script(active.id, 20.0)

    for _ in range(3):
        _cycle(harness)
    harness.provider.calls.clear()

    _cycle(harness)
    assert harness.provider.calls == [active.id]


def test_transient_errors_do_not_count(harness):
    account = harness.add_account("Work")
    harness.provider.script(account.id, CloudflareBlocked(), ParseError("bad json"), RuntimeError("boom"))

    for _ in range(3):
        _cycle(harness)

    assert harness.sessions.error_count(account.id) == 0
    assert harness.sessions.is_paused(account.id) is False
    errors = [p["error"] for p in harness.sink.of(USAGE_UPDATE)]
    assert all(errors)
    assert "Cloudflare" in errors[0]
    assert "boom" in errors[2]


def test_missing_credentials_count_as_auth_errors(harness):
    account = harness.add_account("Broken", credentials={"org_id": "org-1"})
    for _ in range(3):
        _cycle(harness)
    assert harness.sessions.is_paused(account.id) is True
    assert harness.provider.calls == []


def test_success_clears_error_count(harness):
    account = harness.add_account("Work")
    harness.provider.script(account.id, SessionExpired(), SessionExpired(), 30.0)

    _cycle(harness)
    _cycle(harness)
    assert harness.sessions.error_count(account.id) == 2

    _cycle(harness)
    assert harness.sessions.error_count(account.id) == 0
    assert harness.sink.of(SESSION_STATUS)[-1] == {
        "account_id": account.id,
        "valid": True,
        "error_count": 0,
        "paused": False,
    }


def test_one_failure_does_not_abort_cycle(harness):
    failing = harness.add_account("Failing")
    healthy = harness.add_account("Healthy")
    harness.provider.script(failing.id, CloudflareBlocked())
    harness.provider.script(healthy.id, 42.0)

    _cycle(harness)

    assert harness.provider.calls == [failing.id, healthy.id]
    assert len(harness.history.query()) == 1


def test_success_records_history_and_updates(harness):
    account = harness.add_account("Work")
    harness.provider.script(account.id, 55.0)

    _cycle(harness)

    entries = harness.history.query(account_id=account.id)
    assert len(entries) == 1
    assert entries[0].limits[0].utilization == 55.0
    update = harness.sink.of(USAGE_UPDATE)[-1]
    assert update["error"] is None
    assert update["data"]["limits"][0]["utilization"] == 55.0
    assert harness.scheduler.state.get_previous(account.id) is not None
    assert harness.notifier.titles() == ["50% Usage Alert"]


def test_history_failure_does_not_abort_cycle(harness, monkeypatch):
    from db.store import StoreError

    account = harness.add_account("Work")

    def broken_append(snapshot):
        raise StoreError("disk full")

    monkeypatch.setattr(harness.history, "append", broken_append)
    _cycle(harness)

    assert harness.scheduler.state.get_previous(account.id) is not None
    assert harness.sink.of(USAGE_UPDATE)[-1]["error"] is None


def test_reset_detected_across_cycles(harness):
    account = harness.add_account("Work")
    harness.provider.script(account.id, 85.0, 10.0)

    _cycle(harness)
    _cycle(harness)

    assert "Usage Reset" in harness.notifier.titles()


def test_adaptive_interval_uses_run_maximum(harness):
    low = harness.add_account("Low")
    high = harness.add_account("High")
    harness.provider.script(low.id, 20.0)
    harness.provider.script(high.id, 92.0)

    _cycle(harness)
    assert harness.scheduler.state.interval == 60
    statuses = harness.sink.of(SCHEDULER_STATUS)
    assert statuses[-1]["interval"] == 60

    # same band again: no further status event
    _cycle(harness)
    assert len(harness.sink.of(SCHEDULER_STATUS)) == len(statuses)


def test_adaptive_interval_unchanged_when_every_fetch_fails(harness):
    account = harness.add_account("Work")
    harness.provider.script(account.id, CloudflareBlocked())
    harness.scheduler.set_interval(120)

    _cycle(harness)
    assert harness.scheduler.state.interval == 120


def test_fixed_mode_keeps_interval(harness):
    harness.settings.save(Settings(refresh_mode="fixed", providers={"fake": True}))
    account = harness.add_account("Work")
    harness.provider.script(account.id, 95.0)
    harness.scheduler.set_interval(120)

    _cycle(harness)
    assert harness.scheduler.state.interval == 120


def test_disabled_provider_is_not_polled(harness):
    harness.settings.save(Settings(providers={"fake": False}))
    harness.add_account("Work")

    _cycle(harness)
    assert harness.provider.calls == []


def test_resume_clears_all_accounts_and_refreshes(harness):
    first = harness.add_account("First")
    second = harness.add_account("Second")
    harness.provider.script(first.id, SessionExpired(), SessionExpired(), SessionExpired(), 10.0)
    harness.provider.script(second.id, SessionExpired(), SessionExpired(), SessionExpired(), 10.0)
    for _ in range(3):
        _cycle(harness)
    assert harness.sessions.any_paused() is True

    result = asyncio.run(harness.scheduler.resume())

    assert sorted(result["resumed"]) == sorted([first.id, second.id])
    assert result["refreshed"] is True
    assert harness.sessions.any_paused() is False
    assert harness.sessions.error_count(first.id) == 0
    assert harness.provider.calls[-2:] == [first.id, second.id]


def test_resume_within_rate_limit_still_clears_state(harness):
    account = harness.add_account("Work")
    harness.provider.script(account.id, SessionExpired())
    for _ in range(3):
        _cycle(harness)
    asyncio.run(harness.scheduler.fetch_cycle())

    result = asyncio.run(harness.scheduler.resume())
    assert result["refreshed"] is False
    assert harness.sessions.is_paused(account.id) is False


def test_start_stop_are_idempotent(harness):
    async def run():
        assert harness.scheduler.start() is True
        assert harness.scheduler.start() is False
        assert harness.scheduler.get_status()["running"] is True
        assert harness.scheduler.stop() is True
        assert harness.scheduler.stop() is False
        await harness.scheduler.wait_stopped()

    asyncio.run(run())
    assert harness.scheduler.get_status()["running"] is False


def test_loop_detects_wake_and_fetches(harness):
    account = harness.add_account("Work")
    monotonic = FakeClock(5_000.0)
    harness.scheduler.monotonic = monotonic
    sleeps = []

    async def fake_sleep(secs):
        sleeps.append(secs)
        if len(sleeps) == 1:
            # machine suspended for two minutes
            monotonic.advance(120)
            harness.clock.advance(120)
        else:
            harness.scheduler.stop()
        await asyncio.sleep(0)

    harness.scheduler.sleep = fake_sleep

    async def run():
        harness.scheduler.start()
        await harness.scheduler.wait_stopped()

    asyncio.run(run())

    # the first tick only arms the interval; the wake forces the fetch
    assert harness.provider.calls == [account.id]
    assert len(harness.sink.of(SYSTEM_WAKE)) == 1


def test_loop_waits_for_interval(harness):
    harness.settings.save(Settings(refresh_mode="fixed", providers={"fake": True}))
    harness.add_account("Work")
    monotonic = FakeClock(5_000.0)
    harness.scheduler.monotonic = monotonic
    ticks = []

    async def fake_sleep(secs):
        ticks.append(secs)
        monotonic.advance(secs)
        harness.clock.advance(secs)
        if len(ticks) >= 20:
            harness.scheduler.stop()
        await asyncio.sleep(0)

    harness.scheduler.sleep = fake_sleep

    async def run():
        harness.scheduler.start()
        harness.scheduler.set_interval(10)
        await harness.scheduler.wait_stopped()

    asyncio.run(run())

    # nothing on the first tick, then one fetch after ten one-second ticks
    assert len(harness.provider.calls) == 1
    assert len(harness.sink.of(SYSTEM_WAKE)) == 0


def test_restart_within_one_tick_leaves_a_single_loop(harness):
    async def yield_only(secs):
        await asyncio.sleep(0)

    harness.scheduler.sleep = yield_only
    harness.scheduler.monotonic = FakeClock(5_000.0)

    async def run():
        harness.scheduler.start()
        first = harness.scheduler._task
        await asyncio.sleep(0)

        harness.scheduler.stop()
        harness.scheduler.start()
        second = harness.scheduler._task
        for _ in range(50):
            await asyncio.sleep(0)

        assert first is not second
        assert first.done() is True
        assert second.done() is False

        harness.scheduler.stop()
        await harness.scheduler.wait_stopped()

    asyncio.run(run())
    assert harness.scheduler.get_status()["running"] is False
