"""
Background usage polling.

One long-lived task wakes every second, detects system sleep by the gap
since its previous tick, and runs a fetch cycle when the refresh
interval has elapsed. A fetch cycle polls every enabled, unpaused
account one after another; the periodic loop and manual refreshes share
a single-flight gate, and a trigger that finds the gate taken is
dropped rather than queued.
"""
import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Optional

from config import Settings, SettingsStore
from db.history import HistoryStore
from db.models import ADAPTIVE_BANDS, ADAPTIVE_IDLE_INTERVAL, Account, UsageSnapshot
from db.store import AccountStore, StoreError
from monitor.core.events import (
    SCHEDULER_STATUS,
    SESSION_STATUS,
    SYSTEM_WAKE,
    USAGE_UPDATE,
    EventSink,
)
from monitor.errors import HttpError, InvalidCredentials, ProviderError, RefreshRateLimited
from monitor.providers import ProviderRegistry
from monitor.services.notification_service import NotificationEngine
from monitor.services.session_service import SessionStateTracker

# Minimum time between fetch cycles (rate limit protection)
MIN_REFRESH_INTERVAL_SECS = 10
# A tick gap larger than this means the machine was probably asleep
SLEEP_DETECTION_THRESHOLD_SECS = 30
TICK_SECS = 1
DEFAULT_INTERVAL_SECS = 300

logger = logging.getLogger(__name__)


def adaptive_interval(max_utilization: float) -> int:
    for lower_bound, interval in ADAPTIVE_BANDS:
        if max_utilization >= lower_bound:
            return interval
    return ADAPTIVE_IDLE_INTERVAL


class SchedulerState:
    def __init__(self, interval: int = DEFAULT_INTERVAL_SECS):
        self.running = False
        self.interval = interval
        self.last_fetch = 0.0           # unix seconds, 0 = never
        self.fetch_gate = asyncio.Lock()
        self._previous_lock = threading.Lock()
        self._previous: dict[str, UsageSnapshot] = {}

    def can_fetch(self, now: float) -> bool:
        if not self.last_fetch:
            return True
        return now - self.last_fetch >= MIN_REFRESH_INTERVAL_SECS

    def retry_after(self, now: float) -> float:
        return max(0.0, MIN_REFRESH_INTERVAL_SECS - (now - self.last_fetch))

    def get_previous(self, account_id: str) -> Optional[UsageSnapshot]:
        with self._previous_lock:
            return self._previous.get(account_id)

    def set_previous(self, account_id: str, snapshot: UsageSnapshot):
        with self._previous_lock:
            self._previous[account_id] = snapshot


class Scheduler:
    def __init__(
        self,
        settings: SettingsStore,
        accounts: AccountStore,
        history: HistoryStore,
        providers: ProviderRegistry,
        sessions: SessionStateTracker,
        notifications: NotificationEngine,
        sink: EventSink = None,
        state: SchedulerState = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.settings = settings
        self.accounts = accounts
        self.history = history
        self.providers = providers
        self.sessions = sessions
        self.notifications = notifications
        self.sink = sink or EventSink()
        self.state = state or SchedulerState()
        self.clock = clock
        self.monotonic = monotonic
        self.sleep = sleep
        self._task: Optional[asyncio.Task] = None

    # ── lifecycle ─────────────────────────────────────────────

    def start(self) -> bool:
        """Start the poll loop on the running event loop. No-op if already running.

        The first periodic fetch happens one full interval after start.
        """
        if self.state.running:
            logger.info("Scheduler already running")
            return False

        self.state.interval = max(self.settings.get().refresh_interval, MIN_REFRESH_INTERVAL_SECS)
        self.state.running = True
        logger.info("Starting background refresh scheduler (interval %ds)", self.state.interval)
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        self._emit_status()
        return True

    def stop(self) -> bool:
        """Ask the poll loop to exit at its next tick. An in-flight fetch is not interrupted."""
        if not self.state.running:
            logger.info("Scheduler not running")
            return False

        self.state.running = False
        logger.info("Stopping background refresh scheduler")
        self._emit_status()
        return True

    def set_interval(self, secs: int) -> int:
        interval = max(int(secs), MIN_REFRESH_INTERVAL_SECS)
        self.state.interval = interval
        logger.info("Updated refresh interval to %d seconds", interval)
        self._emit_status()
        return interval

    async def force_refresh(self):
        """Run a fetch cycle now. Raises RefreshRateLimited if the last fetch was too recent."""
        now = self.clock()
        if not self.state.can_fetch(now):
            logger.warning("Rate limited: too soon since last fetch")
            raise RefreshRateLimited(self.state.retry_after(now))
        await self.fetch_cycle()

    async def resume(self) -> dict:
        """Clear pause and error state for all accounts, then refresh."""
        resumed = self.sessions.resume()
        for account_id in resumed:
            self._emit(SESSION_STATUS, self.sessions.status(account_id).to_dict())
        refreshed = True
        try:
            await self.force_refresh()
        except RefreshRateLimited as e:
            logger.info("Resume refresh deferred, retry in %.0fs", e.retry_after)
            refreshed = False
        return {"resumed": resumed, "refreshed": refreshed}

    def get_status(self) -> dict:
        return {
            "running": self.state.running,
            "interval": self.state.interval,
            "last_fetch": self.state.last_fetch or None,
        }

    def get_session_status(self) -> dict:
        return {
            "any_paused": self.sessions.any_paused(),
            "paused_accounts": self.sessions.paused_accounts(),
        }

    async def wait_stopped(self):
        if self._task is not None:
            await self._task

    # ── loop ──────────────────────────────────────────────────

    async def _run_loop(self):
        last_check = last_tick = self.monotonic()
        me = asyncio.current_task()

        # a loop superseded by a later start() exits at its next tick
        while self.state.running and self._task is me:
            now = self.monotonic()
            tick_gap = now - last_tick

            if tick_gap > SLEEP_DETECTION_THRESHOLD_SECS:
                logger.info("Detected system wake (%.0fs gap), refreshing immediately", tick_gap)
                await self.fetch_cycle()
                last_check = self.monotonic()
                self._emit(SYSTEM_WAKE, {})
            elif now - last_check >= self.state.interval:
                await self.fetch_cycle()
                last_check = self.monotonic()

            last_tick = self.monotonic()
            await self.sleep(TICK_SECS)

        logger.info("Scheduler loop ended")

    async def fetch_cycle(self) -> bool:
        """Poll all accounts once. Returns False when skipped (gate busy or rate limited)."""
        gate = self.state.fetch_gate
        if gate.locked():
            logger.debug("Fetch already in progress, skipping")
            return False

        async with gate:
            now = self.clock()
            if not self.state.can_fetch(now):
                logger.debug("Rate limited, skipping fetch")
                return False
            self.state.last_fetch = now
            logger.info("Scheduler fetching usage data")
            try:
                await self._poll_accounts()
            except Exception:
                logger.exception("Unexpected error during fetch cycle")
        return True

    async def _poll_accounts(self):
        settings = self.settings.get()
        max_utilization: Optional[float] = None

        for provider_id in self.providers.ids():
            if not settings.provider_enabled(provider_id):
                continue
            try:
                accounts = self.accounts.list_accounts(provider_id)
            except StoreError as e:
                logger.warning("Failed to list %s accounts: %s", provider_id, e)
                continue

            for account in accounts:
                if self.sessions.is_paused(account.id):
                    logger.debug("Skipping paused account %s", account.name)
                    continue
                snapshot = await self._fetch_account(account, settings)
                if snapshot is not None:
                    peak = snapshot.max_utilization()
                    max_utilization = peak if max_utilization is None else max(max_utilization, peak)

        if settings.refresh_mode == "adaptive" and max_utilization is not None:
            self._adjust_interval(max_utilization)

    async def _fetch_account(self, account: Account, settings: Settings) -> Optional[UsageSnapshot]:
        provider = self.providers.get(account.provider)
        try:
            if not provider.validate_credentials(account.credentials):
                raise InvalidCredentials("credentials are incomplete")
            snapshot = await provider.fetch_usage(account)
        except ProviderError as e:
            self._handle_failure(account, e, settings)
            return None
        except Exception as e:
            self._handle_failure(account, HttpError(str(e)), settings)
            return None

        self._handle_success(account, snapshot, settings)
        return snapshot

    def _handle_success(self, account: Account, snapshot: UsageSnapshot, settings: Settings):
        had_errors = self.sessions.error_count(account.id) > 0
        status = self.sessions.record_success(account.id)
        if had_errors:
            self._emit(SESSION_STATUS, status.to_dict())

        previous = self.state.get_previous(account.id)
        try:
            self.notifications.process(snapshot, previous, settings.notifications)
        except Exception:
            logger.exception("Notification processing failed for %s", account.name)

        try:
            self.history.append(snapshot)
        except StoreError as e:
            logger.warning("Failed to save usage to history: %s", e)

        self.state.set_previous(account.id, snapshot)
        self._emit(
            USAGE_UPDATE,
            {
                "provider": account.provider,
                "account_id": account.id,
                "data": snapshot.to_dict(),
                "error": None,
            },
        )

    def _handle_failure(self, account: Account, error: ProviderError, settings: Settings):
        logger.error("Failed to fetch usage for %s (%s): %s", account.name, account.provider, error)
        status = self.sessions.record_error(account.id, error)
        if error.auth_class:
            self.notifications.notify_session_expired(account.id, account.name, settings.notifications)
            self._emit(SESSION_STATUS, status.to_dict())

        self._emit(
            USAGE_UPDATE,
            {
                "provider": account.provider,
                "account_id": account.id,
                "data": None,
                "error": str(error),
            },
        )

    def _adjust_interval(self, max_utilization: float):
        new_interval = adaptive_interval(max_utilization)
        current = self.state.interval
        if new_interval == current:
            return
        logger.info(
            "Adaptive refresh: adjusting interval from %ds to %ds (usage: %.0f%%)",
            current,
            new_interval,
            max_utilization,
        )
        self.state.interval = new_interval
        self._emit_status()

    # ── events ────────────────────────────────────────────────

    def _emit_status(self):
        running = self.state.running
        self._emit(
            SCHEDULER_STATUS,
            {
                "running": running,
                "interval": self.state.interval,
                "next_refresh": self.state.interval if running else None,
            },
        )

    def _emit(self, event: str, payload: dict):
        try:
            self.sink.publish(event, payload)
        except Exception as e:
            logger.warning("Failed to publish %s event: %s", event, e)
