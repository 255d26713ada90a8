"""
Usage alerts: threshold crossings, detected resets and imminent resets.

Alerts are deduplicated per (account, limit, threshold) and per
(account, limit) for reset warnings. An alert suppressed by
do-not-disturb is not marked as sent, so it fires again on a later
poll once the quiet window is over and the condition still holds.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from config import NotificationSettings
from db.models import RESET_CLEAR_THRESHOLDS, LimitReading, UsageSnapshot
from monitor.core.events import NOTIFICATION, USAGE_RESET, EventSink

# A drop this large from a previously high reading is treated as a reset
RESET_MIN_PREVIOUS = 50
RESET_MIN_DROP = 40

IMMINENT_RESET_WINDOW = timedelta(hours=1)
IMMINENT_RESET_MIN_PERCENT = 75

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    return datetime.now().astimezone()


# ── delivery ──────────────────────────────────────────────────


class Notifier:
    def send(self, title: str, body: str) -> bool:
        raise NotImplementedError


class LogNotifier(Notifier):
    def send(self, title: str, body: str) -> bool:
        logger.info("Notification: %s - %s", title, body)
        return True


class FeedNotifier(Notifier):
    """Delivers notifications as events on the UI feed."""

    def __init__(self, sink: EventSink):
        self.sink = sink

    def send(self, title: str, body: str) -> bool:
        self.sink.publish(NOTIFICATION, {"title": title, "body": body})
        return True


@dataclass(frozen=True)
class Alert:
    kind: str                   # 'threshold' | 'reset' | 'reset_soon' | 'session_expired'
    account_id: str
    title: str
    body: str
    limit_id: Optional[str] = None
    threshold: Optional[int] = None


# ── dedup state ───────────────────────────────────────────────


class NotificationState:
    def __init__(self):
        self._threshold_lock = threading.Lock()
        self._sent_thresholds: set[tuple[str, str, int]] = set()
        self._warning_lock = threading.Lock()
        self._sent_reset_warnings: set[tuple[str, str]] = set()

    def was_threshold_notified(self, account_id: str, limit_id: str, threshold: int) -> bool:
        with self._threshold_lock:
            return (account_id, limit_id, threshold) in self._sent_thresholds

    def mark_threshold_notified(self, account_id: str, limit_id: str, threshold: int):
        with self._threshold_lock:
            self._sent_thresholds.add((account_id, limit_id, threshold))

    def clear_threshold(self, account_id: str, limit_id: str, threshold: int):
        with self._threshold_lock:
            self._sent_thresholds.discard((account_id, limit_id, threshold))

    def clear_thresholds_above(self, account_id: str, limit_id: str, percent: int):
        with self._threshold_lock:
            self._sent_thresholds = {
                key
                for key in self._sent_thresholds
                if not (key[0] == account_id and key[1] == limit_id and key[2] > percent)
            }

    def was_reset_warning_sent(self, account_id: str, limit_id: str) -> bool:
        with self._warning_lock:
            return (account_id, limit_id) in self._sent_reset_warnings

    def mark_reset_warning_sent(self, account_id: str, limit_id: str):
        with self._warning_lock:
            self._sent_reset_warnings.add((account_id, limit_id))

    def clear_reset_warning(self, account_id: str, limit_id: str):
        with self._warning_lock:
            self._sent_reset_warnings.discard((account_id, limit_id))


# ── do not disturb ────────────────────────────────────────────


def parse_hhmm(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%H:%M").time()
    except ValueError:
        logger.warning("Ignoring invalid DND time %r", value)
        return None


def is_dnd_active(settings: NotificationSettings, now: time) -> bool:
    if not settings.dnd_enabled:
        return False
    start = parse_hhmm(settings.dnd_start_time)
    end = parse_hhmm(settings.dnd_end_time)
    if start is None or end is None:
        return False
    if start > end:
        # window spans midnight, e.g. 22:00-08:00
        return now >= start or now < end
    return start <= now < end


def _prefixed(account_name: str, text: str) -> str:
    if account_name and account_name != "Default":
        return f"[{account_name}] {text}"
    return text


# ── engine ────────────────────────────────────────────────────


class NotificationEngine:
    def __init__(
        self,
        notifier: Notifier,
        sink: EventSink = None,
        state: NotificationState = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.notifier = notifier
        self.sink = sink or EventSink()
        self.state = state or NotificationState()
        self.clock = clock

    def process(
        self,
        usage: UsageSnapshot,
        previous: Optional[UsageSnapshot],
        settings: NotificationSettings,
    ) -> list[Alert]:
        """Evaluate a fresh snapshot and deliver any due alerts. Returns the alerts delivered."""
        if not settings.enabled:
            return []

        delivered: list[Alert] = []
        for limit in usage.limits:
            percent = int(limit.utilization)
            self.state.clear_thresholds_above(usage.account_id, limit.id, percent)
            delivered += self._check_thresholds(usage, limit, settings)
            if settings.notify_on_reset:
                delivered += self._check_reset(usage, limit, previous, settings)

        if settings.notify_on_reset:
            for limit in usage.limits:
                delivered += self._check_upcoming_reset(usage, limit, settings)
        return delivered

    def notify_session_expired(self, account_id: str, account_name: str, settings: NotificationSettings) -> bool:
        if not settings.enabled or not settings.notify_on_expiry:
            return False
        alert = Alert(
            kind="session_expired",
            account_id=account_id,
            title="Session Expiring",
            body=_prefixed(
                account_name,
                "Your session may have expired. Please refresh your credentials.",
            ),
        )
        return self._send(alert, settings)

    def _check_thresholds(self, usage: UsageSnapshot, limit: LimitReading, settings) -> list[Alert]:
        percent = int(limit.utilization)
        sent = []
        for threshold in sorted(settings.thresholds):
            if percent < threshold:
                break
            if self.state.was_threshold_notified(usage.account_id, limit.id, threshold):
                continue
            alert = Alert(
                kind="threshold",
                account_id=usage.account_id,
                limit_id=limit.id,
                threshold=threshold,
                title=f"{threshold}% Usage Alert",
                body=_prefixed(usage.account_name, f"{limit.label} is at {min(percent, 100)}% usage"),
            )
            if self._send(alert, settings):
                self.state.mark_threshold_notified(usage.account_id, limit.id, threshold)
                sent.append(alert)
        return sent

    def _check_reset(self, usage, limit: LimitReading, previous, settings) -> list[Alert]:
        if previous is None:
            return []
        prev_limit = previous.limit(limit.id)
        if prev_limit is None:
            return []

        prev_percent = int(prev_limit.utilization)
        percent = int(limit.utilization)
        if prev_percent < RESET_MIN_PREVIOUS or percent >= prev_percent - RESET_MIN_DROP:
            return []

        alert = Alert(
            kind="reset",
            account_id=usage.account_id,
            limit_id=limit.id,
            title="Usage Reset",
            body=_prefixed(usage.account_name, f"{limit.label} has reset! Now at {percent}%"),
        )
        delivered = self._send(alert, settings)

        self.state.clear_reset_warning(usage.account_id, limit.id)
        for threshold in RESET_CLEAR_THRESHOLDS:
            self.state.clear_threshold(usage.account_id, limit.id, threshold)
        self.sink.publish(USAGE_RESET, {"limit_id": limit.id, "account_id": usage.account_id})
        logger.info("Detected reset of %s (%s): %d%% -> %d%%", limit.id, usage.account_name, prev_percent, percent)
        return [alert] if delivered else []

    def _check_upcoming_reset(self, usage, limit: LimitReading, settings) -> list[Alert]:
        remaining = limit.resets_at - self.clock()
        percent = int(limit.utilization)
        if not (timedelta(0) < remaining <= IMMINENT_RESET_WINDOW):
            return []
        if percent < IMMINENT_RESET_MIN_PERCENT:
            return []
        if self.state.was_reset_warning_sent(usage.account_id, limit.id):
            return []

        minutes = int(remaining.total_seconds() // 60)
        alert = Alert(
            kind="reset_soon",
            account_id=usage.account_id,
            limit_id=limit.id,
            title="Limit Reset Soon",
            body=_prefixed(
                usage.account_name,
                f"{limit.label} will reset in {minutes} minutes (currently at {percent}%)",
            ),
        )
        if not self._send(alert, settings):
            return []
        self.state.mark_reset_warning_sent(usage.account_id, limit.id)
        return [alert]

    def _send(self, alert: Alert, settings: NotificationSettings) -> bool:
        if is_dnd_active(settings, self.clock().time()):
            logger.debug("Notification suppressed (DND active): %s - %s", alert.title, alert.body)
            return False
        try:
            delivered = self.notifier.send(alert.title, alert.body)
        except Exception as e:
            logger.error("Failed to send notification: %s", e)
            return False
        if delivered:
            logger.info("Sent notification: %s - %s", alert.title, alert.body)
        return delivered
