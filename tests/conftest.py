from datetime import datetime, timedelta, timezone

import pytest

from config import Settings, SettingsStore
from db.history import HistoryStore
from db.models import Account, LimitReading, UsageSnapshot
from db.store import AccountStore
from monitor.core.events import EventSink
from monitor.providers import ProviderRegistry, UsageProvider
from monitor.services.notification_service import NotificationEngine, Notifier
from monitor.services.scheduler_service import Scheduler
from monitor.services.session_service import SessionStateTracker

BASE_TIME = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float):
        self.now += secs


class RecordingSink(EventSink):
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, event, payload=None):
        self.events.append((event, payload or {}))

    def of(self, event: str) -> list[dict]:
        return [p for e, p in self.events if e == event]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    def send(self, title, body):
        self.sent.append((title, body))
        return True

    def titles(self) -> list[str]:
        return [t for t, _ in self.sent]


def make_snapshot(
    utilization: float,
    account_id: str = "acc-1",
    account_name: str = "Work",
    provider: str = "fake",
    timestamp: datetime = BASE_TIME,
    resets_in: timedelta = timedelta(hours=3),
    limit_id: str = "five_hour",
) -> UsageSnapshot:
    return UsageSnapshot(
        provider=provider,
        account_id=account_id,
        account_name=account_name,
        timestamp=timestamp,
        limits=(
            LimitReading(
                id=limit_id,
                label="5-hour limit",
                utilization=utilization,
                resets_at=timestamp + resets_in,
            ),
        ),
    )


class FakeProvider(UsageProvider):
    """Returns scripted outcomes per account: a utilization float or an exception to raise."""

    id = "fake"
    name = "Fake"

    def __init__(self):
        self.outcomes: dict[str, list] = {}
        self.calls: list[str] = []
        self._seq = 0

    def script(self, account_id: str, *outcomes):
        self.outcomes[account_id] = list(outcomes)

    async def fetch_usage(self, account: Account) -> UsageSnapshot:
        self.calls.append(account.id)
        queue = self.outcomes.get(account.id) or [10.0]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        self._seq += 1
        return make_snapshot(
            outcome,
            account_id=account.id,
            account_name=account.name,
            timestamp=BASE_TIME + timedelta(minutes=self._seq),
        )

    def validate_credentials(self, credentials: dict) -> bool:
        return bool(credentials.get("session_key"))


class Harness:
    def __init__(self, tmp_path):
        db_path = str(tmp_path / "monitor_test.db")
        self.settings = SettingsStore(str(tmp_path / "settings.json"))
        self.settings.save(Settings(providers={"fake": True}))
        self.accounts = AccountStore(db_path)
        self.accounts.init_db()
        self.history = HistoryStore(db_path)
        self.provider = FakeProvider()
        self.sink = RecordingSink()
        self.notifier = RecordingNotifier()
        self.sessions = SessionStateTracker()
        self.clock = FakeClock(1_800_000_000.0)
        self.notifications = NotificationEngine(
            self.notifier,
            sink=self.sink,
            clock=lambda: BASE_TIME,
        )
        self.scheduler = Scheduler(
            settings=self.settings,
            accounts=self.accounts,
            history=self.history,
            providers=ProviderRegistry([self.provider]),
            sessions=self.sessions,
            notifications=self.notifications,
            sink=self.sink,
            clock=self.clock,
        )

    def add_account(self, name: str, credentials: dict = None) -> Account:
        return self.accounts.add_account(name, "fake", credentials or {"session_key": "sk-test"})


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


@pytest.fixture
def history_store(tmp_path):
    store = HistoryStore(str(tmp_path / "history_test.db"))
    store.init_db()
    return store
