"""Application context: every store and service the monitor runs with."""
import logging
import sqlite3
from dataclasses import dataclass
from typing import Iterable

from fastapi import Request

from config import MonitorConfig, SettingsStore
from db.history import HistoryStore
from db.store import AccountStore, StoreError
from monitor.core.events import EventFeed
from monitor.providers import ProviderRegistry, UsageProvider
from monitor.services.notification_service import FeedNotifier, NotificationEngine
from monitor.services.scheduler_service import Scheduler
from monitor.services.session_service import SessionStateTracker

logger = logging.getLogger(__name__)


@dataclass
class MonitorContext:
    config: MonitorConfig
    settings: SettingsStore
    accounts: AccountStore
    history: HistoryStore
    providers: ProviderRegistry
    feed: EventFeed
    sessions: SessionStateTracker
    notifications: NotificationEngine
    scheduler: Scheduler

    def init_storage(self):
        self.accounts.init_db()
        self.history.init_db()

    def startup_cleanup(self) -> int:
        """Apply the stored retention policy once if auto cleanup is on."""
        try:
            policy = self.history.get_retention_policy()
            if not policy.auto_cleanup:
                return 0
            removed = self.history.cleanup(policy)
        except (StoreError, sqlite3.Error) as e:
            logger.warning("Failed to run startup history cleanup: %s", e)
            return 0
        logger.info("Startup cleanup: removed %d old history entries", removed)
        return removed


def build_context(config: MonitorConfig, providers: Iterable[UsageProvider] = ()) -> MonitorContext:
    settings = SettingsStore(config.settings_path)
    accounts = AccountStore(config.db_path)
    history = HistoryStore(config.db_path)
    registry = ProviderRegistry(providers)
    feed = EventFeed()
    sessions = SessionStateTracker()
    notifications = NotificationEngine(FeedNotifier(feed), sink=feed)
    scheduler = Scheduler(
        settings=settings,
        accounts=accounts,
        history=history,
        providers=registry,
        sessions=sessions,
        notifications=notifications,
        sink=feed,
    )
    return MonitorContext(
        config=config,
        settings=settings,
        accounts=accounts,
        history=history,
        providers=registry,
        feed=feed,
        sessions=sessions,
        notifications=notifications,
        scheduler=scheduler,
    )


def get_context(request: Request) -> MonitorContext:
    return request.app.state.context
