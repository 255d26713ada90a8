"""Per-account session health: consecutive auth failures and pausing."""
import logging
import threading
from dataclasses import dataclass, replace

from monitor.errors import is_auth_error

# Consecutive authentication-class failures before an account is paused
PAUSE_THRESHOLD = 3

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionStatus:
    account_id: str
    error_count: int = 0
    paused: bool = False

    @property
    def valid(self) -> bool:
        return self.error_count == 0

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "valid": self.valid,
            "error_count": self.error_count,
            "paused": self.paused,
        }


class SessionStateTracker:
    """
    Tracks fetch outcomes per account.

    Success always returns the account to a clean state. Only
    authentication-class failures are counted; once the count reaches
    the pause threshold the account is paused until resume() is called.
    Transient failures leave the state untouched.
    """

    def __init__(self, pause_threshold: int = PAUSE_THRESHOLD):
        self.pause_threshold = pause_threshold
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionStatus] = {}

    def record_success(self, account_id: str) -> SessionStatus:
        status = SessionStatus(account_id)
        with self._lock:
            previous = self._sessions.pop(account_id, None)
        if previous and previous.paused:
            logger.info("Account %s recovered from paused state", account_id)
        return status

    def record_error(self, account_id: str, error: BaseException) -> SessionStatus:
        with self._lock:
            current = self._sessions.get(account_id, SessionStatus(account_id))
            if not is_auth_error(error) or current.paused:
                return current
            count = current.error_count + 1
            updated = replace(current, error_count=count, paused=count >= self.pause_threshold)
            self._sessions[account_id] = updated

        if updated.paused:
            logger.warning(
                "Account %s paused after %d consecutive session errors", account_id, count
            )
        return updated

    def resume(self) -> list[str]:
        """Clear pause and error state for every account. Returns the ids that were paused."""
        with self._lock:
            resumed = [s.account_id for s in self._sessions.values() if s.paused]
            self._sessions.clear()
        if resumed:
            logger.info("Resumed %d paused account(s)", len(resumed))
        return resumed

    def status(self, account_id: str) -> SessionStatus:
        with self._lock:
            return self._sessions.get(account_id, SessionStatus(account_id))

    def is_paused(self, account_id: str) -> bool:
        return self.status(account_id).paused

    def error_count(self, account_id: str) -> int:
        return self.status(account_id).error_count

    def any_paused(self) -> bool:
        with self._lock:
            return any(s.paused for s in self._sessions.values())

    def paused_accounts(self) -> list[str]:
        with self._lock:
            return [s.account_id for s in self._sessions.values() if s.paused]
