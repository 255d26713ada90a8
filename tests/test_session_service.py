from monitor.errors import (
    CloudflareBlocked,
    HttpError,
    InvalidCredentials,
    MissingCredentials,
    ProviderRateLimited,
    SessionExpired,
)
from monitor.services.session_service import PAUSE_THRESHOLD, SessionStateTracker


def test_pauses_at_threshold():
    tracker = SessionStateTracker()
    for _ in range(PAUSE_THRESHOLD - 1):
        assert tracker.record_error("a", SessionExpired()).paused is False
    status = tracker.record_error("a", SessionExpired())

    assert status.paused is True
    assert status.error_count == PAUSE_THRESHOLD
    assert tracker.paused_accounts() == ["a"]


def test_paused_account_count_does_not_grow():
    tracker = SessionStateTracker()
    for _ in range(PAUSE_THRESHOLD + 2):
        tracker.record_error("a", InvalidCredentials("bad key"))
    assert tracker.error_count("a") == PAUSE_THRESHOLD


def test_transient_errors_leave_state_untouched():
    tracker = SessionStateTracker()
    tracker.record_error("a", SessionExpired())
    for error in (CloudflareBlocked(), ProviderRateLimited(), HttpError("timeout"), ValueError("x")):
        tracker.record_error("a", error)
    assert tracker.error_count("a") == 1


def test_missing_credentials_are_auth_class():
    tracker = SessionStateTracker(pause_threshold=1)
    assert tracker.record_error("a", MissingCredentials("session_key")).paused is True


def test_success_resets_to_clean_state():
    tracker = SessionStateTracker()
    tracker.record_error("a", SessionExpired())
    tracker.record_error("a", SessionExpired())

    status = tracker.record_success("a")

    assert status.to_dict() == {"account_id": "a", "valid": True, "error_count": 0, "paused": False}
    assert tracker.status("a").valid is True


def test_accounts_are_tracked_independently():
    tracker = SessionStateTracker()
    for _ in range(PAUSE_THRESHOLD):
        tracker.record_error("a", SessionExpired())
    tracker.record_error("b", SessionExpired())

    assert tracker.is_paused("a") is True
    assert tracker.is_paused("b") is False
    assert tracker.error_count("b") == 1
    assert tracker.any_paused() is True


def test_resume_clears_every_account():
    tracker = SessionStateTracker()
    for _ in range(PAUSE_THRESHOLD):
        tracker.record_error("a", SessionExpired())
        tracker.record_error("b", SessionExpired())
    tracker.record_error("c", SessionExpired())

    resumed = tracker.resume()

    assert sorted(resumed) == ["a", "b"]
    assert tracker.any_paused() is False
    assert tracker.error_count("c") == 0


def test_resume_with_nothing_paused():
    assert SessionStateTracker().resume() == []
