"""Usage provider interface, registry and connection testing."""
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Optional

from db.models import Account, UsageSnapshot
from monitor.errors import (
    CloudflareBlocked,
    HttpError,
    InvalidCredentials,
    MissingCredentials,
    ParseError,
    ProviderError,
    ProviderRateLimited,
    SessionExpired,
)

logger = logging.getLogger(__name__)


class UsageProvider(ABC):
    """A third-party usage-limit API.

    Implementations must bound their own network calls with a timeout and
    report failures by raising a ProviderError subclass.
    """

    id: str = ""
    name: str = ""

    @abstractmethod
    async def fetch_usage(self, account: Account) -> UsageSnapshot:
        ...

    @abstractmethod
    def validate_credentials(self, credentials: dict) -> bool:
        ...


class ProviderRegistry:
    def __init__(self, providers=()):
        self._providers: dict[str, UsageProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: UsageProvider):
        self._providers[provider.id] = provider

    def get(self, provider_id: str) -> Optional[UsageProvider]:
        return self._providers.get(provider_id)

    def ids(self) -> list[str]:
        return list(self._providers)


@dataclass
class ConnectionTestResult:
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    hint: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


_HINTS = {
    SessionExpired: "Please sign in again and copy a fresh session key.",
    CloudflareBlocked: "This may be a temporary issue. Please try again in a few minutes.",
    ProviderRateLimited: "Please wait a moment before trying again.",
    MissingCredentials: "Please provide all required credentials.",
    InvalidCredentials: "Please check your credentials and try again.",
}


def _hint_for(error: ProviderError) -> str:
    if isinstance(error, HttpError):
        if "404" in error.detail:
            return "The organization ID may be incorrect."
        if "network" in error.detail or "connect" in error.detail:
            return "Please check your internet connection."
        return "An unexpected error occurred. Please try again."
    if isinstance(error, ParseError):
        return f"The API response format was unexpected: {error.detail}"
    return _HINTS.get(type(error), "Please try again.")


async def check_connection(registry: ProviderRegistry, account: Account) -> ConnectionTestResult:
    """Validate an account's credentials and try a single fetch."""
    provider = registry.get(account.provider)
    if provider is None:
        return ConnectionTestResult(
            success=False,
            error_code="PROVIDER_UNAVAILABLE",
            error_message=f"Provider '{account.provider}' is not available",
            hint="This provider is currently blocked or not supported.",
        )

    if not provider.validate_credentials(account.credentials):
        return ConnectionTestResult(
            success=False,
            error_code="INVALID_FORMAT",
            error_message="Credentials format is invalid",
            hint="Please ensure all required credential fields are provided.",
        )

    try:
        await provider.fetch_usage(account)
    except ProviderError as e:
        logger.info("Connection test failed for %s (%s): %s", account.name, account.id, e)
        return ConnectionTestResult(
            success=False,
            error_code=e.code,
            error_message=str(e),
            hint=_hint_for(e),
        )
    return ConnectionTestResult(success=True)
