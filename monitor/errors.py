"""Provider and scheduler error types."""


class ProviderError(Exception):
    code = "PROVIDER_ERROR"
    # Authentication-class failures count toward pausing the account
    auth_class = False
    default_message = "Provider error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)


class SessionExpired(ProviderError):
    code = "SESSION_EXPIRED"
    auth_class = True
    default_message = "Session expired - please update your credentials"


class CloudflareBlocked(ProviderError):
    code = "CLOUDFLARE_BLOCKED"
    default_message = "Access blocked by Cloudflare - try again later"


class ProviderRateLimited(ProviderError):
    code = "RATE_LIMITED"
    default_message = "Rate limited - please wait before retrying"


class HttpError(ProviderError):
    code = "HTTP_ERROR"

    def __init__(self, message: str):
        super().__init__(f"HTTP request failed: {message}")
        self.detail = message


class ParseError(ProviderError):
    code = "PARSE_ERROR"

    def __init__(self, message: str):
        super().__init__(f"Invalid response format: {message}")
        self.detail = message


class MissingCredentials(ProviderError):
    code = "MISSING_CREDENTIALS"
    auth_class = True

    def __init__(self, field: str):
        super().__init__(f"Missing credentials: {field}")
        self.field = field


class InvalidCredentials(ProviderError):
    code = "INVALID_CREDENTIALS"
    auth_class = True

    def __init__(self, message: str):
        super().__init__(f"Invalid credentials: {message}")
        self.detail = message


class RefreshRateLimited(Exception):
    """A manual refresh was requested before the minimum refresh interval elapsed."""

    def __init__(self, retry_after: float):
        super().__init__("Please wait before refreshing again")
        self.retry_after = retry_after


def is_auth_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.auth_class
