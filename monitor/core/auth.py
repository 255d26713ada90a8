"""Bearer-token checks shared by the HTTP middleware and the WebSocket feed."""
import secrets
from typing import Optional

PUBLIC_PATHS = {"/api/health"}


def bearer_token(header: Optional[str]) -> str:
    header = header or ""
    return header[len("Bearer "):].strip() if header.startswith("Bearer ") else ""


def token_matches(supplied: Optional[str], expected: Optional[str]) -> bool:
    """True when no token is configured or the supplied one matches it."""
    if not expected:
        return True
    return secrets.compare_digest((supplied or "").encode(), expected.encode())
