"""
Error taxonomy for the study-group API client.

Only terminal session conditions propagate out of the refresh coordinator;
each carries a ``reason`` code so callers can pick the right message and
re-authentication path. An expiring credential is handled internally and
never becomes an exception.
"""
from enum import Enum
from typing import Any, Optional

import httpx


class InvalidationReason(str, Enum):
    """Why a session was forcibly ended."""

    EXPIRED = "expired"
    DEACTIVATED = "deactivated"


DEFAULT_DEACTIVATION_MESSAGE = "Your account has been deactivated by an administrator."


class ApiError(RuntimeError):
    """Non-2xx response from the study-group API."""

    def __init__(self, status_code: int, message: Any, payload: Any = None):
        super().__init__(f"Study group API error ({status_code}): {message}")
        self.status_code = status_code
        self.message = message
        self.payload = payload


class SessionError(RuntimeError):
    """Base for failures that end the session and require a new login."""

    reason: InvalidationReason = InvalidationReason.EXPIRED


class RefreshFailed(SessionError):
    """The refresh token was missing, invalid, expired or revoked."""

    def __init__(self, message: str, reason: InvalidationReason = InvalidationReason.EXPIRED):
        super().__init__(message)
        self.reason = reason


class AccountDeactivated(SessionError):
    """The backend reports the account itself as disabled; no refresh can help."""

    reason = InvalidationReason.DEACTIVATED

    def __init__(self, message: str = DEFAULT_DEACTIVATION_MESSAGE, response: Optional[httpx.Response] = None):
        super().__init__(message)
        self.response = response


class UnauthorizedAfterRetry(SessionError):
    """A request was refused again after its single post-refresh retry."""

    def __init__(self, response: httpx.Response):
        super().__init__(
            f"Request {response.request.method} {response.request.url.path} "
            "was unauthorized after refreshing the session; please login again."
        )
        self.response = response


_DEACTIVATION_CODES = {"account_deactivated"}
# The existing backend only reports deactivation in its human-readable message
_DEACTIVATION_PHRASES = ("desactivada", "account deactivated")


def deactivation_message(payload: Any) -> Optional[str]:
    """
    Return a user-facing message when an error payload says the account is disabled.

    A structured ``code``/``reason`` is checked first, then the message text.
    Returns None for ordinary authorization failures.
    """
    if not isinstance(payload, dict):
        return None
    message = payload.get("message") or payload.get("error")
    message = message if isinstance(message, str) else None
    for key in ("code", "reason"):
        code = payload.get(key)
        if isinstance(code, str) and code.lower() in _DEACTIVATION_CODES:
            return message or DEFAULT_DEACTIVATION_MESSAGE
    if message and any(phrase in message.lower() for phrase in _DEACTIVATION_PHRASES):
        return message
    return None


def response_payload(response: httpx.Response) -> Any:
    """Best-effort JSON body of a response; None when it is not JSON."""
    try:
        return response.json()
    except ValueError:
        return None
