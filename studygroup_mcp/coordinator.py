"""
Keeps the bearer credential fresh across concurrent outgoing requests.

Every request passes through ``attach_credential`` before it is sent and its
response through ``handle_response``. Both hooks share one single-flight refresh:
while a refresh is in flight, any other request that needs a new token queues a
future and is resumed, in arrival order, when that refresh settles.

The coordinator assumes a single event loop. All mutations of the refresh state
happen between await points, so the ``refreshing`` flag is enough of a guard.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, List, Optional

import httpx

from .errors import (
    AccountDeactivated,
    InvalidationReason,
    RefreshFailed,
    UnauthorizedAfterRetry,
    deactivation_message,
    response_payload,
)
from .session import Credential, TokenStore

logger = logging.getLogger(__name__)

RETRY_MARKER = "studygroup_retried"

Refresher = Callable[[Optional[str]], Awaitable[Credential]]


@dataclass(frozen=True)
class SessionInvalidated:
    reason: InvalidationReason
    message: str


SessionListener = Callable[[SessionInvalidated], None]


@dataclass
class RefreshState:
    """In-flight flag plus the FIFO of requests waiting on that refresh."""

    refreshing: bool = False
    waiters: Deque[asyncio.Future] = field(default_factory=deque)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    request: Optional[httpx.Request] = None


PASS = RetryDecision(retry=False)


def _set_bearer(request: httpx.Request, token: str) -> None:
    request.headers["Authorization"] = f"Bearer {token}"


class RefreshCoordinator:
    """Pre-send and post-response hooks around one single-flight token refresh."""

    def __init__(
        self,
        store: TokenStore,
        refresher: Refresher,
        *,
        refresh_path: str = "auth/refresh",
        login_path: str = "auth/login",
        wait_timeout: Optional[float] = None,
    ):
        self.store = store
        self.refresher = refresher
        self.wait_timeout = wait_timeout
        self.state = RefreshState()
        self._exempt_paths = tuple("/" + p.strip("/") for p in (refresh_path, login_path))
        self._listeners: List[SessionListener] = []

    # ---------------- Session invalidation ----------------
    def on_session_invalidated(self, callback: SessionListener) -> Callable[[], None]:
        """Register a listener for forced logouts; returns a function that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def invalidate(self, reason: InvalidationReason, message: str) -> None:
        """Clear the stored credential and notify listeners, once per live session."""
        had_session = self.store.get() is not None
        self.store.clear()
        if not had_session:
            return
        logger.warning("Session invalidated (%s): %s", reason.value, message)
        event = SessionInvalidated(reason=reason, message=message)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session-invalidated listener %r failed", listener)

    # ---------------- Single-flight refresh ----------------
    def _settle(self, token: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        waiters = self.state.waiters
        self.state.waiters = deque()
        self.state.refreshing = False
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)

    async def _wait_for_refresh(self) -> str:
        waiter = asyncio.get_running_loop().create_future()
        self.state.waiters.append(waiter)
        if self.wait_timeout is None:
            return await waiter
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), self.wait_timeout)
        except asyncio.TimeoutError:
            if waiter.done():
                return waiter.result()
            waiter.cancel()
            if waiter in self.state.waiters:
                self.state.waiters.remove(waiter)
            raise RefreshFailed(f"Timed out after {self.wait_timeout}s waiting for token refresh.")

    async def refresh(self) -> str:
        """Return a new access token, starting a refresh or joining the one in flight."""
        if self.state.refreshing:
            return await self._wait_for_refresh()

        self.state.refreshing = True
        credential = self.store.get()
        refresh_token = credential.refresh_token if credential else None
        logger.debug("Refreshing access token (%d waiting)", len(self.state.waiters))
        try:
            new_credential = await self.refresher(refresh_token)
        except asyncio.CancelledError:
            self._settle(error=RefreshFailed("Token refresh was cancelled."))
            raise
        except RefreshFailed as exc:
            self._settle(error=exc)
            self.invalidate(exc.reason, str(exc))
            raise
        except Exception as exc:
            failure = RefreshFailed(f"Token refresh failed: {exc}")
            self._settle(error=failure)
            self.invalidate(failure.reason, str(failure))
            raise failure from exc

        self.store.set(new_credential)
        self._settle(token=new_credential.access_token)
        logger.info("Access token refreshed; expires at %s", new_credential.expires_at)
        return new_credential.access_token

    # ---------------- Hooks ----------------
    async def attach_credential(self, request: httpx.Request) -> httpx.Request:
        """
        Pre-send hook: make sure the request carries a usable access token.

        Without a stored credential the request goes out unauthenticated. An
        expiring or expired credential is refreshed first; if that refresh fails,
        RefreshFailed propagates and the request must not be sent.
        """
        credential = self.store.get()
        if not credential:
            return request
        if not self.store.needs_proactive_refresh():
            _set_bearer(request, credential.access_token)
            return request
        token = await self.refresh()
        _set_bearer(request, token)
        return request

    def _is_exempt(self, request: httpx.Request) -> bool:
        return request.url.path.rstrip("/").endswith(self._exempt_paths)

    async def handle_response(self, response: httpx.Response) -> RetryDecision:
        """
        Post-response hook: decide whether the request should be sent again.

        Returns PASS for responses the caller should see as-is, or a retry decision
        carrying the same request with a refreshed bearer header. Terminal auth
        failures clear the session and raise.
        """
        request = response.request

        if response.status_code == 403:
            message = deactivation_message(response_payload(response))
            if message:
                self.invalidate(InvalidationReason.DEACTIVATED, message)
                raise AccountDeactivated(message, response=response)
            return PASS

        if response.status_code != 401 or self._is_exempt(request):
            return PASS

        # Checked before the empty-store case: a concurrent retry may already have cleared it
        if request.extensions.get(RETRY_MARKER):
            error = UnauthorizedAfterRetry(response)
            self.invalidate(error.reason, str(error))
            raise error

        credential = self.store.get()
        if credential is None:
            return PASS

        request.extensions[RETRY_MARKER] = True
        sent = request.headers.get("authorization")
        if sent and sent != f"Bearer {credential.access_token}" and not self.state.refreshing:
            # Sent with a token another request has since replaced
            _set_bearer(request, credential.access_token)
            return RetryDecision(retry=True, request=request)

        token = await self.refresh()
        _set_bearer(request, token)
        return RetryDecision(retry=True, request=request)
