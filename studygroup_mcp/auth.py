import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from .errors import ApiError, InvalidationReason, RefreshFailed, deactivation_message
from .http_client import HttpClient
from .session import Credential, TokenStore

logger = logging.getLogger(__name__)


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort conversion of API expiry values to aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            normalized = value.replace("Z", "+00:00")
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _exp_from_jwt(token: str) -> Optional[datetime]:
    """Extract exp from JWT without verifying signature (used only for local expiry checks)."""
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload_b64 = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(payload_b64))
    except ValueError:
        return None
    exp = payload.get("exp") if isinstance(payload, dict) else None
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


def credential_from_payload(payload: Any, fallback_refresh: Optional[str] = None) -> Optional[Credential]:
    """
    Build a Credential from a login/register/refresh response body.

    Accepts the backend's ``{"success": ..., "data": {...}}`` envelope as well as a
    bare object, in camelCase or snake_case. The backend's ``expiresAt`` belongs to
    the refresh token, so the access expiry comes from ``accessTokenExpiry``,
    ``expiresIn`` or the JWT ``exp`` claim. Returns None when no access token is present.
    """
    data = payload.get("data") if isinstance(payload, dict) and "data" in payload else payload
    if not isinstance(data, dict):
        return None

    access_token = data.get("token") or data.get("accessToken") or data.get("access_token")
    if not access_token:
        return None
    refresh_token = data.get("refreshToken") or data.get("refresh_token") or fallback_refresh

    expires_at = _parse_datetime(data.get("accessTokenExpiry") or data.get("access_token_expiry"))
    expires_in = data.get("expiresIn") or data.get("expires_in")
    if not expires_at and isinstance(expires_in, (int, float)):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    if not expires_at:
        expires_at = _exp_from_jwt(access_token)

    return Credential(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)


class AuthManager:
    """Handles login, registration, refresh and logout against the auth endpoints."""

    def __init__(
        self,
        client: HttpClient,
        store: TokenStore,
        login_path: str = "auth/login",
        refresh_path: str = "auth/refresh",
    ):
        self.client = client
        self.store = store
        self.login_path = login_path
        self.refresh_path = refresh_path

    async def login(self, email: str, password: str) -> Credential:
        """Authenticate with email/password and store the resulting credential."""
        payload = await self.client.request(
            "POST",
            self.login_path,
            json_body={"email": email, "password": password},
        )
        credential = credential_from_payload(payload)
        if not credential:
            raise RuntimeError("Study group API login failed: access token missing in response.")
        self.store.set(credential)
        logger.info("Logged in; access token expires at %s", credential.expires_at)
        return credential

    async def register(self, name: str, email: str, password: str) -> Credential:
        """Create an account and store the credential the backend issues for it."""
        payload = await self.client.request(
            "POST",
            "auth/register",
            json_body={"name": name, "email": email, "password": password},
        )
        credential = credential_from_payload(payload)
        if not credential:
            raise RuntimeError("Study group API registration failed: access token missing in response.")
        self.store.set(credential)
        return credential

    async def refresh(self, refresh_token: Optional[str]) -> Credential:
        """
        Exchange a refresh token for a new credential.

        Does not touch the store; the refresh coordinator decides what to do with
        the result. Every failure is reported as RefreshFailed.
        """
        if not refresh_token:
            raise RefreshFailed("No refresh token cached. Please login again.")

        request = self.client.build_request(
            "POST",
            self.refresh_path,
            json_body={"refreshToken": refresh_token},
        )
        try:
            response = await self.client.send(request)
        except httpx.HTTPError as exc:
            raise RefreshFailed(f"Refresh request failed: {exc}") from exc

        try:
            payload = self.client.decode(response)
        except ApiError as exc:
            message = deactivation_message(exc.payload)
            if exc.status_code == 403 and message:
                raise RefreshFailed(message, reason=InvalidationReason.DEACTIVATED) from exc
            raise RefreshFailed(f"Refresh rejected ({exc.status_code}): {exc.message}") from exc

        credential = credential_from_payload(payload, fallback_refresh=refresh_token)
        if not credential:
            raise RefreshFailed("Refresh response did not include an access token.")
        return credential

    async def logout(self) -> None:
        """Revoke the refresh token on the backend (best effort) and clear the store."""
        credential = self.store.get()
        if credential:
            try:
                await self.client.request(
                    "POST",
                    "auth/logout",
                    access_token=credential.access_token,
                    json_body={"refreshToken": credential.refresh_token},
                )
            except (ApiError, httpx.HTTPError) as e:
                logger.warning("Backend logout failed, clearing local session anyway: %s", e)
        self.store.clear()
