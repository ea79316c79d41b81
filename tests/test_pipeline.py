"""End-to-end tests: tools' request path through the coordinator against a mocked API."""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from studygroup_mcp.config import Settings
from studygroup_mcp.errors import ApiError, InvalidationReason, RefreshFailed, UnauthorizedAfterRetry
from studygroup_mcp.server import build_api
from studygroup_mcp.session import Credential


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _settings() -> Settings:
    return Settings(
        api_base_url="http://api.test/api",
        refresh_lead_seconds=300,
        refresh_wait_timeout=None,
        token_file=None,
    )


def _token_payload(access_token: str, refresh_token: str = "new-rt") -> dict:
    return {
        "success": True,
        "data": {
            "token": access_token,
            "refreshToken": refresh_token,
            "accessTokenExpiry": (_now() + timedelta(hours=1)).isoformat(),
        },
    }


class FakeApi:
    """Records traffic; resources accept only the tokens listed in `accepted`."""

    def __init__(self, accepted=("Bearer new-at",), refresh_status: int = 200, refresh_body: dict | None = None):
        self.accepted = set(accepted)
        self.refresh_status = refresh_status
        self.refresh_body = refresh_body
        self.refresh_calls = []
        self.resource_calls = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/refresh":
            self.refresh_calls.append(json.loads(request.content))
            await asyncio.sleep(0.05)
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json=self.refresh_body or {"message": "Refresh token inválido o expirado"})
            return httpx.Response(200, json=_token_payload("new-at"))
        if request.url.path == "/api/auth/login":
            return httpx.Response(200, json=_token_payload("login-at", "login-rt"))
        if request.url.path == "/api/auth/logout":
            return httpx.Response(500, json={"message": "boom"})
        if request.url.path == "/api/missing":
            return httpx.Response(404, json={"message": "Grupo no encontrado"})
        auth = request.headers.get("authorization")
        self.resource_calls.append((request.url.path, auth))
        if auth not in self.accepted:
            return httpx.Response(401, json={"message": "Token inválido"})
        return httpx.Response(200, json={"success": True, "data": {"path": request.url.path}})


def _api(fake: FakeApi, credential: Credential | None):
    api = build_api(_settings(), transport=httpx.MockTransport(fake))
    if credential:
        api.store.set(credential)
    events = []
    api.coordinator.on_session_invalidated(events.append)
    return api, events


def test_three_concurrent_calls_on_expired_token_refresh_once():
    fake = FakeApi()
    api, _ = _api(fake, Credential("old-at", "old-rt", _now() - timedelta(seconds=1)))

    async def scenario():
        return await asyncio.gather(
            api.pipeline.call("GET", "groups"),
            api.pipeline.call("GET", "sessions"),
            api.pipeline.call("GET", "notifications"),
        )

    results = asyncio.run(scenario())
    assert [r["data"]["path"] for r in results] == ["/api/groups", "/api/sessions", "/api/notifications"]
    assert fake.refresh_calls == [{"refreshToken": "old-rt"}]
    assert {auth for _, auth in fake.resource_calls} == {"Bearer new-at"}
    assert api.store.get().refresh_token == "new-rt"


def test_unauthorized_response_refreshes_and_retries_once():
    fake = FakeApi()
    api, events = _api(fake, Credential("old-at", "old-rt", _now() + timedelta(hours=1)))

    result = asyncio.run(api.pipeline.call("GET", "groups"))
    assert result["data"]["path"] == "/api/groups"
    assert fake.resource_calls == [("/api/groups", "Bearer old-at"), ("/api/groups", "Bearer new-at")]
    assert len(fake.refresh_calls) == 1
    assert events == []


def test_second_unauthorized_is_terminal():
    fake = FakeApi(accepted=())
    api, events = _api(fake, Credential("old-at", "old-rt", _now() + timedelta(hours=1)))

    with pytest.raises(UnauthorizedAfterRetry):
        asyncio.run(api.pipeline.call("GET", "groups"))
    assert len(fake.resource_calls) == 2
    assert len(fake.refresh_calls) == 1
    assert api.store.get() is None
    assert [e.reason for e in events] == [InvalidationReason.EXPIRED]


def test_concurrent_second_unauthorized_are_all_terminal():
    """Both retried calls end in UnauthorizedAfterRetry, even once the first has cleared the store."""
    fake = FakeApi(accepted=())
    api, events = _api(fake, Credential("old-at", "old-rt", _now() + timedelta(hours=1)))

    async def scenario():
        return await asyncio.gather(
            api.pipeline.call("GET", "groups"),
            api.pipeline.call("GET", "sessions"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert [type(r) for r in results] == [UnauthorizedAfterRetry, UnauthorizedAfterRetry]
    assert len(fake.refresh_calls) == 1
    assert api.store.get() is None
    assert len(events) == 1


def test_rejected_refresh_token_forces_logout_without_dispatch():
    fake = FakeApi(refresh_status=401)
    api, events = _api(fake, Credential("old-at", "old-rt", _now() - timedelta(seconds=1)))

    async def scenario():
        return await asyncio.gather(
            api.pipeline.call("GET", "groups"),
            api.pipeline.call("GET", "sessions"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert all(isinstance(r, RefreshFailed) for r in results)
    assert results[0] is results[1]
    assert fake.resource_calls == []
    assert api.store.get() is None
    assert len(events) == 1


def test_deactivated_on_refresh_reports_deactivation():
    fake = FakeApi(
        refresh_status=403,
        refresh_body={"message": "Tu cuenta ha sido desactivada por un administrador."},
    )
    api, events = _api(fake, Credential("old-at", "old-rt", _now() - timedelta(seconds=1)))

    with pytest.raises(RefreshFailed) as excinfo:
        asyncio.run(api.pipeline.call("GET", "groups"))
    assert excinfo.value.reason is InvalidationReason.DEACTIVATED
    assert [e.reason for e in events] == [InvalidationReason.DEACTIVATED]


def test_unauthenticated_call_goes_out_without_header():
    fake = FakeApi()
    api, events = _api(fake, None)

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(api.pipeline.call("GET", "groups"))
    assert excinfo.value.status_code == 401
    assert fake.resource_calls == [("/api/groups", None)]
    assert fake.refresh_calls == []
    assert events == []


def test_other_errors_surface_as_api_error():
    fake = FakeApi(accepted=("Bearer old-at",))
    api, _ = _api(fake, Credential("old-at", "old-rt", _now() + timedelta(hours=1)))

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(api.pipeline.call("GET", "missing"))
    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "Grupo no encontrado"


def test_login_stores_credential_and_logout_clears_it_even_if_backend_fails():
    fake = FakeApi()
    api, _ = _api(fake, None)

    credential = asyncio.run(api.auth.login("ana@uni.edu", "S3cret!pass"))
    assert credential.access_token == "login-at"
    assert api.store.get() == credential

    asyncio.run(api.auth.logout())
    assert api.store.get() is None
