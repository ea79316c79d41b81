"""Tests for the MCP gate middleware and tool registration."""
import asyncio

from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from studygroup_mcp.config import Settings
from studygroup_mcp.middleware import McpAuthMiddleware, bearer_token, origin_allowed
from studygroup_mcp.server import build_api
from studygroup_mcp.tools import register_tools


def _client(cfg: Settings) -> TestClient:
    async def ping(_request):
        return PlainTextResponse("pong")

    app = Starlette(routes=[Route("/mcp/ping", ping), Route("/health", ping)])
    app.add_middleware(McpAuthMiddleware, cfg=cfg)
    return TestClient(app)


def test_origin_allowed():
    assert origin_allowed(None, []) is True
    assert origin_allowed("http://evil.test", ["*"]) is True
    assert origin_allowed("http://app.test", ["http://app.test"]) is True
    assert origin_allowed("http://evil.test", ["http://app.test"]) is False


def test_bearer_token():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("") is None


def test_api_key_required_only_under_mcp():
    client = _client(Settings(mcp_api_keys=["k1"], allowed_origins=["*"]))
    assert client.get("/health").status_code == 200
    assert client.get("/mcp/ping").status_code == 401
    assert client.get("/mcp/ping", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/mcp/ping", headers={"Authorization": "Bearer k1"}).status_code == 200


def test_disallowed_origin_rejected():
    client = _client(Settings(mcp_api_keys=[], allowed_origins=["http://app.test"]))
    assert client.get("/mcp/ping", headers={"Origin": "http://evil.test"}).status_code == 403
    assert client.get("/mcp/ping", headers={"Origin": "http://app.test"}).status_code == 200


def test_tools_registered():
    mcp = FastMCP("test")
    api = build_api(Settings(api_base_url="http://api.test/api", token_file=None))
    register_tools(mcp, api.pipeline, api.auth, api.coordinator)

    names = {tool.name for tool in asyncio.run(mcp.list_tools())}
    assert {"login", "logout", "session_status", "list_groups", "list_sessions", "list_forums"} <= names
