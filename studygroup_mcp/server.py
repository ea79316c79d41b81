import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from .auth import AuthManager
from .config import Settings, settings
from .coordinator import RefreshCoordinator
from .http_client import HttpClient
from .middleware import McpAuthMiddleware
from .pipeline import RequestPipeline
from .session import JsonFileBackingStore, MemoryBackingStore, TokenStore
from .tools import register_tools

logger = logging.getLogger(__name__)


def build_token_store(cfg: Settings) -> TokenStore:
    backing = JsonFileBackingStore(cfg.token_file) if cfg.token_file else MemoryBackingStore()
    return TokenStore(backing=backing, lead_seconds=cfg.refresh_lead_seconds)


@dataclass
class ApiContext:
    """The per-process API objects; every tool shares the one coordinator."""

    store: TokenStore
    auth: AuthManager
    coordinator: RefreshCoordinator
    pipeline: RequestPipeline


def build_api(cfg: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> ApiContext:
    """Wire the token store, auth endpoints and refresh coordinator."""
    client = HttpClient(cfg.api_base_url, timeout=cfg.api_timeout, transport=transport)
    store = build_token_store(cfg)
    auth = AuthManager(client, store, login_path=cfg.login_path, refresh_path=cfg.refresh_path)
    coordinator = RefreshCoordinator(
        store,
        auth.refresh,
        refresh_path=cfg.refresh_path,
        login_path=cfg.login_path,
        wait_timeout=cfg.refresh_wait_timeout,
    )
    return ApiContext(store, auth, coordinator, RequestPipeline(client, coordinator))


def build_app(cfg: Settings = settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Starlette:
    """Create the Starlette app with MCP routes and middleware."""
    mcp = FastMCP("Study Groups MCP")
    api = build_api(cfg, transport=transport)
    register_tools(mcp, api.pipeline, api.auth, api.coordinator)

    async def health(_request):
        credential = api.store.get()
        return JSONResponse({"status": "ok", "authenticated": credential is not None})

    @asynccontextmanager
    async def lifespan(_app: Starlette):
        logger.info("Study groups MCP server starting; API at %s", cfg.api_base_url)
        async with mcp.session_manager.run():
            yield

    routes = [
        Route("/health", health),
        # FastMCP already exposes /mcp; mount at root to avoid /mcp/mcp and 307->404.
        Mount("/", app=mcp.streamable_http_app()),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(McpAuthMiddleware, cfg=cfg)

    if cfg.allowed_origins:
        allow_origins = ["*"] if "*" in cfg.allowed_origins else cfg.allowed_origins
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return app
