import logging
from typing import List

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse

from .config import Settings, settings

logger = logging.getLogger(__name__)


def origin_allowed(origin: str | None, allowed_origins: List[str]) -> bool:
    """Return True when origin matches allowlist or wildcard."""
    if not origin:
        return True  # allow tools/curl with no Origin
    if "*" in allowed_origins:
        return True
    return origin in allowed_origins


def bearer_token(auth_header: str) -> str | None:
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class McpAuthMiddleware(BaseHTTPMiddleware):
    """Gate /mcp behind the origin allowlist and, when configured, an API key."""

    def __init__(self, app, cfg: Settings = settings, protected_prefix: str = "/mcp"):
        super().__init__(app)
        self.cfg = cfg
        self.protected_prefix = protected_prefix

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.protected_prefix):
            return await call_next(request)

        origin = request.headers.get("origin")
        if not origin_allowed(origin, self.cfg.allowed_origins):
            logger.info("Rejected MCP request from origin %s", origin)
            return PlainTextResponse("Origin not allowed.", status_code=403)

        if self.cfg.mcp_api_keys:
            token = bearer_token(request.headers.get("authorization", ""))
            if token not in self.cfg.mcp_api_keys:
                logger.info("Rejected MCP request without a valid API key")
                return JSONResponse({"error": "Unauthorized"}, status_code=401)

        return await call_next(request)
