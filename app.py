"""Entry point for the Study Groups MCP server."""

import logging

import uvicorn

from studygroup_mcp.config import settings
from studygroup_mcp.server import build_app

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = build_app(settings)


if __name__ == "__main__":
    uvicorn.run("app:app", host=settings.host, port=settings.port, reload=False)
