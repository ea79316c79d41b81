import os
from dataclasses import dataclass, field
from typing import List, Optional


def _csv_env(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _optional_float_env(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


@dataclass
class Settings:
    """Centralised configuration for the MCP server and the study-group API client."""

    api_base_url: str = os.getenv("STUDYGROUP_API_BASE_URL", "http://localhost:5000/api").rstrip("/")
    api_timeout: float = float(os.getenv("STUDYGROUP_API_TIMEOUT", "10.0"))

    # Refresh when the access token is within this many seconds of expiry
    refresh_lead_seconds: int = int(os.getenv("STUDYGROUP_REFRESH_LEAD_SECONDS", "300"))
    refresh_path: str = os.getenv("STUDYGROUP_REFRESH_PATH", "auth/refresh")
    login_path: str = os.getenv("STUDYGROUP_LOGIN_PATH", "auth/login")
    # None means a queued request waits as long as the in-flight refresh takes
    refresh_wait_timeout: Optional[float] = field(
        default_factory=lambda: _optional_float_env("STUDYGROUP_REFRESH_WAIT_TIMEOUT")
    )
    token_file: str | None = os.getenv("STUDYGROUP_TOKEN_FILE") or None

    mcp_api_keys: List[str] = field(default_factory=lambda: _csv_env("MCP_API_KEYS"))
    allowed_origins: List[str] = field(default_factory=lambda: _csv_env("MCP_ALLOWED_ORIGINS", "*"))
    host: str = os.getenv("MCP_HOST", "0.0.0.0")
    port: int = int(os.getenv("MCP_PORT", "8000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
