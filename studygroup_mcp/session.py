import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Access + refresh token pair for the signed-in user."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        expires_at = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


class BackingStore(Protocol):
    """Where a credential is kept between process restarts."""

    def load(self) -> Optional[Dict[str, Any]]: ...

    def save(self, data: Dict[str, Any]) -> None: ...

    def remove(self) -> None: ...


class MemoryBackingStore:
    """Keeps nothing beyond the life of the process."""

    def __init__(self):
        self._data: Optional[Dict[str, Any]] = None

    def load(self) -> Optional[Dict[str, Any]]:
        return self._data

    def save(self, data: Dict[str, Any]) -> None:
        self._data = dict(data)

    def remove(self) -> None:
        self._data = None


class JsonFileBackingStore:
    """Persists the credential as a small JSON document on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, e)
            return None
        return data if isinstance(data, dict) else None

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # mkstemp creates the file owner-only (0o600); replace() swaps it in atomically
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            tmp_path.replace(self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStore:
    """
    Single source of truth for the current credential.

    The in-memory value is authoritative; the backing store only mirrors it so a
    restarted process can pick up where it left off.
    """

    def __init__(
        self,
        backing: Optional[BackingStore] = None,
        lead_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.backing = backing or MemoryBackingStore()
        self.lead_seconds = lead_seconds
        self._clock = clock or _utcnow
        self._credential = self._load()

    def _load(self) -> Optional[Credential]:
        data = self.backing.load()
        if not data:
            return None
        try:
            return Credential.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed stored credential: %s", e)
            return None

    def get(self) -> Optional[Credential]:
        return self._credential

    def set(self, credential: Credential) -> None:
        self._credential = credential
        self.backing.save(credential.to_dict())

    def clear(self) -> None:
        self._credential = None
        self.backing.remove()

    def is_expired(self) -> bool:
        """Return True when the stored access token is past its expiry."""
        credential = self._credential
        if not credential or not credential.expires_at:
            return False
        return self._clock() >= credential.expires_at

    def needs_proactive_refresh(self) -> bool:
        """Return True when the stored access token is expired or within the lead window."""
        credential = self._credential
        if not credential or not credential.expires_at:
            return False
        return self._clock() >= credential.expires_at - timedelta(seconds=self.lead_seconds)
