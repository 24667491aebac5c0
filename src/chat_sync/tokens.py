"""Bearer token providers for the messaging client."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from .config import DEFAULT_SESSION_PATH, OFFLINE_TOKEN

logger = logging.getLogger(__name__)


class TokenProvider(Protocol):
    async def get_token(self) -> Optional[str]:
        ...

    def invalidate(self) -> None:
        ...


def usable_token(token: Optional[str], offline_token: str = OFFLINE_TOKEN) -> Optional[str]:
    """Return ``token`` unless it is missing, blank or the offline sentinel."""

    if not token or not token.strip():
        return None
    if token == offline_token:
        return None
    return token


class StaticTokenProvider:
    """Holds a token in memory; ``invalidate`` forgets it."""

    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token
        self.invalidations = 0

    async def get_token(self) -> Optional[str]:
        return self.token

    def invalidate(self) -> None:
        self.token = None
        self.invalidations += 1


def _atomic_write_json(path: Path, payload: Dict[str, object]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_session(path: Path = DEFAULT_SESSION_PATH) -> Optional[Dict[str, str]]:
    try:
        data = json.loads(path.expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, ValueError):
        logger.warning("ignoring unreadable session file %s", path)
        return None

    if not isinstance(data, dict):
        return None
    token = data.get("token")
    if not isinstance(token, str) or not token:
        return None
    session = {"token": token}
    user_id = data.get("user_id")
    if isinstance(user_id, str) and user_id:
        session["user_id"] = user_id
    return session


def save_session(token: str, user_id: Optional[str] = None, path: Path = DEFAULT_SESSION_PATH) -> None:
    payload: Dict[str, object] = {"token": token}
    if user_id:
        payload["user_id"] = user_id
    _atomic_write_json(path, payload)


def clear_session(path: Path = DEFAULT_SESSION_PATH) -> bool:
    try:
        path.expanduser().unlink()
    except FileNotFoundError:
        return False
    return True


class FileTokenProvider:
    """Reads the bearer token from the persisted session file on every call."""

    def __init__(self, path: Path | str = DEFAULT_SESSION_PATH) -> None:
        self.path = Path(path).expanduser()

    async def get_token(self) -> Optional[str]:
        session = load_session(self.path)
        if session is None:
            return None
        return session["token"]

    def user_id(self) -> Optional[str]:
        session = load_session(self.path)
        if session is None:
            return None
        return session.get("user_id")

    def invalidate(self) -> None:
        if clear_session(self.path):
            logger.info("cleared stored session token at %s", self.path)
