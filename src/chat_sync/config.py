"""Configuration for the messaging sync engine, loaded from environment variables."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_BASE_URL = "http://localhost:3000/api"
OFFLINE_TOKEN = "demo-token-offline-mode"
DEFAULT_SESSION_PATH = Path.home() / ".storefront_chat" / "session.json"


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {raw!r}")
    return value


@dataclass
class SyncConfig:
    base_url: str = DEFAULT_BASE_URL
    thread_poll_interval_s: float = 3.0
    roster_poll_interval_s: float = 5.0
    request_timeout_s: float = 10.0
    max_concurrent_fetches: int = 8
    offline_token: str = OFFLINE_TOKEN
    log_level: str = "INFO"
    session_path: Path = field(default_factory=lambda: DEFAULT_SESSION_PATH)

    def __post_init__(self) -> None:
        if self.thread_poll_interval_s <= 0 or self.roster_poll_interval_s <= 0:
            raise ValueError("poll intervals must be positive")
        if self.max_concurrent_fetches < 1:
            raise ValueError("max_concurrent_fetches must be at least 1")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        env = os.environ if env is None else env
        session_path = env.get("CHAT_SESSION_PATH")
        return cls(
            base_url=env.get("CHAT_API_URL") or DEFAULT_BASE_URL,
            thread_poll_interval_s=_env_float(env, "CHAT_THREAD_POLL_S", 3.0),
            roster_poll_interval_s=_env_float(env, "CHAT_ROSTER_POLL_S", 5.0),
            request_timeout_s=_env_float(env, "CHAT_REQUEST_TIMEOUT_S", 10.0),
            max_concurrent_fetches=_env_int(env, "CHAT_MAX_CONCURRENT_FETCHES", 8),
            offline_token=env.get("CHAT_OFFLINE_TOKEN") or OFFLINE_TOKEN,
            log_level=(env.get("CHAT_LOG_LEVEL") or "INFO").upper(),
            session_path=Path(session_path).expanduser() if session_path else DEFAULT_SESSION_PATH,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
