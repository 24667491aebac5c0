"""Async REST client for the storefront messaging service."""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.parse
from typing import Any, Dict, List, Optional

import aiohttp

from .config import OFFLINE_TOKEN
from .models import Conversation, Message, parse_many
from .tokens import TokenProvider, usable_token

logger = logging.getLogger(__name__)


class MessagingError(Exception):
    pass


class NoTokenError(MessagingError):
    """Raised before any request is made when no usable token is available."""


class AuthExpiredError(MessagingError):
    pass


class TransportError(MessagingError):
    pass


class ServiceError(MessagingError):
    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status}: {message}")


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _conversation_path(conversation_id: str) -> str:
    return f"/conversations/{urllib.parse.quote(conversation_id, safe='')}/messages"


def _error_from_response(status: int, raw: str) -> MessagingError:
    message = ""
    try:
        payload = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        payload = {}
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("message")
        if isinstance(detail, str):
            message = detail
    if not message:
        message = f"HTTP error! status: {status}"
    if status == 401 or "unauthorized" in message.lower():
        return AuthExpiredError(message)
    return ServiceError(status, message)


class MessagingClient:
    """Thin wrapper over the four messaging endpoints.

    Every call resolves the bearer token first and raises ``NoTokenError``
    without touching the network when there is none. A 401 surfaces as
    ``AuthExpiredError``; transport failures as ``TransportError``.
    """

    def __init__(
        self,
        base_url: str,
        tokens: TokenProvider,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 10.0,
        offline_token: str = OFFLINE_TOKEN,
    ) -> None:
        self.base_url = base_url
        self.tokens = tokens
        self.offline_token = offline_token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def __aenter__(self) -> "MessagingClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        if self._owns_session:
            self._session = None

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def has_token(self) -> bool:
        return usable_token(await self.tokens.get_token(), self.offline_token) is not None

    async def _headers(self) -> Dict[str, str]:
        token = usable_token(await self.tokens.get_token(), self.offline_token)
        if token is None:
            raise NoTokenError("no session token available")
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, object]] = None,
    ) -> Any:
        headers = await self._headers()
        session = self._client_session()
        url = _build_url(self.base_url, path)
        try:
            async with session.request(method, url, params=params, json=payload, headers=headers) as response:
                raw = await response.text()
                if response.status >= 400:
                    raise _error_from_response(response.status, raw)
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransportError(f"{method} {path} returned malformed json") from exc

    async def list_conversations(self) -> List[Conversation]:
        payload = await self._request("GET", "/conversations")
        return parse_many(Conversation.from_json, payload, "conversation")

    async def list_messages(self, conversation_id: str) -> List[Message]:
        """Return the raw thread; the service does not promise dedup or order."""

        payload = await self._request("GET", _conversation_path(conversation_id))
        return parse_many(Message.from_json, payload, "message")

    async def send_message(self, conversation_id: str, content: str) -> Message:
        payload = await self._request("POST", _conversation_path(conversation_id), payload={"content": content})
        if not isinstance(payload, dict):
            raise TransportError("send returned no message")
        try:
            return Message.from_json(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"send returned a malformed message: {exc}") from exc

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", "/conversations", params={"id": conversation_id})
