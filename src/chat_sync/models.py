from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
TEMP_ID_PREFIX = "local-"


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp from the service into an aware UTC datetime."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class LastMessage:
    """Preview of the newest message of a thread, attached client side."""

    content: str
    sender_id: str
    created_at: datetime

    def to_json(self) -> Dict[str, object]:
        return {
            "content": self.content,
            "senderId": self.sender_id,
            "createdAt": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    is_read: bool
    created_at: datetime

    status = STATUS_CONFIRMED

    @property
    def key(self) -> tuple[str, str]:
        return (STATUS_CONFIRMED, self.id)

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "Message":
        return cls(
            id=str(payload["id"]),
            conversation_id=str(payload["conversationId"]),
            sender_id=str(payload["senderId"]),
            content=str(payload.get("content") or ""),
            is_read=bool(payload.get("isRead", False)),
            created_at=parse_timestamp(payload["createdAt"]),
        )

    def to_json(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "isRead": self.is_read,
            "createdAt": format_timestamp(self.created_at),
        }

    def mark_read(self) -> "Message":
        if self.is_read:
            return self
        return replace(self, is_read=True)

    def preview(self) -> LastMessage:
        return LastMessage(content=self.content, sender_id=self.sender_id, created_at=self.created_at)


@dataclass(frozen=True)
class PendingMessage:
    """A locally composed message that the service has not acknowledged yet.

    Pending entries live in their own key space (``("pending", temp_id)``) so
    a temporary id can never be mistaken for a server id.
    """

    temp_id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime

    status = STATUS_PENDING
    is_read = True

    @property
    def key(self) -> tuple[str, str]:
        return (STATUS_PENDING, self.temp_id)

    @property
    def id(self) -> str:
        return self.temp_id

    def preview(self) -> LastMessage:
        return LastMessage(content=self.content, sender_id=self.sender_id, created_at=self.created_at)


ThreadEntry = Union[Message, PendingMessage]


@dataclass(frozen=True)
class Conversation:
    id: str
    customer_id: str
    seller_id: str
    product_id: Optional[str]
    customer_name: str
    seller_name: str
    product_name: Optional[str]
    last_message_at: datetime
    last_message: Optional[LastMessage] = None
    unread_count: Optional[int] = None

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "Conversation":
        last_message = None
        raw_last = payload.get("lastMessage")
        if isinstance(raw_last, dict) and raw_last.get("createdAt"):
            last_message = LastMessage(
                content=str(raw_last.get("content") or ""),
                sender_id=str(raw_last.get("senderId") or ""),
                created_at=parse_timestamp(raw_last["createdAt"]),
            )
        last_message_at = payload.get("lastMessageAt")
        if not last_message_at:
            if last_message is not None:
                last_message_at = last_message.created_at
            else:
                last_message_at = payload["createdAt"]
        unread_count = payload.get("unreadCount")
        return cls(
            id=str(payload["id"]),
            customer_id=str(payload.get("customerId") or ""),
            seller_id=str(payload.get("sellerId") or ""),
            product_id=_optional_str(payload.get("productId")),
            customer_name=str(payload.get("customerName") or ""),
            seller_name=str(payload.get("sellerName") or ""),
            product_name=_optional_str(payload.get("productName")),
            last_message_at=parse_timestamp(last_message_at),
            last_message=last_message,
            unread_count=unread_count if isinstance(unread_count, int) and unread_count >= 0 else None,
        )

    def to_json(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "customerId": self.customer_id,
            "sellerId": self.seller_id,
            "productId": self.product_id,
            "customerName": self.customer_name,
            "sellerName": self.seller_name,
            "productName": self.product_name,
            "lastMessageAt": format_timestamp(self.last_message_at),
        }
        if self.last_message is not None:
            payload["lastMessage"] = self.last_message.to_json()
        if self.unread_count is not None:
            payload["unreadCount"] = self.unread_count
        return payload

    def with_preview(self, last_message: Optional[LastMessage]) -> "Conversation":
        return replace(self, last_message=last_message)

    def matches(self, query: str) -> bool:
        needle = query.lower()
        for field in (self.seller_name, self.customer_name, self.product_name):
            if field and needle in field.lower():
                return True
        return False


def parse_many(factory, payload: Any, kind: str) -> list:
    """Parse a JSON list, skipping records that do not fit ``factory``."""

    if not isinstance(payload, list):
        logger.warning("expected a list of %s, got %s", kind, type(payload).__name__)
        return []
    parsed = []
    for raw in payload:
        if not isinstance(raw, dict):
            logger.warning("skipping malformed %s record: %r", kind, raw)
            continue
        try:
            parsed.append(factory(raw))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("skipping malformed %s record %r: %s", kind, raw.get("id"), exc)
    return parsed


def dedupe_and_sort(messages: Iterable[Message]) -> List[Message]:
    """Collapse repeated ids (last write wins) and order ascending by ``created_at``."""

    unique: Dict[str, Message] = {}
    for message in messages:
        unique[message.id] = message
    return sorted(unique.values(), key=lambda message: message.created_at)
