from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .client import AuthExpiredError, MessagingClient, MessagingError, NoTokenError
from .models import Conversation, Message

logger = logging.getLogger(__name__)


class ReadCursors:
    """Tracks, per conversation, the newest message timestamp read locally."""

    def __init__(self) -> None:
        self._positions: Dict[str, datetime] = {}

    def advance(self, conversation_id: str, through: datetime) -> datetime:
        """Move the cursor forward to ``through``, keeping it monotonic."""

        current = self._positions.get(conversation_id)
        if current is None or through > current:
            self._positions[conversation_id] = through
            return through
        return current

    def read_through(self, conversation_id: str) -> Optional[datetime]:
        return self._positions.get(conversation_id)

    def forget(self, conversation_id: str) -> None:
        self._positions.pop(conversation_id, None)


class UnreadTracker:
    """Derives per-conversation and total unread counts.

    Counting needs a full thread fetch per conversation on every call unless
    the service sent ``unreadCount`` inline, so fetches are bounded by a
    semaphore.
    """

    def __init__(
        self,
        client: MessagingClient,
        *,
        max_concurrent_fetches: int = 8,
        cursors: Optional[ReadCursors] = None,
    ) -> None:
        self.client = client
        self.cursors = cursors or ReadCursors()
        self.counts: Dict[str, int] = {}
        self._active: Optional[str] = None
        self._forgotten: Set[str] = set()
        self._semaphore = asyncio.Semaphore(max_concurrent_fetches)

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._active

    def set_active(self, conversation_id: Optional[str]) -> None:
        """Exclude the open thread from recounts; ``mark_read`` zeroes it."""

        self._active = conversation_id

    def count_unread(self, conversation_id: str, messages: Iterable[Message], current_user_id: str) -> int:
        watermark = self.cursors.read_through(conversation_id)
        return sum(
            1
            for message in messages
            if message.sender_id != current_user_id
            and not message.is_read
            and (watermark is None or message.created_at > watermark)
        )

    async def _count_one(self, conversation: Conversation, current_user_id: str) -> int:
        if conversation.id == self._active:
            return self.counts.get(conversation.id, 0)
        if conversation.unread_count is not None:
            watermark = self.cursors.read_through(conversation.id)
            if watermark is not None and conversation.last_message_at <= watermark:
                return 0
            return conversation.unread_count
        async with self._semaphore:
            messages = await self.client.list_messages(conversation.id)
        return self.count_unread(conversation.id, messages, current_user_id)

    async def compute_unread(
        self,
        conversations: Sequence[Conversation],
        current_user_id: Optional[str],
    ) -> Dict[str, int]:
        """Recount every conversation; a failed item keeps its previous count."""

        if not current_user_id or not conversations:
            return dict(self.counts)
        if not await self.client.has_token():
            return dict(self.counts)

        self._forgotten.difference_update(conversation.id for conversation in conversations)
        results: List[object] = await asyncio.gather(
            *(self._count_one(conversation, current_user_id) for conversation in conversations),
            return_exceptions=True,
        )
        counts: Dict[str, int] = {}
        auth_error: Optional[AuthExpiredError] = None
        for conversation, result in zip(conversations, results):
            if isinstance(result, int):
                counts[conversation.id] = result
                continue
            if isinstance(result, AuthExpiredError):
                auth_error = auth_error or result
                continue
            if isinstance(result, NoTokenError):
                pass
            elif isinstance(result, MessagingError):
                logger.warning("unread count for conversation %s failed: %s", conversation.id, result)
            elif isinstance(result, BaseException):
                raise result
            if conversation.id in self.counts:
                counts[conversation.id] = self.counts[conversation.id]
        if auth_error is not None:
            raise auth_error
        # Conversations deleted while the fetches ran are not counted.
        self.counts = {conv_id: count for conv_id, count in counts.items() if conv_id not in self._forgotten}
        return dict(self.counts)

    def total_unread(self, counts: Optional[Dict[str, int]] = None) -> int:
        source = self.counts if counts is None else counts
        return sum(source.values())

    def mark_read(self, conversation_id: str, through: Optional[datetime] = None) -> None:
        self.counts[conversation_id] = 0
        if through is not None:
            self.cursors.advance(conversation_id, through)

    def forget(self, conversation_id: str) -> None:
        self.counts.pop(conversation_id, None)
        self.cursors.forget(conversation_id)
        self._forgotten.add(conversation_id)
        if self._active == conversation_id:
            self._active = None
