from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set

from .client import AuthExpiredError, MessagingClient, MessagingError, NoTokenError
from .models import Conversation, LastMessage, dedupe_and_sort

logger = logging.getLogger(__name__)


class ConversationStore:
    """The roster visible to the current user, in the order the service returns it."""

    def __init__(self, client: MessagingClient, *, max_concurrent_fetches: int = 8) -> None:
        self.client = client
        self.loaded = False
        self._conversations: List[Conversation] = []
        # Removed locally; hidden from loads until the service stops listing them.
        self._deleted: Set[str] = set()
        self._semaphore = asyncio.Semaphore(max_concurrent_fetches)

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def __contains__(self, conversation_id: object) -> bool:
        return any(conversation.id == conversation_id for conversation in self._conversations)

    async def _with_preview(self, conversation: Conversation) -> Conversation:
        async with self._semaphore:
            messages = await self.client.list_messages(conversation.id)
        ordered = dedupe_and_sort(messages)
        if not ordered:
            return conversation
        return conversation.with_preview(ordered[-1].preview())

    async def load(self) -> List[Conversation]:
        """Fetch the roster and attach a last-message preview to each entry.

        The service does not return previews inline, so every conversation
        costs one extra thread fetch. A failed preview keeps the
        conversation without one; an expired session aborts the load.
        """

        if not await self.client.has_token():
            return self.conversations
        fetched = await self.client.list_conversations()
        self._deleted &= {conversation.id for conversation in fetched}
        fetched = [conversation for conversation in fetched if conversation.id not in self._deleted]
        results = await asyncio.gather(
            *(self._with_preview(conversation) for conversation in fetched),
            return_exceptions=True,
        )
        loaded: List[Conversation] = []
        auth_error: Optional[AuthExpiredError] = None
        for conversation, result in zip(fetched, results):
            if isinstance(result, Conversation):
                loaded.append(result)
                continue
            if isinstance(result, AuthExpiredError):
                auth_error = auth_error or result
            elif isinstance(result, MessagingError):
                logger.warning("preview for conversation %s failed: %s", conversation.id, result)
            elif isinstance(result, BaseException):
                raise result
            loaded.append(conversation)
        if auth_error is not None:
            raise auth_error
        # A delete may have landed while the previews were in flight.
        self._conversations = [conversation for conversation in loaded if conversation.id not in self._deleted]
        self.loaded = True
        return self.conversations

    def apply_filter(self, query: str) -> List[Conversation]:
        if not (query or "").strip():
            return self.conversations
        return [conversation for conversation in self._conversations if conversation.matches(query)]

    def discard(self, conversation_id: str) -> bool:
        self._deleted.add(conversation_id)
        before = len(self._conversations)
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        return len(self._conversations) != before

    def attach_preview(self, conversation_id: str, preview: LastMessage) -> bool:
        for index, conversation in enumerate(self._conversations):
            if conversation.id == conversation_id:
                self._conversations[index] = conversation.with_preview(preview)
                return True
        return False

    async def remove(self, conversation_id: str) -> None:
        """Drop the conversation locally, then ask the service to delete it.

        A failed delete propagates and the entry is not put back; the next
        load shows it again if the service still has it.
        """

        if not await self.client.has_token():
            raise NoTokenError("no session token available")
        self.discard(conversation_id)
        try:
            await self.client.delete_conversation(conversation_id)
        except MessagingError:
            self._deleted.discard(conversation_id)
            raise
