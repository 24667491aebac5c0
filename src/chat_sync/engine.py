"""Shared messaging state that every UI surface renders from."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .client import AuthExpiredError, MessagingClient, MessagingError, NoTokenError
from .config import SyncConfig
from .conversations import ConversationStore
from .hub import (
    TOPIC_AUTH,
    TOPIC_COMPOSE,
    TOPIC_NOTICE,
    TOPIC_ROSTER,
    TOPIC_SELECTION,
    TOPIC_THREAD,
    TOPIC_UNREAD,
    ChatEvent,
    SubscriptionHub,
)
from .models import Conversation, ThreadEntry, utc_now
from .sending import STATE_CONFIRMED, ComposeState, OptimisticSendPipeline, SendAttempt
from .threads import MessageThreadCache
from .unread import UnreadTracker

logger = logging.getLogger(__name__)

AUTH_EXPIRED_NOTICE = "Unauthorized. Please log in again."
DELETE_FAILED_NOTICE = "Failed to delete conversation. Please try again."


class MessagingSync:
    """Owns the roster, the open thread, unread counts and the compose box.

    The inbox screen and the floating widget both subscribe to ``hub`` and
    read state from here instead of polling on their own. ``refresh_*``
    methods are the entry points a scheduler (or a future push transport)
    drives; they raise ``MessagingError`` so the driver can decide what to
    do. User actions (``select``, ``send``, ``delete_conversation``) report
    failures through hub notices instead.
    """

    def __init__(
        self,
        client: MessagingClient,
        *,
        current_user_id: Optional[str] = None,
        hub: Optional[SubscriptionHub] = None,
        config: Optional[SyncConfig] = None,
        auto_select_first: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        config = config or SyncConfig()
        self.client = client
        self.hub = hub or SubscriptionHub()
        self.current_user_id = current_user_id
        self.auto_select_first = auto_select_first
        self.unread = UnreadTracker(client, max_concurrent_fetches=config.max_concurrent_fetches)
        self.conversations = ConversationStore(client, max_concurrent_fetches=config.max_concurrent_fetches)
        self.thread = MessageThreadCache(client, self.unread)
        self.compose = ComposeState()
        self.sender = OptimisticSendPipeline(client, self.thread, self.hub, self.compose, clock=clock)
        self.selected_conversation_id: Optional[str] = None
        self.roster_error: Optional[str] = None
        self.thread_error: Optional[str] = None
        self.auth_expired = False

    @property
    def total_unread(self) -> int:
        return self.unread.total_unread()

    @property
    def selected_conversation(self) -> Optional[Conversation]:
        if self.selected_conversation_id is None:
            return None
        return self.conversations.get(self.selected_conversation_id)

    def filtered(self, query: str) -> List[Conversation]:
        return self.conversations.apply_filter(query)

    def _publish(self, topic: str, conversation_id: Optional[str] = None, **kwargs) -> None:
        self.hub.publish(ChatEvent(topic, conversation_id, **kwargs))

    def _signal_auth_expired(self) -> None:
        if self.auth_expired:
            return
        self.auth_expired = True
        logger.warning("session expired; stopping sync and asking for login")
        self.client.tokens.invalidate()
        self._publish(TOPIC_AUTH, message=AUTH_EXPIRED_NOTICE)

    async def refresh_conversations(self) -> List[Conversation]:
        if not await self.client.has_token():
            return self.conversations.conversations
        try:
            conversations = await self.conversations.load()
        except AuthExpiredError:
            self._signal_auth_expired()
            raise
        except MessagingError as exc:
            if not self.conversations.loaded:
                self.roster_error = str(exc)
                self._publish(TOPIC_ROSTER, message=self.roster_error)
            raise
        self.auth_expired = False
        self.roster_error = None
        self._publish(TOPIC_ROSTER)
        if self.auto_select_first and self.selected_conversation_id is None and conversations:
            await self.select(conversations[0].id)
        return conversations

    async def refresh_unread(self) -> dict:
        try:
            counts = await self.unread.compute_unread(self.conversations.conversations, self.current_user_id)
        except AuthExpiredError:
            self._signal_auth_expired()
            raise
        self._publish(TOPIC_UNREAD)
        return counts

    async def refresh_roster(self) -> List[Conversation]:
        conversations = await self.refresh_conversations()
        await self.refresh_unread()
        return conversations

    async def refresh_thread(self, conversation_id: Optional[str] = None) -> List[ThreadEntry]:
        conversation_id = conversation_id or self.selected_conversation_id
        if conversation_id is None:
            return []
        if not await self.client.has_token():
            return self.thread.messages
        before = self.thread.last_entry()
        try:
            entries = await self.thread.load(conversation_id)
        except AuthExpiredError:
            self._signal_auth_expired()
            raise
        except MessagingError as exc:
            if self.selected_conversation_id == conversation_id and not self.thread.loaded:
                self.thread_error = str(exc)
                self._publish(TOPIC_THREAD, conversation_id, message=self.thread_error)
            raise
        if self.selected_conversation_id != conversation_id:
            return entries
        self.thread_error = None
        conversation = self.conversations.get(conversation_id)
        self.thread.mark_read(
            conversation_id,
            reader_id=self.current_user_id,
            seen_through=conversation.last_message_at if conversation is not None else None,
        )
        after = self.thread.last_entry()
        grew = after is not None and (before is None or after.key != before.key)
        self._publish(TOPIC_THREAD, conversation_id, scroll_to_end=grew)
        self._publish(TOPIC_UNREAD, conversation_id)
        return self.thread.messages

    async def select(self, conversation_id: Optional[str]) -> None:
        """Make ``conversation_id`` the open thread (``None`` closes it)."""

        if conversation_id == self.selected_conversation_id:
            return
        self.selected_conversation_id = conversation_id
        self.thread.open(conversation_id)
        self.unread.set_active(conversation_id)
        self.thread_error = None
        self._publish(TOPIC_SELECTION, conversation_id)
        self._publish(TOPIC_THREAD, conversation_id)
        if conversation_id is None:
            return
        try:
            await self.refresh_thread(conversation_id)
        except AuthExpiredError:
            pass
        except MessagingError as exc:
            logger.warning("loading conversation %s failed: %s", conversation_id, exc)

    def set_draft(self, text: str) -> None:
        self.compose.text = text
        self._publish(TOPIC_COMPOSE, self.selected_conversation_id)

    async def send(self, content: Optional[str] = None) -> Optional[SendAttempt]:
        """Send ``content`` (or the current draft) to the open conversation."""

        text = self.compose.text if content is None else content
        attempt = await self.sender.submit(self.selected_conversation_id, text, self.current_user_id)
        if attempt is None:
            return None
        if isinstance(attempt.error, AuthExpiredError):
            self._signal_auth_expired()
        if attempt.state == STATE_CONFIRMED and attempt.message is not None:
            if self.conversations.attach_preview(attempt.conversation_id, attempt.message.preview()):
                self._publish(TOPIC_ROSTER, attempt.conversation_id)
        return attempt

    def _forget(self, conversation_id: str) -> None:
        self.conversations.discard(conversation_id)
        self.unread.forget(conversation_id)
        if self.selected_conversation_id == conversation_id:
            self.selected_conversation_id = None
            self.thread.clear()
            self._publish(TOPIC_SELECTION)
            self._publish(TOPIC_THREAD)
        self._publish(TOPIC_ROSTER)
        self._publish(TOPIC_UNREAD)

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation optimistically; ``False`` when the delete failed."""

        if not await self.client.has_token():
            return False
        self._forget(conversation_id)
        try:
            await self.conversations.remove(conversation_id)
        except AuthExpiredError:
            self._signal_auth_expired()
            return False
        except NoTokenError:
            return False
        except MessagingError as exc:
            logger.error("deleting conversation %s failed: %s", conversation_id, exc)
            self._publish(TOPIC_NOTICE, conversation_id, message=DELETE_FAILED_NOTICE)
            return False
        return True
