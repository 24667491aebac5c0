from __future__ import annotations

import bisect
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set, Tuple

from .client import MessagingClient
from .models import Message, PendingMessage, ThreadEntry, dedupe_and_sort
from .unread import UnreadTracker

logger = logging.getLogger(__name__)

# Client and server clocks may disagree by this much when matching a send
# against a first fetch.
FIRST_LOAD_MATCH_WINDOW = timedelta(minutes=2)


def _entry_time(entry: ThreadEntry):
    return entry.created_at


class MessageThreadCache:
    """Holds the rendered thread of the one open conversation.

    Confirmed messages are unique by id and every entry is kept ascending by
    ``created_at``. Pending sends are merged into each refresh until the
    pipeline confirms or discards them.
    """

    def __init__(self, client: MessagingClient, unread: UnreadTracker) -> None:
        self.client = client
        self.unread = unread
        self.conversation_id: Optional[str] = None
        self.loaded = False
        self._entries: List[ThreadEntry] = []

    @property
    def messages(self) -> List[ThreadEntry]:
        return list(self._entries)

    def confirmed(self) -> List[Message]:
        return [entry for entry in self._entries if isinstance(entry, Message)]

    def pending(self) -> List[PendingMessage]:
        return [entry for entry in self._entries if isinstance(entry, PendingMessage)]

    def __len__(self) -> int:
        return len(self._entries)

    def open(self, conversation_id: Optional[str]) -> None:
        if conversation_id == self.conversation_id:
            return
        self.clear()
        self.conversation_id = conversation_id

    def clear(self) -> None:
        self.conversation_id = None
        self.loaded = False
        self._entries = []

    async def load(self, conversation_id: str) -> List[ThreadEntry]:
        """Fetch, dedupe and sort the thread, applying it if still open."""

        if self.conversation_id is None:
            self.open(conversation_id)
        fetched = await self.client.list_messages(conversation_id)
        messages = dedupe_and_sort(fetched)
        if self.conversation_id != conversation_id:
            logger.debug("dropping thread fetch for %s; %s is open now", conversation_id, self.conversation_id)
            return list(messages)
        self._apply(messages)
        return self.messages

    def _apply(self, messages: List[Message]) -> None:
        known: Set[str] = {entry.id for entry in self._entries if isinstance(entry, Message)}
        fresh = [message for message in messages if message.id not in known]
        survivors: List[PendingMessage] = []
        claimed: Set[str] = set()
        for pending in self.pending():
            candidates = fresh
            if not self.loaded:
                # Everything is new on a first fetch; skip older messages with the same text.
                earliest = pending.created_at - FIRST_LOAD_MATCH_WINDOW
                candidates = [message for message in fresh if message.created_at >= earliest]
            match = self._delivered_copy(pending, candidates, claimed)
            if match is None:
                survivors.append(pending)
            else:
                claimed.add(match)
        entries: List[ThreadEntry] = list(messages)
        entries.extend(survivors)
        entries.sort(key=_entry_time)
        self._entries = entries
        self.loaded = True

    @staticmethod
    def _delivered_copy(pending: PendingMessage, fresh: List[Message], claimed: Set[str]) -> Optional[str]:
        # A poll can deliver the stored copy of a send before its POST returns.
        for message in fresh:
            if message.id in claimed:
                continue
            if message.sender_id == pending.sender_id and message.content == pending.content:
                return message.id
        return None

    def append_pending(self, pending: PendingMessage) -> bool:
        if pending.conversation_id != self.conversation_id:
            return False
        bisect.insort(self._entries, pending, key=_entry_time)
        return True

    def _index_of(self, key: Tuple[str, str]) -> Optional[int]:
        for index, entry in enumerate(self._entries):
            if entry.key == key:
                return index
        return None

    def confirm(self, temp_id: str, message: Message) -> bool:
        """Swap a pending entry for the server copy, in the same slot."""

        if message.conversation_id != self.conversation_id:
            return False
        pending_index = self._index_of(("pending", temp_id))
        existing_index = self._index_of(message.key)
        if pending_index is None:
            if existing_index is None:
                bisect.insort(self._entries, message, key=_entry_time)
            return True
        if existing_index is not None:
            del self._entries[pending_index]
            return True
        self._entries[pending_index] = message
        if not self._is_ordered():
            self._entries.sort(key=_entry_time)
        return True

    def discard(self, temp_id: str) -> bool:
        index = self._index_of(("pending", temp_id))
        if index is None:
            return False
        del self._entries[index]
        return True

    def _is_ordered(self) -> bool:
        return all(
            self._entries[i].created_at <= self._entries[i + 1].created_at for i in range(len(self._entries) - 1)
        )

    def mark_read(
        self,
        conversation_id: str,
        reader_id: Optional[str] = None,
        seen_through: Optional[datetime] = None,
    ) -> int:
        """Flip ``is_read`` locally and zero the unread count for the open thread.

        The read cursor moves to the newest confirmed message, or to
        ``seen_through`` (the roster's ``last_message_at``) when that is later.
        """

        if conversation_id != self.conversation_id:
            return 0
        flipped = 0
        updated: List[ThreadEntry] = []
        for entry in self._entries:
            if isinstance(entry, Message) and not entry.is_read and entry.sender_id != reader_id:
                entry = entry.mark_read()
                flipped += 1
            updated.append(entry)
        self._entries = updated
        confirmed = self.confirmed()
        through = confirmed[-1].created_at if confirmed else None
        if seen_through is not None and (through is None or seen_through > through):
            through = seen_through
        self.unread.mark_read(conversation_id, through)
        return flipped

    def last_entry(self) -> Optional[ThreadEntry]:
        if not self._entries:
            return None
        return self._entries[-1]
