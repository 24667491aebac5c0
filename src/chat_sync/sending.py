from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .client import MessagingClient, MessagingError
from .hub import TOPIC_COMPOSE, TOPIC_NOTICE, TOPIC_THREAD, ChatEvent, SubscriptionHub
from .models import TEMP_ID_PREFIX, Message, PendingMessage, utc_now
from .threads import MessageThreadCache

logger = logging.getLogger(__name__)

STATE_PENDING = "pending"
STATE_CONFIRMED = "confirmed"
STATE_ROLLED_BACK = "rolled_back"

SEND_FAILED_NOTICE = "Failed to send message. Please try again."


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{secrets.token_urlsafe(12)}"


@dataclass
class ComposeState:
    """The shared compose box: its draft text and whether a send is in flight."""

    text: str = ""
    in_flight: int = 0

    @property
    def sending(self) -> bool:
        return self.in_flight > 0


@dataclass
class SendAttempt:
    pending: PendingMessage
    state: str = STATE_PENDING
    message: Optional[Message] = None
    error: Optional[BaseException] = None

    @property
    def conversation_id(self) -> str:
        return self.pending.conversation_id


class OptimisticSendPipeline:
    """Shows a send immediately, then reconciles it with the service or rolls it back.

    Each ``submit`` is its own attempt: ``pending`` until the service answers,
    then ``confirmed`` (the pending entry is replaced by the server copy in
    the same slot) or ``rolled_back`` (the entry is removed and the draft is
    restored). Distinct submissions are not serialized.
    """

    def __init__(
        self,
        client: MessagingClient,
        thread: MessageThreadCache,
        hub: SubscriptionHub,
        compose: Optional[ComposeState] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.thread = thread
        self.hub = hub
        self.compose = compose if compose is not None else ComposeState()
        self._clock = clock

    def begin(
        self,
        conversation_id: Optional[str],
        content: Optional[str],
        current_user_id: Optional[str],
    ) -> Optional[SendAttempt]:
        trimmed = (content or "").strip()
        if not trimmed or not conversation_id or not current_user_id:
            return None
        pending = PendingMessage(
            temp_id=new_temp_id(),
            conversation_id=conversation_id,
            sender_id=current_user_id,
            content=trimmed,
            created_at=self._clock(),
        )
        self.thread.append_pending(pending)
        self.compose.text = ""
        self.compose.in_flight += 1
        self.hub.publish(ChatEvent(TOPIC_THREAD, conversation_id, scroll_to_end=True))
        self.hub.publish(ChatEvent(TOPIC_COMPOSE, conversation_id))
        return SendAttempt(pending=pending)

    async def deliver(self, attempt: SendAttempt) -> SendAttempt:
        pending = attempt.pending
        try:
            message = await self.client.send_message(pending.conversation_id, pending.content)
        except MessagingError as exc:
            logger.error("send to conversation %s failed: %s", pending.conversation_id, exc)
            self._roll_back(attempt, exc, notify=True)
        except BaseException as exc:
            self._roll_back(attempt, exc, notify=False)
            raise
        else:
            self._reconcile(attempt, message)
        finally:
            self.compose.in_flight = max(0, self.compose.in_flight - 1)
            self.hub.publish(ChatEvent(TOPIC_COMPOSE, pending.conversation_id))
        return attempt

    async def submit(
        self,
        conversation_id: Optional[str],
        content: Optional[str],
        current_user_id: Optional[str],
    ) -> Optional[SendAttempt]:
        attempt = self.begin(conversation_id, content, current_user_id)
        if attempt is None:
            return None
        return await self.deliver(attempt)

    def _reconcile(self, attempt: SendAttempt, message: Message) -> None:
        attempt.state = STATE_CONFIRMED
        attempt.message = message
        if self.thread.confirm(attempt.pending.temp_id, message):
            self.hub.publish(ChatEvent(TOPIC_THREAD, attempt.conversation_id, scroll_to_end=True))

    def _roll_back(self, attempt: SendAttempt, error: BaseException, *, notify: bool) -> None:
        attempt.state = STATE_ROLLED_BACK
        attempt.error = error
        self.thread.discard(attempt.pending.temp_id)
        self.compose.text = attempt.pending.content
        self.hub.publish(ChatEvent(TOPIC_THREAD, attempt.conversation_id))
        if notify:
            self.hub.publish(ChatEvent(TOPIC_NOTICE, attempt.conversation_id, message=SEND_FAILED_NOTICE))
