from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

TOPIC_ROSTER = "roster"
TOPIC_THREAD = "thread"
TOPIC_UNREAD = "unread"
TOPIC_SELECTION = "selection"
TOPIC_COMPOSE = "compose"
TOPIC_NOTICE = "notice"
TOPIC_AUTH = "auth"

ALL_TOPICS = (
    TOPIC_ROSTER,
    TOPIC_THREAD,
    TOPIC_UNREAD,
    TOPIC_SELECTION,
    TOPIC_COMPOSE,
    TOPIC_NOTICE,
    TOPIC_AUTH,
)


@dataclass(frozen=True)
class ChatEvent:
    """A change notification; observers read the new state from the engine."""

    topic: str
    conversation_id: Optional[str] = None
    scroll_to_end: bool = False
    message: Optional[str] = None


Callback = Callable[[ChatEvent], None]


@dataclass
class Subscription:
    surface: str
    topic: str
    callback: Callback

    def deliver(self, event: ChatEvent) -> None:
        self.callback(event)


class SubscriptionHub:
    """Registers UI surfaces and fans change events out to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, surface: str, topic: str, callback: Callback) -> Subscription:
        if topic not in ALL_TOPICS:
            raise ValueError(f"unknown topic: {topic}")
        subscription = Subscription(surface=surface, topic=topic, callback=callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def subscribe_all(self, surface: str, callback: Callback) -> List[Subscription]:
        return [self.subscribe(surface, topic, callback) for topic in ALL_TOPICS]

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def unsubscribe_surface(self, surface: str) -> None:
        for topic in list(self._subscriptions):
            for subscription in list(self._subscriptions.get(topic, [])):
                if subscription.surface == surface:
                    self.unsubscribe(subscription)

    def publish(self, event: ChatEvent) -> None:
        for subscription in list(self._subscriptions.get(event.topic, [])):
            subscription.deliver(event)
