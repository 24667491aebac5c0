"""Messaging synchronization engine for the storefront app."""

from .client import (
    AuthExpiredError,
    MessagingClient,
    MessagingError,
    NoTokenError,
    ServiceError,
    TransportError,
)
from .config import SyncConfig
from .conversations import ConversationStore
from .engine import MessagingSync
from .hub import ChatEvent, Subscription, SubscriptionHub
from .models import Conversation, LastMessage, Message, PendingMessage
from .scheduler import PollHandle, SyncScheduler
from .sending import ComposeState, OptimisticSendPipeline, SendAttempt
from .threads import MessageThreadCache
from .tokens import FileTokenProvider, StaticTokenProvider, TokenProvider
from .unread import ReadCursors, UnreadTracker

__all__ = [
    "AuthExpiredError",
    "ChatEvent",
    "ComposeState",
    "Conversation",
    "ConversationStore",
    "FileTokenProvider",
    "LastMessage",
    "Message",
    "MessageThreadCache",
    "MessagingClient",
    "MessagingError",
    "MessagingSync",
    "NoTokenError",
    "OptimisticSendPipeline",
    "PendingMessage",
    "PollHandle",
    "ReadCursors",
    "SendAttempt",
    "ServiceError",
    "StaticTokenProvider",
    "Subscription",
    "SubscriptionHub",
    "SyncConfig",
    "SyncScheduler",
    "TokenProvider",
    "TransportError",
    "UnreadTracker",
]
