"""Conversation synchronization: history pages and live events merged into one view."""

from .api import HttpMessageApi, InMemoryMessageApi, MessageApi
from .config import SyncConfig
from .engine import ReconciliationEngine
from .errors import ChatSyncError, EngineClosedError, MessageApiError, TransportError
from .models import (
    Conversation,
    ConversationKind,
    Message,
    MessageStatus,
    MessageType,
    ReplySnapshot,
    message_from_payload,
    message_to_payload,
)
from .pagination import PaginationController
from .presence import PresenceTracker
from .store import ChangeKind, MessageStore, StoreChange
from .timers import TimerRegistry
from .transport import LoopbackTransport, Transport
from .typing_indicator import TypingCoordinator

__all__ = [
    "ChangeKind",
    "ChatSyncError",
    "Conversation",
    "ConversationKind",
    "EngineClosedError",
    "HttpMessageApi",
    "InMemoryMessageApi",
    "LoopbackTransport",
    "Message",
    "MessageApi",
    "MessageApiError",
    "MessageStatus",
    "MessageStore",
    "MessageType",
    "PaginationController",
    "PresenceTracker",
    "ReconciliationEngine",
    "ReplySnapshot",
    "StoreChange",
    "SyncConfig",
    "TimerRegistry",
    "Transport",
    "TransportError",
    "TypingCoordinator",
    "message_from_payload",
    "message_to_payload",
]
