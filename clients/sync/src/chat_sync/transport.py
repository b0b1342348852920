"""Transport interface consumed by the engine, plus an in-process loopback."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

from .errors import TransportError

# Inbound events
NEW_MESSAGE = "new_message"
MESSAGE_STATUS_UPDATE = "message_status_update"
CONVERSATION_MESSAGES_READ = "conversation_messages_read"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
TYPING = "typing"
USER_ONLINE = "user_online"
USER_OFFLINE = "user_offline"
USER_ONLINE_STATUS = "user_online_status"
MESSAGE_REACTION_ADDED = "message_reaction_added"
MESSAGE_REACTION_REMOVED = "message_reaction_removed"

# Outbound events
SEND_MESSAGE = "send_message"
MESSAGE_READ = "message_read"
CHECK_USER_ONLINE = "check_user_online"
MESSAGE_REACTION = "message_reaction"
REMOVE_REACTION = "remove_reaction"
JOIN_CONVERSATION = "join_conversation"
LEAVE_CONVERSATION = "leave_conversation"

Handler = Callable[[Any], None]
Responder = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class Transport(Protocol):
    def subscribe(self, event: str, handler: Handler) -> Any:
        ...

    def unsubscribe(self, handle: Any) -> None:
        ...

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        ...

    async def request(self, event: str, payload: Dict[str, Any]) -> Any:
        ...


@dataclass
class Subscription:
    event: str
    handler: Handler

    def deliver(self, payload: Any) -> None:
        self.handler(payload)


class LoopbackTransport:
    """In-process transport: handlers keyed by event name, outbound log kept in memory."""

    def __init__(self, *, connected: bool = True) -> None:
        self.connected = connected
        self.emitted: List[Tuple[str, Dict[str, Any]]] = []
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._responders: Dict[str, Responder] = {}

    def subscribe(self, event: str, handler: Handler) -> Subscription:
        subscription = Subscription(event=event, handler=handler)
        self._subscriptions.setdefault(event, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.event, None)

    def subscriber_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._subscriptions.get(event, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    def deliver(self, event: str, payload: Any) -> None:
        for subscription in list(self._subscriptions.get(event, [])):
            subscription.deliver(payload)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.connected:
            raise TransportError(event)
        self.emitted.append((event, dict(payload)))

    def emitted_payloads(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.emitted if name == event]

    def set_responder(self, event: str, responder: Optional[Responder]) -> None:
        if responder is None:
            self._responders.pop(event, None)
        else:
            self._responders[event] = responder

    async def request(self, event: str, payload: Dict[str, Any]) -> Any:
        self.emit(event, payload)
        responder = self._responders.get(event)
        if responder is None:
            # No ack will ever come; callers bound the wait with their own timeout.
            await asyncio.get_running_loop().create_future()
        result = responder(payload)
        if inspect.isawaitable(result):
            result = await result
        return result
