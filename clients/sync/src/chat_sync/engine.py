"""Reconciliation engine: one conversation view fed by REST pages and live events."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional

from .api import MessageApi
from .config import SyncConfig
from .errors import EngineClosedError, MessageApiError, TransportError
from .models import (
    Conversation,
    Message,
    MessageStatus,
    MessageType,
    ReplySnapshot,
    message_from_payload,
    new_temp_id,
    now_ms,
    parse_timestamp_ms,
    pick,
)
from .pagination import PaginationController
from .presence import PresenceTracker
from .store import Callback, MessageStore, Subscription
from .timers import TimerRegistry
from .transport import (
    CONVERSATION_MESSAGES_READ,
    JOIN_CONVERSATION,
    LEAVE_CONVERSATION,
    MESSAGE_DELETED,
    MESSAGE_EDITED,
    MESSAGE_REACTION,
    MESSAGE_REACTION_ADDED,
    MESSAGE_REACTION_REMOVED,
    MESSAGE_READ,
    MESSAGE_STATUS_UPDATE,
    NEW_MESSAGE,
    REMOVE_REACTION,
    SEND_MESSAGE,
    TYPING,
    USER_OFFLINE,
    USER_ONLINE,
    USER_ONLINE_STATUS,
    Transport,
)
from .typing_indicator import TypingCoordinator

logger = logging.getLogger(__name__)

SWEEP_TIMER = "pending.sweep"

STATE_NEW = "new"
STATE_OPEN = "open"
STATE_CLOSED = "closed"


def _same_content(a: Message, b: Message) -> bool:
    return (a.content or "").strip() == (b.content or "").strip()


class ReconciliationEngine:
    """Merges history pages and transport events into one ordered view.

    Handlers run synchronously, one event at a time, so observers only ever
    see whole updates. Awaits happen only around REST calls and transport
    requests; events keep applying while those are outstanding.
    """

    def __init__(
        self,
        conversation: Conversation,
        self_user_id: str,
        transport: Transport,
        api: MessageApi,
        *,
        config: SyncConfig | None = None,
        now_func: Callable[[], int] = now_ms,
        on_presence_change: Optional[Callable[[bool], None]] = None,
        on_typing_change: Optional[Callable[[FrozenSet[str]], None]] = None,
    ) -> None:
        self.conversation = conversation
        self.self_user_id = self_user_id
        self.config = config or SyncConfig()
        self.transport = transport
        self.api = api
        self.store = MessageStore()
        self.timers = TimerRegistry()
        self.pagination = PaginationController(api, self.store, conversation.id, page_size=self.config.page_size)
        self.typing = TypingCoordinator(
            transport,
            conversation.id,
            self_user_id,
            self.timers,
            self.config,
            on_change=on_typing_change,
        )
        self.presence: Optional[PresenceTracker] = None
        peer_id = conversation.peer_id(self_user_id)
        if peer_id is not None:
            self.presence = PresenceTracker(
                transport,
                peer_id,
                self.timers,
                self.config,
                on_change=self._presence_changed(on_presence_change),
            )
        self._now = now_func
        self._state = STATE_NEW
        self._subscriptions: List[Any] = []
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            NEW_MESSAGE: self._on_new_message,
            MESSAGE_STATUS_UPDATE: self._on_status_update,
            CONVERSATION_MESSAGES_READ: self._on_conversation_read,
            MESSAGE_EDITED: self._on_edited,
            MESSAGE_DELETED: self._on_deleted,
            MESSAGE_REACTION_ADDED: self._on_reaction_added,
            MESSAGE_REACTION_REMOVED: self._on_reaction_removed,
            TYPING: self.typing.on_remote,
            USER_ONLINE: self._on_user_online,
            USER_OFFLINE: self._on_user_offline,
            USER_ONLINE_STATUS: self._on_user_online_status,
        }

    # lifecycle

    @property
    def is_open(self) -> bool:
        return self._state == STATE_OPEN

    @property
    def closed(self) -> bool:
        return self._state == STATE_CLOSED

    async def __aenter__(self) -> "ReconciliationEngine":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()
        await self.wait_closed()

    async def open(self) -> None:
        if self._state == STATE_OPEN:
            return
        if self._state == STATE_CLOSED:
            raise EngineClosedError(self.conversation.id)
        self._state = STATE_OPEN
        for event, handler in self._handlers.items():
            self._subscriptions.append(self.transport.subscribe(event, self._guarded(event, handler)))
        self._emit(JOIN_CONVERSATION, {"conversationId": self.conversation.id})
        self.timers.start_periodic(SWEEP_TIMER, self.config.sweep_interval_seconds, self.sweep_pending)
        if self.presence is not None:
            self.presence.start()
        logger.debug("opened conversation %s", self.conversation.id)
        await self.load_initial()

    def close(self) -> None:
        """Detach from the transport and cancel every timer, synchronously."""

        if self._state != STATE_OPEN:
            self._state = STATE_CLOSED
            return
        self._state = STATE_CLOSED
        for subscription in self._subscriptions:
            self.transport.unsubscribe(subscription)
        self._subscriptions.clear()
        self.typing.stop()
        if self.presence is not None:
            self.presence.stop()
        self.timers.cancel_all()
        self._emit(LEAVE_CONVERSATION, {"conversationId": self.conversation.id})
        self.store.unsubscribe_all()
        logger.debug("closed conversation %s", self.conversation.id)

    async def wait_closed(self) -> None:
        await self.timers.wait_closed()

    def _ensure_open(self) -> None:
        if self._state != STATE_OPEN:
            raise EngineClosedError(self.conversation.id)

    def _guarded(self, event: str, handler: Callable[[Dict[str, Any]], None]) -> Callable[[Any], None]:
        def _dispatch(payload: Any) -> None:
            if self._state != STATE_OPEN:
                return
            if not isinstance(payload, dict):
                logger.warning("dropping %s event with non-object payload", event)
                return
            handler(payload)

        return _dispatch

    def _emit(self, event: str, payload: Dict[str, Any]) -> bool:
        try:
            self.transport.emit(event, payload)
        except TransportError as exc:
            logger.warning("could not emit %s: %s", event, exc)
            return False
        return True

    def _presence_changed(self, callback: Optional[Callable[[bool], None]]) -> Callable[[bool], None]:
        def _changed(online: bool) -> None:
            self.conversation.peer_online = online
            if callback is not None:
                callback(online)

        return _changed

    # queries

    def view(self) -> Iterator[Message]:
        return self.store.ordered_view()

    def messages(self) -> List[Message]:
        return list(self.store.ordered_view())

    def subscribe(self, callback: Callback) -> Subscription:
        return self.store.subscribe(callback)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.store.unsubscribe(subscription)

    @property
    def has_more(self) -> bool:
        return self.pagination.has_more

    @property
    def is_peer_online(self) -> Optional[bool]:
        return self.presence.is_online if self.presence is not None else None

    @property
    def is_peer_typing(self) -> bool:
        return self.typing.is_peer_typing

    @property
    def typing_users(self) -> FrozenSet[str]:
        return self.typing.typing_users

    def unread_count(self) -> int:
        return sum(
            1
            for m in self.store.ordered_view()
            if m.sender_id != self.self_user_id and m.status < MessageStatus.READ and m.deleted_at is None
        )

    # history

    async def load_initial(self) -> int:
        self._ensure_open()
        self.pagination.reset()
        added = await self.pagination.load_more()
        if self.is_open and self.config.auto_mark_read and self.unread_count() > 0:
            try:
                await self.mark_conversation_read()
            except MessageApiError as exc:
                logger.warning("could not mark %s read after load: %s", self.conversation.id, exc)
        return added

    async def load_more(self) -> int:
        self._ensure_open()
        return await self.pagination.load_more()

    async def search(self, query: str, limit: int = 50) -> List[Message]:
        self._ensure_open()
        return await self.api.search_messages(self.conversation.id, query, limit)

    # local actions

    def keystroke(self) -> None:
        self._ensure_open()
        self.typing.keystroke()

    def stop_typing(self) -> None:
        self.typing.stop_typing()

    async def send(
        self,
        content: Optional[str] = None,
        *,
        message_type: MessageType = MessageType.TEXT,
        media_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        mime_type: Optional[str] = None,
        duration: Optional[float] = None,
        reply_to: Optional[Message] = None,
        via_api: bool = False,
    ) -> Message:
        """Show a Pending message at once and hand it to the server.

        The returned entry is replaced by the confirmed one when the server
        echoes it; if that never happens the staleness sweep reports it failed.
        """

        self._ensure_open()
        text = content.strip() if content is not None else None
        if message_type == MessageType.TEXT and not text:
            raise ValueError("text messages need non-empty content")
        if message_type != MessageType.TEXT and not media_url and message_type != MessageType.LOCATION:
            raise ValueError(f"{message_type.value} messages need a media_url")

        created_at = self._now()
        temp_id = new_temp_id(created_at)
        pending = Message(
            id=temp_id,
            conversation_id=self.conversation.id,
            sender_id=self.self_user_id,
            message_type=message_type,
            content=text,
            media_url=media_url,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            duration=duration,
            reply_to=ReplySnapshot.from_message(reply_to) if reply_to is not None else None,
            reactions=frozenset(),
            status=MessageStatus.PENDING,
            created_at=created_at,
            correlation_id=temp_id,
        )
        self.store.upsert(pending)
        self.typing.stop_typing()

        if via_api:
            try:
                snapshot = await self.api.send_message(
                    self.conversation.id,
                    message_type=message_type,
                    content=text,
                    media_url=media_url,
                    reply_to_message_id=reply_to.id if reply_to is not None else None,
                    correlation_id=temp_id,
                )
            except MessageApiError as exc:
                logger.warning("send of %s failed, leaving it pending: %s", temp_id, exc)
                return pending
            if snapshot is not None and self.is_open:
                if snapshot.correlation_id is None:
                    snapshot = replace(snapshot, correlation_id=temp_id)
                self._apply_snapshot(snapshot)
            return pending

        payload: Dict[str, Any] = {
            "conversationId": self.conversation.id,
            "messageType": message_type.value,
            "correlationId": temp_id,
        }
        if text is not None:
            payload["content"] = text
        optional = {
            "mediaUrl": media_url,
            "fileName": file_name,
            "fileSize": file_size,
            "mimeType": mime_type,
            "duration": duration,
            "replyToMessageId": reply_to.id if reply_to is not None else None,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if not self._emit(SEND_MESSAGE, payload):
            logger.warning("message %s stays pending until the transport reconnects", temp_id)
        return pending

    async def edit_message(self, message_id: str, content: str) -> Optional[Message]:
        self._ensure_open()
        snapshot = await self.api.edit_message(message_id, content)
        if not self.is_open:
            return snapshot
        if snapshot is not None:
            self._apply_snapshot(snapshot)
        else:
            self._on_edited({"messageId": message_id, "content": content})
        return self.store.get(message_id)

    async def delete_message(self, message_id: str, *, for_everyone: bool = False) -> Optional[Message]:
        self._ensure_open()
        snapshot = await self.api.delete_message(message_id, for_everyone)
        if not self.is_open:
            return snapshot
        if for_everyone and snapshot is not None and snapshot.deleted_for_everyone:
            self._apply_snapshot(snapshot)
        else:
            self._on_deleted(
                {
                    "messageId": message_id,
                    "conversationId": self.conversation.id,
                    "deleteForEveryone": for_everyone,
                    "userId": self.self_user_id,
                }
            )
        return self.store.get(message_id)

    async def star_message(self, message_id: str) -> Optional[Message]:
        return await self._set_starred(message_id, True)

    async def unstar_message(self, message_id: str) -> Optional[Message]:
        return await self._set_starred(message_id, False)

    async def _set_starred(self, message_id: str, starred: bool) -> Optional[Message]:
        self._ensure_open()
        if starred:
            snapshot = await self.api.star_message(message_id)
        else:
            snapshot = await self.api.unstar_message(message_id)
        if not self.is_open:
            return snapshot
        if snapshot is None:
            existing = self.store.get(message_id)
            if existing is None:
                return None
            snapshot = replace(existing, starred=starred)
        self._apply_snapshot(snapshot)
        return self.store.get(message_id)

    async def add_reaction(self, message_id: str, emoji: str) -> Optional[Message]:
        self._ensure_open()
        snapshot = await self.api.add_reaction(message_id, emoji)
        if not self.is_open:
            return snapshot
        if snapshot is not None:
            self._apply_snapshot(snapshot)
        self._on_reaction_added({"messageId": message_id, "userId": self.self_user_id, "reaction": emoji})
        self._emit(MESSAGE_REACTION, {"messageId": message_id, "conversationId": self.conversation.id, "reaction": emoji})
        return self.store.get(message_id)

    async def remove_reaction(self, message_id: str, emoji: str) -> Optional[Message]:
        self._ensure_open()
        snapshot = await self.api.remove_reaction(message_id, emoji)
        if not self.is_open:
            return snapshot
        if snapshot is not None:
            self._apply_snapshot(snapshot)
        self._on_reaction_removed({"messageId": message_id, "userId": self.self_user_id, "reaction": emoji})
        self._emit(REMOVE_REACTION, {"messageId": message_id, "conversationId": self.conversation.id, "reaction": emoji})
        return self.store.get(message_id)

    async def toggle_reaction(self, message_id: str, emoji: str) -> Optional[Message]:
        existing = self.store.get(message_id)
        if existing is not None and existing.has_reaction(self.self_user_id, emoji):
            return await self.remove_reaction(message_id, emoji)
        return await self.add_reaction(message_id, emoji)

    async def mark_conversation_read(self) -> None:
        self._ensure_open()
        await self.api.mark_read(self.conversation.id)
        if not self.is_open:
            return
        self._emit(MESSAGE_READ, {"conversationId": self.conversation.id})
        with self.store.batch():
            for message in list(self.store.ordered_view()):
                if message.sender_id != self.self_user_id:
                    self.store.mark_status(message.id, MessageStatus.READ)

    def sweep_pending(self) -> List[Message]:
        """Drop Pending entries that were never confirmed and report them failed."""

        horizon = self._now() - self.config.pending_timeout_ms
        stale = [m for m in self.store.pending(self.self_user_id) if (m.created_at or 0) < horizon]
        if not stale:
            return []
        with self.store.batch():
            for message in stale:
                self.store.fail(message.id)
        for message in stale:
            logger.warning(
                "send %s in %s not confirmed within %ss; marked failed",
                message.id,
                self.conversation.id,
                self.config.pending_timeout_seconds,
            )
        return stale

    # event handlers

    def _wrong_conversation(self, payload: Dict[str, Any], event: str) -> bool:
        conversation_id = pick(payload, "conversationId", "conversation_id")
        if conversation_id is not None and conversation_id != self.conversation.id:
            logger.debug("ignoring %s for conversation %s", event, conversation_id)
            return True
        return False

    def _apply_snapshot(self, snapshot: Message) -> None:
        if snapshot.conversation_id != self.conversation.id:
            logger.debug("ignoring snapshot %s from conversation %s", snapshot.id, snapshot.conversation_id)
            return
        if snapshot.sender_id == self.self_user_id and snapshot.id not in self.store:
            self._confirm(snapshot)
        else:
            self.store.upsert(snapshot)

    def _on_new_message(self, payload: Dict[str, Any]) -> None:
        message = message_from_payload(payload)
        if message is None:
            logger.warning("dropping malformed new_message (keys=%s)", sorted(payload))
            return
        if message.conversation_id != self.conversation.id:
            logger.debug("ignoring new_message %s for conversation %s", message.id, message.conversation_id)
            return
        if message.is_temp:
            logger.warning("dropping new_message carrying a local temp id %s", message.id)
            return
        if message.sender_id == self.self_user_id:
            self._confirm(message)
            return
        self.store.upsert(message)
        if self.config.auto_mark_read and message.status < MessageStatus.READ and message.deleted_at is None:
            if self._emit(MESSAGE_READ, {"messageId": message.id, "conversationId": self.conversation.id}):
                self.store.mark_status(message.id, MessageStatus.READ)

    def _confirm(self, message: Message) -> None:
        confirmed = message if message.status >= MessageStatus.SENT else replace(message, status=MessageStatus.SENT)
        match = self._match_pending(confirmed)
        with self.store.batch():
            if match is not None:
                for pending in self.store.pending(self.self_user_id):
                    if pending.sort_key <= match.sort_key:
                        self.store.remove(pending.id)
            self.store.upsert(confirmed)
        if match is not None:
            logger.debug("confirmed %s as %s", match.id, confirmed.id)

    def _match_pending(self, confirmed: Message) -> Optional[Message]:
        pending = self.store.pending(self.self_user_id)
        if not pending:
            return None
        if confirmed.correlation_id is not None:
            for candidate in pending:
                if confirmed.correlation_id in (candidate.id, candidate.correlation_id):
                    return candidate
            # Echo of a send from another device of the same user.
            return None
        horizon = self._now() - self.config.confirm_window_ms
        # A redelivered copy that is already stored only claims sends made before it.
        stored = self.store.get(confirmed.id)
        latest = stored.created_at if stored is not None else None
        candidates = [
            m
            for m in pending
            if m.message_type == confirmed.message_type
            and _same_content(m, confirmed)
            and (m.created_at or 0) >= horizon
            and (latest is None or (m.created_at or 0) <= latest)
        ]
        return max(candidates, key=lambda m: m.sort_key, default=None)

    def _on_status_update(self, payload: Dict[str, Any]) -> None:
        if self._wrong_conversation(payload, MESSAGE_STATUS_UPDATE):
            return
        status = MessageStatus.parse(payload.get("status"))
        if status is None:
            logger.warning("dropping message_status_update with status %r", payload.get("status"))
            return
        message_id = pick(payload, "messageId", "message_id")
        if isinstance(message_id, str):
            if not self.store.mark_status(message_id, status) and message_id not in self.store:
                logger.debug("status %s for unknown message %s", status.wire, message_id)
            return
        if pick(payload, "conversationId", "conversation_id") is None:
            logger.warning("dropping message_status_update without messageId or conversationId")
            return
        self._advance_own(status)

    def _on_conversation_read(self, payload: Dict[str, Any]) -> None:
        if pick(payload, "conversationId", "conversation_id") != self.conversation.id:
            logger.debug("ignoring conversation_messages_read for another conversation")
            return
        if pick(payload, "userId", "user_id") == self.self_user_id:
            return
        self._advance_own(MessageStatus.READ)

    def _advance_own(self, status: MessageStatus) -> None:
        with self.store.batch():
            for message in list(self.store.ordered_view()):
                if message.sender_id == self.self_user_id and MessageStatus.SENT <= message.status < status:
                    self.store.mark_status(message.id, status)

    def _local_stamp(self, message_id: str) -> int:
        # Untimestamped events apply on top of whatever is stored.
        existing = self.store.get(message_id)
        return max(self._now(), existing.version if existing is not None else 0)

    def _on_edited(self, payload: Dict[str, Any]) -> None:
        if self._wrong_conversation(payload, MESSAGE_EDITED):
            return
        message_id = pick(payload, "messageId", "message_id", "id")
        content = payload.get("content")
        if not isinstance(message_id, str) or not isinstance(content, str):
            logger.warning("dropping malformed message_edited event")
            return
        if message_id not in self.store:
            logger.debug("edit for %s not loaded in this view; dropped", message_id)
            return
        edited_at = parse_timestamp_ms(pick(payload, "editedAt", "edited_at", "updatedAt", "updated_at"))
        if edited_at is None:
            edited_at = self._local_stamp(message_id)
        if not self.store.edit(message_id, content, edited_at):
            logger.debug("stale or no-op edit for %s ignored", message_id)

    def _on_deleted(self, payload: Dict[str, Any]) -> None:
        if self._wrong_conversation(payload, MESSAGE_DELETED):
            return
        message_id = pick(payload, "messageId", "message_id", "id")
        if not isinstance(message_id, str):
            logger.warning("dropping message_deleted without messageId")
            return
        for_everyone = pick(payload, "deleteForEveryone", "deleteForAll", "deletedForEveryone", "deleted_for_all")
        if for_everyone is True:
            deleted_at = parse_timestamp_ms(pick(payload, "deletedAt", "deleted_at", "updatedAt", "updated_at"))
            if deleted_at is None:
                deleted_at = self._local_stamp(message_id)
            if not self.store.tombstone(message_id, deleted_at):
                logger.debug("delete-for-everyone of %s ignored", message_id)
            return
        if pick(payload, "userId", "user_id", "deletedBy") != self.self_user_id:
            logger.debug("delete-for-me of %s by another user ignored", message_id)
            return
        self.store.remove(message_id)

    def _reaction_args(self, payload: Dict[str, Any], event: str) -> Optional[tuple[str, str, str]]:
        if self._wrong_conversation(payload, event):
            return None
        message_id = pick(payload, "messageId", "message_id")
        user_id = pick(payload, "userId", "user_id")
        emoji = pick(payload, "reaction", "emoji")
        if not all(isinstance(v, str) and v for v in (message_id, user_id, emoji)):
            logger.warning("dropping malformed %s event", event)
            return None
        return message_id, user_id, emoji

    def _on_reaction_added(self, payload: Dict[str, Any]) -> None:
        args = self._reaction_args(payload, MESSAGE_REACTION_ADDED)
        if args is not None:
            message_id, user_id, emoji = args
            self.store.apply_reaction(message_id, user_id, emoji, add=True)

    def _on_reaction_removed(self, payload: Dict[str, Any]) -> None:
        args = self._reaction_args(payload, MESSAGE_REACTION_REMOVED)
        if args is not None:
            message_id, user_id, emoji = args
            self.store.apply_reaction(message_id, user_id, emoji, add=False)

    def _on_user_online(self, payload: Dict[str, Any]) -> None:
        if self.presence is not None:
            self.presence.on_online(payload)

    def _on_user_offline(self, payload: Dict[str, Any]) -> None:
        if self.presence is not None:
            self.presence.on_offline(payload)

    def _on_user_online_status(self, payload: Dict[str, Any]) -> None:
        if self.presence is not None:
            self.presence.on_status(payload)
