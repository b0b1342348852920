from __future__ import annotations

import contextlib
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .models import Message, MessageStatus

_MERGE_SKIP = {"id", "status", "deleted_for_everyone"}
_TOMBSTONE_CLEARED = ("content", "media_url", "file_name", "file_size", "mime_type", "duration")


class ChangeKind(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    FAILED = "failed"


@dataclass(frozen=True)
class StoreChange:
    kind: ChangeKind
    message_id: str
    message: Optional[Message]


Callback = Callable[[Sequence[StoreChange]], None]


@dataclass
class Subscription:
    callback: Callback

    def deliver(self, changes: Sequence[StoreChange]) -> None:
        self.callback(changes)


def as_tombstone(message: Message, deleted_at: int | None = None) -> Message:
    cleared = {name: None for name in _TOMBSTONE_CLEARED}
    return replace(
        message,
        deleted_for_everyone=True,
        deleted_at=deleted_at if deleted_at is not None else message.deleted_at,
        **cleared,
    )


def merge_message(existing: Message, incoming: Message) -> Message:
    """Merge ``incoming`` into ``existing`` for the same id.

    Fields the incoming snapshot carries overwrite, unless the snapshot is
    logically older than what is stored, in which case only its status is
    taken. Status never regresses and tombstones never come back to life.
    """

    status = max(existing.status, incoming.status)
    if incoming.version < existing.version:
        return existing if status == existing.status else replace(existing, status=status)

    updates = {}
    for f in fields(Message):
        if f.name in _MERGE_SKIP:
            continue
        value = getattr(incoming, f.name)
        if value is not None:
            updates[f.name] = value
    merged = replace(
        existing,
        status=status,
        deleted_for_everyone=existing.deleted_for_everyone or incoming.deleted_for_everyone,
        **updates,
    )
    if merged.deleted_for_everyone:
        merged = as_tombstone(merged)
    return merged


class MessageStore:
    """Ordered, deduplicated message view for a single conversation.

    Every mutation goes through a pure merge function and is announced to
    subscribers. ``batch()`` groups several mutations into one notification.
    """

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}
        self._sorted: Optional[List[Message]] = None
        self._subscriptions: List[Subscription] = []
        self._batch_depth = 0
        self._queued: List[StoreChange] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def get(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def ordered_view(self) -> Iterator[Message]:
        """Return a single-pass iterator over messages sorted by ``(created_at, id)``."""

        if self._sorted is None:
            self._sorted = sorted(self._messages.values(), key=lambda m: m.sort_key)
        return iter(self._sorted)

    def pending(self, sender_id: str | None = None) -> List[Message]:
        return [
            m
            for m in self.ordered_view()
            if m.is_pending and (sender_id is None or m.sender_id == sender_id)
        ]

    def server_count(self) -> int:
        return sum(1 for m in self._messages.values() if not m.is_temp)

    def upsert(self, message: Message) -> bool:
        """Insert or merge ``message``; returns ``True`` when the view changed."""

        existing = self._messages.get(message.id)
        if existing is None:
            stored = message if message.reactions is not None else replace(message, reactions=frozenset())
            if stored.deleted_for_everyone:
                stored = as_tombstone(stored)
            self._put(stored, ChangeKind.ADDED)
            return True
        merged = merge_message(existing, message)
        if merged == existing:
            return False
        self._put(merged, ChangeKind.UPDATED)
        return True

    def remove(self, message_id: str) -> bool:
        return self._drop(message_id, ChangeKind.REMOVED)

    def fail(self, message_id: str) -> bool:
        """Drop an unconfirmed pending entry, announcing it as a failed send."""

        message = self._messages.get(message_id)
        if message is None or not message.is_pending:
            return False
        return self._drop(message_id, ChangeKind.FAILED)

    def mark_status(self, message_id: str, status: MessageStatus) -> bool:
        existing = self._messages.get(message_id)
        if existing is None or status <= existing.status:
            return False
        self._put(replace(existing, status=status), ChangeKind.UPDATED)
        return True

    def apply_reaction(self, message_id: str, user_id: str, emoji: str, *, add: bool = True) -> bool:
        existing = self._messages.get(message_id)
        if existing is None:
            return False
        reactions = existing.reactions or frozenset()
        key = (user_id, emoji)
        if add == (key in reactions):
            return False
        updated = reactions | {key} if add else reactions - {key}
        self._put(replace(existing, reactions=frozenset(updated)), ChangeKind.UPDATED)
        return True

    def edit(self, message_id: str, content: str | None, edited_at: int) -> bool:
        existing = self._messages.get(message_id)
        if existing is None or existing.is_tombstone or edited_at < existing.version:
            return False
        edited = replace(
            existing,
            content=content,
            edited_at=edited_at,
            updated_at=max(edited_at, existing.updated_at or 0),
        )
        if edited == existing:
            return False
        self._put(edited, ChangeKind.UPDATED)
        return True

    def tombstone(self, message_id: str, deleted_at: int) -> bool:
        existing = self._messages.get(message_id)
        if existing is None or existing.is_tombstone or deleted_at < existing.version:
            return False
        self._put(as_tombstone(existing, deleted_at), ChangeKind.UPDATED)
        return True

    def subscribe(self, callback: Callback) -> Subscription:
        subscription = Subscription(callback=callback)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return

    def unsubscribe_all(self) -> None:
        self._subscriptions.clear()

    @contextlib.contextmanager
    def batch(self) -> Iterator[None]:
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._flush()

    def _put(self, message: Message, kind: ChangeKind) -> None:
        self._messages[message.id] = message
        self._sorted = None
        self._announce(StoreChange(kind=kind, message_id=message.id, message=message))

    def _drop(self, message_id: str, kind: ChangeKind) -> bool:
        message = self._messages.pop(message_id, None)
        if message is None:
            return False
        self._sorted = None
        self._announce(StoreChange(kind=kind, message_id=message_id, message=message))
        return True

    def _announce(self, change: StoreChange) -> None:
        self._queued.append(change)
        if self._batch_depth == 0:
            self._flush()

    def _flush(self) -> None:
        if not self._queued:
            return
        changes, self._queued = tuple(self._queued), []
        for subscription in list(self._subscriptions):
            subscription.deliver(changes)
