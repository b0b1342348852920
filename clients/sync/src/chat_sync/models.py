"""Message and conversation records plus wire-payload normalization."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

TEMP_ID_PREFIX = "temp_"

Reaction = Tuple[str, str]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_temp_id(ts_ms: int | None = None) -> str:
    stamp = now_ms() if ts_ms is None else ts_ms
    return f"{TEMP_ID_PREFIX}{stamp}_{secrets.token_hex(4)}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    LOCATION = "location"
    VOICE = "voice"

    @classmethod
    def parse(cls, value: Any) -> Optional["MessageType"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class MessageStatus(IntEnum):
    PENDING = 0
    SENT = 1
    DELIVERED = 2
    READ = 3

    @classmethod
    def parse(cls, value: Any) -> Optional["MessageStatus"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        return cls.__members__.get(value.strip().upper())

    @property
    def wire(self) -> str:
        return self.name.lower()


class ConversationKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    TASK_GROUP = "task-group"


@dataclass(frozen=True)
class ReplySnapshot:
    id: str
    sender_name: Optional[str] = None
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT

    @classmethod
    def from_message(cls, message: "Message") -> "ReplySnapshot":
        return cls(
            id=message.id,
            sender_name=message.sender_name,
            content=message.content,
            message_type=message.message_type,
        )


@dataclass(frozen=True)
class Message:
    """One entry of a conversation view.

    ``None`` on an optional field means "not carried by this snapshot", which is
    what lets the store merge partial snapshots field by field.
    """

    id: str
    conversation_id: str
    sender_id: str
    message_type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    media_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    duration: Optional[float] = None
    sender_name: Optional[str] = None
    reply_to: Optional[ReplySnapshot] = None
    reactions: Optional[FrozenSet[Reaction]] = None
    status: MessageStatus = MessageStatus.SENT
    edited_at: Optional[int] = None
    deleted_at: Optional[int] = None
    deleted_for_everyone: bool = False
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    correlation_id: Optional[str] = None
    starred: Optional[bool] = None

    @property
    def is_temp(self) -> bool:
        return is_temp_id(self.id)

    @property
    def is_pending(self) -> bool:
        return self.status == MessageStatus.PENDING

    @property
    def is_tombstone(self) -> bool:
        return self.deleted_for_everyone

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.created_at or 0, self.id)

    @property
    def version(self) -> int:
        """Logical timestamp of the newest state this snapshot describes."""

        stamps = [s for s in (self.updated_at, self.edited_at, self.deleted_at, self.created_at) if s is not None]
        return max(stamps) if stamps else 0

    def reaction_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for _, emoji in sorted(self.reactions or ()):
            counts[emoji] = counts.get(emoji, 0) + 1
        return counts

    def has_reaction(self, user_id: str, emoji: str) -> bool:
        return (user_id, emoji) in (self.reactions or ())


@dataclass
class Conversation:
    id: str
    kind: ConversationKind = ConversationKind.DIRECT
    members: FrozenSet[str] = field(default_factory=frozenset)
    peer_online: Optional[bool] = None

    @property
    def is_direct(self) -> bool:
        return self.kind == ConversationKind.DIRECT

    def peer_id(self, self_user_id: str) -> Optional[str]:
        if not self.is_direct:
            return None
        others = sorted(m for m in self.members if m != self_user_id)
        return others[0] if others else None


def pick(payload: Dict[str, Any], *keys: str) -> Any:
    """Return the first non-``None`` value among ``keys`` (snake or camel case)."""

    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Normalize ISO-8601 strings, epoch seconds or epoch milliseconds to ms."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Anything below ~1973 in milliseconds is taken to be seconds.
        return int(value * 1000) if abs(value) < 100_000_000_000 else int(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return parse_timestamp_ms(float(text))
    except ValueError:
        pass
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _parse_reactions(raw: Any) -> Optional[FrozenSet[Reaction]]:
    if raw is None:
        return None
    if not isinstance(raw, list):
        return frozenset()
    parsed = set()
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        user_id = pick(entry, "user_id", "userId")
        emoji = pick(entry, "reaction", "emoji")
        if isinstance(user_id, str) and isinstance(emoji, str):
            parsed.add((user_id, emoji))
    return frozenset(parsed)


def _parse_reply(raw: Any) -> Optional[ReplySnapshot]:
    if not isinstance(raw, dict):
        return None
    reply_id = raw.get("id")
    if not isinstance(reply_id, str) or not reply_id:
        return None
    return ReplySnapshot(
        id=reply_id,
        sender_name=_opt_str(pick(raw, "sender_name", "senderName")),
        content=_opt_str(raw.get("content")),
        message_type=MessageType.parse(pick(raw, "message_type", "messageType", "type")) or MessageType.TEXT,
    )


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def message_from_payload(payload: Any) -> Optional[Message]:
    """Build a :class:`Message` from a REST or transport payload.

    Returns ``None`` when the payload lacks an id, conversation id or sender id.
    """

    if not isinstance(payload, dict):
        return None
    message_id = payload.get("id")
    conversation_id = pick(payload, "conversation_id", "conversationId")
    sender_id = pick(payload, "sender_id", "senderId")
    if not all(isinstance(v, str) and v for v in (message_id, conversation_id, sender_id)):
        return None

    deleted_for_everyone = pick(payload, "deleted_for_all", "deletedForAll", "deleted_for_everyone", "deletedForEveryone")
    starred = pick(payload, "is_starred", "isStarred", "starred")
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        message_type=MessageType.parse(pick(payload, "message_type", "messageType", "type")) or MessageType.TEXT,
        content=_opt_str(payload.get("content")),
        media_url=_opt_str(pick(payload, "media_url", "mediaUrl")),
        file_name=_opt_str(pick(payload, "file_name", "fileName")),
        file_size=_opt_int(pick(payload, "file_size", "fileSize")),
        mime_type=_opt_str(pick(payload, "mime_type", "mimeType")),
        duration=_opt_float(payload.get("duration")),
        sender_name=_opt_str(pick(payload, "sender_name", "senderName")),
        reply_to=_parse_reply(pick(payload, "reply_to", "replyTo")),
        reactions=_parse_reactions(payload.get("reactions")),
        status=MessageStatus.parse(payload.get("status")) or MessageStatus.SENT,
        edited_at=parse_timestamp_ms(pick(payload, "edited_at", "editedAt")),
        deleted_at=parse_timestamp_ms(pick(payload, "deleted_at", "deletedAt")),
        deleted_for_everyone=deleted_for_everyone is True,
        created_at=parse_timestamp_ms(pick(payload, "created_at", "createdAt")),
        updated_at=parse_timestamp_ms(pick(payload, "updated_at", "updatedAt")),
        correlation_id=_opt_str(pick(payload, "correlation_id", "correlationId", "client_message_id", "clientMessageId")),
        starred=starred if isinstance(starred, bool) else None,
    )


def messages_from_payloads(payloads: Iterable[Any]) -> list[Message]:
    messages = []
    for payload in payloads:
        message = message_from_payload(payload)
        if message is not None:
            messages.append(message)
    return messages


def message_to_payload(message: Message) -> Dict[str, Any]:
    """Serialize a message to the snake_case wire shape used by the REST API."""

    payload: Dict[str, Any] = {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "message_type": message.message_type.value,
        "content": message.content,
        "status": message.status.wire,
        "created_at": message.created_at,
        "deleted_for_all": message.deleted_for_everyone,
        "reactions": [{"user_id": user_id, "reaction": emoji} for user_id, emoji in sorted(message.reactions or ())],
    }
    optional = {
        "media_url": message.media_url,
        "file_name": message.file_name,
        "file_size": message.file_size,
        "mime_type": message.mime_type,
        "duration": message.duration,
        "sender_name": message.sender_name,
        "edited_at": message.edited_at,
        "deleted_at": message.deleted_at,
        "updated_at": message.updated_at,
        "correlation_id": message.correlation_id,
        "is_starred": message.starred,
    }
    payload.update({key: value for key, value in optional.items() if value is not None})
    if message.reply_to is not None:
        payload["reply_to"] = {
            "id": message.reply_to.id,
            "sender_name": message.reply_to.sender_name,
            "content": message.reply_to.content,
            "message_type": message.reply_to.message_type.value,
        }
    return payload
