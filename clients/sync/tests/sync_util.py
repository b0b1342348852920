from __future__ import annotations

from typing import Any, Dict, List, Sequence

from chat_sync.models import Message, MessageStatus, MessageType
from chat_sync.store import StoreChange

BASE_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, start_ms: int = BASE_MS) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class ChangeRecorder:
    def __init__(self) -> None:
        self.batches: List[Sequence[StoreChange]] = []

    def __call__(self, changes: Sequence[StoreChange]) -> None:
        self.batches.append(changes)

    @property
    def changes(self) -> List[StoreChange]:
        return [change for batch in self.batches for change in batch]


def make_message(message_id: str, sender_id: str = "bob", offset_ms: int = 0, **fields: Any) -> Message:
    fields.setdefault("conversation_id", "c1")
    fields.setdefault("content", f"body of {message_id}")
    fields.setdefault("status", MessageStatus.SENT)
    return Message(id=message_id, sender_id=sender_id, created_at=BASE_MS + offset_ms, **fields)


def message_event(
    message_id: str,
    sender_id: str = "bob",
    content: str = "hi",
    created_at: int = BASE_MS,
    **extra: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": message_id,
        "conversationId": "c1",
        "senderId": sender_id,
        "messageType": MessageType.TEXT.value,
        "content": content,
        "status": "sent",
        "createdAt": created_at,
    }
    payload.update(extra)
    return payload
