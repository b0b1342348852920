from __future__ import annotations


class ChatSyncError(Exception):
    pass


class TransportError(ChatSyncError):
    """Raised by a transport that cannot deliver an outbound event."""

    def __init__(self, event: str, message: str = "transport disconnected") -> None:
        self.event = event
        super().__init__(f"{event}: {message}")


class MessageApiError(ChatSyncError):
    def __init__(self, *, status: int | None, code: str, message: str = "") -> None:
        self.status = status
        self.code = code
        self.message = message
        detail = f" ({message})" if message else ""
        super().__init__(f"message api request failed: status={status} code={code}{detail}")


class EngineClosedError(ChatSyncError):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"conversation {conversation_id} is not open")
