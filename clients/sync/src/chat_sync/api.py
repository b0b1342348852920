"""Message REST API: the interface the engine consumes and two implementations."""

from __future__ import annotations

import json
import logging
import urllib.parse
from dataclasses import replace
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from .errors import MessageApiError
from .models import (
    Message,
    MessageStatus,
    MessageType,
    message_from_payload,
    messages_from_payloads,
    now_ms,
)

logger = logging.getLogger(__name__)


class MessageApi(Protocol):
    async def get_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> List[Message]:
        ...

    async def mark_read(self, conversation_id: str) -> None:
        ...

    async def send_message(
        self,
        conversation_id: str,
        *,
        message_type: MessageType = MessageType.TEXT,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[Message]:
        ...

    async def edit_message(self, message_id: str, content: str) -> Optional[Message]:
        ...

    async def delete_message(self, message_id: str, delete_for_all: bool = False) -> Optional[Message]:
        ...

    async def star_message(self, message_id: str) -> Optional[Message]:
        ...

    async def unstar_message(self, message_id: str) -> Optional[Message]:
        ...

    async def add_reaction(self, message_id: str, reaction: str) -> Optional[Message]:
        ...

    async def remove_reaction(self, message_id: str, reaction: str) -> Optional[Message]:
        ...

    async def search_messages(self, conversation_id: str, query: str, limit: int = 50) -> List[Message]:
        ...


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _quote(segment: str) -> str:
    return urllib.parse.quote(segment, safe="")


def _extract_list(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("messages", "data"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def _extract_message(payload: Any) -> Optional[Message]:
    if not isinstance(payload, dict):
        return None
    for key in ("message", "data"):
        value = payload.get(key)
        if isinstance(value, dict):
            return message_from_payload(value)
    return message_from_payload(payload)


class HttpMessageApi:
    """aiohttp client for the message REST endpoints.

    The session is created lazily and closed by :meth:`close` unless it was
    passed in by the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def __aenter__(self) -> "HttpMessageApi":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = self._ensure_session()
        url = _build_url(self.base_url, path)
        try:
            async with session.request(method, url, params=params, json=body, headers=self._headers()) as response:
                raw = await response.text()
                status = response.status
        except aiohttp.ClientError as exc:
            raise MessageApiError(status=None, code="network_error", message=str(exc)) from exc

        try:
            payload = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            if status >= 400:
                raise MessageApiError(status=status, code="http_error", message=raw[:200]) from exc
            raise MessageApiError(status=status, code="malformed_json", message=str(exc)) from exc

        if status >= 400:
            detail = payload if isinstance(payload, dict) else {}
            raise MessageApiError(
                status=status,
                code=str(detail.get("code") or "http_error"),
                message=str(detail.get("error") or detail.get("message") or ""),
            )
        return payload

    async def get_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> List[Message]:
        payload = await self._request(
            "GET",
            f"/api/messages/{_quote(conversation_id)}",
            params={"limit": str(limit), "offset": str(offset)},
        )
        raw = _extract_list(payload)
        messages = messages_from_payloads(raw)
        if len(messages) != len(raw):
            logger.warning("dropped %d malformed messages from page", len(raw) - len(messages))
        return messages

    async def mark_read(self, conversation_id: str) -> None:
        await self._request("PUT", f"/api/messages/{_quote(conversation_id)}/read")

    async def send_message(
        self,
        conversation_id: str,
        *,
        message_type: MessageType = MessageType.TEXT,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[Message]:
        body: Dict[str, Any] = {"conversationId": conversation_id, "messageType": message_type.value}
        if content is not None:
            body["content"] = content
        if media_url is not None:
            body["mediaUrl"] = media_url
        if reply_to_message_id is not None:
            body["replyToMessageId"] = reply_to_message_id
        if correlation_id is not None:
            body["correlationId"] = correlation_id
        return _extract_message(await self._request("POST", "/api/messages/send", body=body))

    async def edit_message(self, message_id: str, content: str) -> Optional[Message]:
        payload = await self._request("PUT", f"/api/messages/{_quote(message_id)}", body={"content": content})
        return _extract_message(payload)

    async def delete_message(self, message_id: str, delete_for_all: bool = False) -> Optional[Message]:
        payload = await self._request(
            "DELETE",
            f"/api/messages/{_quote(message_id)}",
            body={"deleteForAll": delete_for_all},
        )
        return _extract_message(payload)

    async def star_message(self, message_id: str) -> Optional[Message]:
        return _extract_message(await self._request("POST", f"/api/messages/{_quote(message_id)}/star"))

    async def unstar_message(self, message_id: str) -> Optional[Message]:
        return _extract_message(await self._request("DELETE", f"/api/messages/{_quote(message_id)}/star"))

    async def add_reaction(self, message_id: str, reaction: str) -> Optional[Message]:
        payload = await self._request(
            "POST",
            f"/api/messages/{_quote(message_id)}/reactions",
            body={"reaction": reaction},
        )
        return _extract_message(payload)

    async def remove_reaction(self, message_id: str, reaction: str) -> Optional[Message]:
        payload = await self._request(
            "DELETE",
            f"/api/messages/{_quote(message_id)}/reactions/{_quote(reaction)}",
        )
        return _extract_message(payload)

    async def search_messages(self, conversation_id: str, query: str, limit: int = 50) -> List[Message]:
        payload = await self._request(
            "GET",
            f"/api/messages/search/{_quote(conversation_id)}",
            params={"q": query, "limit": str(limit)},
        )
        return messages_from_payloads(_extract_list(payload))


class InMemoryMessageApi:
    """Server-side message history held in memory.

    Pages are counted from the newest message backwards and returned oldest
    first, matching the REST endpoint.
    """

    def __init__(self, user_id: str, messages: Optional[List[Message]] = None, *, now_func=now_ms) -> None:
        self.user_id = user_id
        self._now = now_func
        self._messages: Dict[str, Message] = {}
        self._next_id = 1
        self.read_marks: List[str] = []
        self.page_requests: List[tuple[str, int, int]] = []
        for message in messages or []:
            self.put(message)

    def put(self, message: Message) -> Message:
        if message.reactions is None:
            message = replace(message, reactions=frozenset())
        self._messages[message.id] = message
        return message

    def get(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    def _require(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageApiError(status=404, code="not_found", message=f"message {message_id} not found")
        return message

    def _conversation(self, conversation_id: str) -> List[Message]:
        return sorted(
            (m for m in self._messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.sort_key,
        )

    async def get_messages(self, conversation_id: str, limit: int = 50, offset: int = 0) -> List[Message]:
        self.page_requests.append((conversation_id, limit, offset))
        newest_first = list(reversed(self._conversation(conversation_id)))
        page = newest_first[offset : offset + max(limit, 0)]
        return list(reversed(page))

    async def mark_read(self, conversation_id: str) -> None:
        self.read_marks.append(conversation_id)
        for message in self._conversation(conversation_id):
            if message.sender_id != self.user_id and message.status < MessageStatus.READ:
                self._messages[message.id] = replace(message, status=MessageStatus.READ)

    async def send_message(
        self,
        conversation_id: str,
        *,
        message_type: MessageType = MessageType.TEXT,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        reply_to_message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[Message]:
        message_id = f"srv_{self._next_id}"
        self._next_id += 1
        return self.put(
            Message(
                id=message_id,
                conversation_id=conversation_id,
                sender_id=self.user_id,
                message_type=message_type,
                content=content,
                media_url=media_url,
                status=MessageStatus.SENT,
                created_at=self._now(),
                correlation_id=correlation_id,
            )
        )

    async def edit_message(self, message_id: str, content: str) -> Optional[Message]:
        message = self._require(message_id)
        stamp = self._now()
        return self.put(replace(message, content=content, edited_at=stamp, updated_at=stamp))

    async def delete_message(self, message_id: str, delete_for_all: bool = False) -> Optional[Message]:
        message = self._require(message_id)
        if not delete_for_all:
            return None
        stamp = self._now()
        return self.put(
            replace(message, content=None, deleted_at=stamp, deleted_for_everyone=True, updated_at=stamp)
        )

    async def star_message(self, message_id: str) -> Optional[Message]:
        return self.put(replace(self._require(message_id), starred=True))

    async def unstar_message(self, message_id: str) -> Optional[Message]:
        return self.put(replace(self._require(message_id), starred=False))

    async def add_reaction(self, message_id: str, reaction: str) -> Optional[Message]:
        message = self._require(message_id)
        return self.put(replace(message, reactions=(message.reactions or frozenset()) | {(self.user_id, reaction)}))

    async def remove_reaction(self, message_id: str, reaction: str) -> Optional[Message]:
        message = self._require(message_id)
        return self.put(replace(message, reactions=(message.reactions or frozenset()) - {(self.user_id, reaction)}))

    async def search_messages(self, conversation_id: str, query: str, limit: int = 50) -> List[Message]:
        needle = query.strip().lower()
        hits = [
            m
            for m in self._conversation(conversation_id)
            if needle and not m.deleted_for_everyone and needle in (m.content or "").lower()
        ]
        return hits[-limit:] if limit > 0 else []
