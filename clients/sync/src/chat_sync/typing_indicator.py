from __future__ import annotations

import logging
from typing import Any, Callable, Dict, FrozenSet, Optional, Set

from .config import SyncConfig
from .errors import TransportError
from .models import pick
from .timers import TimerRegistry
from .transport import TYPING, Transport

logger = logging.getLogger(__name__)

IDLE_TIMER = "typing.idle"
PEER_TIMER_PREFIX = "typing.peer:"


class TypingCoordinator:
    """Debounced local typing emission and self-expiring remote typing flags."""

    def __init__(
        self,
        transport: Transport,
        conversation_id: str,
        self_user_id: str,
        timers: TimerRegistry,
        config: SyncConfig | None = None,
        *,
        on_change: Optional[Callable[[FrozenSet[str]], None]] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.self_user_id = self_user_id
        self.config = config or SyncConfig()
        self.is_typing = False
        self._transport = transport
        self._timers = timers
        self._on_change = on_change
        self._peers: Set[str] = set()

    @property
    def is_peer_typing(self) -> bool:
        return bool(self._peers)

    @property
    def typing_users(self) -> FrozenSet[str]:
        return frozenset(self._peers)

    def keystroke(self) -> None:
        if not self.is_typing:
            self.is_typing = True
            self._emit(True)
        self._timers.start_timer(IDLE_TIMER, self.config.typing_idle_seconds, self._idle_elapsed)

    def stop_typing(self) -> None:
        self._timers.cancel(IDLE_TIMER)
        if self.is_typing:
            self.is_typing = False
            self._emit(False)

    def on_remote(self, payload: Dict[str, Any]) -> None:
        if pick(payload, "conversationId", "conversation_id") != self.conversation_id:
            return
        user_id = pick(payload, "userId", "user_id")
        is_typing = pick(payload, "isTyping", "is_typing")
        if not isinstance(user_id, str) or not isinstance(is_typing, bool):
            logger.warning("dropping malformed typing event for %s", self.conversation_id)
            return
        if user_id == self.self_user_id:
            return
        timer_name = PEER_TIMER_PREFIX + user_id
        if is_typing:
            self._timers.start_timer(timer_name, self.config.typing_expiry_seconds, lambda: self._clear(user_id))
            if user_id not in self._peers:
                self._peers.add(user_id)
                self._changed()
        else:
            self._timers.cancel(timer_name)
            self._clear(user_id)

    def stop(self) -> None:
        self.stop_typing()
        self._timers.cancel_prefix(PEER_TIMER_PREFIX)
        self._peers.clear()

    def _idle_elapsed(self) -> None:
        self.is_typing = False
        self._emit(False)

    def _clear(self, user_id: str) -> None:
        if user_id in self._peers:
            self._peers.discard(user_id)
            self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self.typing_users)

    def _emit(self, is_typing: bool) -> None:
        try:
            self._transport.emit(TYPING, {"conversationId": self.conversation_id, "isTyping": is_typing})
        except TransportError as exc:
            logger.debug("typing state not sent: %s", exc)
