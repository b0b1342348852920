from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from .config import SyncConfig
from .errors import TransportError
from .models import pick
from .timers import TimerRegistry
from .transport import CHECK_USER_ONLINE, Transport

logger = logging.getLogger(__name__)

POLL_TIMER = "presence.poll"


class PresenceTracker:
    """Online status of the peer in a direct conversation.

    A check asks the transport point-to-point and, at the same time, listens for
    a broadcast status of the same peer; whichever lands first wins. No answer
    within ``presence_timeout_seconds`` reads as offline.
    """

    def __init__(
        self,
        transport: Transport,
        peer_id: str,
        timers: TimerRegistry,
        config: SyncConfig | None = None,
        *,
        on_change: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self.peer_id = peer_id
        self.config = config or SyncConfig()
        self.is_online: Optional[bool] = None
        self._transport = transport
        self._timers = timers
        self._on_change = on_change
        self._waiter: Optional[asyncio.Future] = None
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._timers.start_periodic(
            POLL_TIMER,
            self.config.presence_poll_interval_seconds,
            self.check,
            run_immediately=True,
        )

    def stop(self) -> None:
        self._running = False
        self._timers.cancel(POLL_TIMER)
        if self._waiter is not None and not self._waiter.done():
            self._waiter.cancel()
        self._waiter = None

    async def check(self) -> bool:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future = loop.create_future()
        self._waiter = waiter
        ask = asyncio.ensure_future(self._ask(waiter))
        try:
            online = await asyncio.wait_for(waiter, self.config.presence_timeout_seconds)
        except asyncio.TimeoutError:
            logger.debug("presence check for %s timed out; assuming offline", self.peer_id)
            online = False
        finally:
            ask.cancel()
            if self._waiter is waiter:
                self._waiter = None
        self._set(online)
        return online

    def on_online(self, payload: Dict[str, Any]) -> None:
        if self._is_peer(payload):
            self._resolve(True)

    def on_offline(self, payload: Dict[str, Any]) -> None:
        if self._is_peer(payload):
            self._resolve(False)

    def on_status(self, payload: Dict[str, Any]) -> None:
        if not self._is_peer(payload):
            return
        online = pick(payload, "isOnline", "is_online")
        if not isinstance(online, bool):
            logger.warning("dropping user_online_status without isOnline for %s", self.peer_id)
            return
        self._resolve(online)

    async def _ask(self, waiter: asyncio.Future) -> None:
        try:
            answer = await self._transport.request(CHECK_USER_ONLINE, {"userId": self.peer_id})
        except TransportError as exc:
            logger.debug("presence request not sent: %s", exc)
            return
        if isinstance(answer, bool) and not waiter.done():
            waiter.set_result(answer)

    def _is_peer(self, payload: Dict[str, Any]) -> bool:
        return pick(payload, "userId", "user_id") == self.peer_id

    def _resolve(self, online: bool) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(online)
        self._set(online)

    def _set(self, online: bool) -> None:
        if self.is_online == online:
            return
        self.is_online = online
        if self._on_change is not None:
            self._on_change(online)
