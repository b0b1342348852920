import asyncio
import unittest

from chat_sync.config import SyncConfig
from chat_sync.timers import TimerRegistry
from chat_sync.transport import TYPING, LoopbackTransport
from chat_sync.typing_indicator import TypingCoordinator


class TypingCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.transport = LoopbackTransport()
        self.timers = TimerRegistry()
        self.changes = []
        self.typing = TypingCoordinator(
            self.transport,
            "c1",
            "alice",
            self.timers,
            SyncConfig(typing_idle_seconds=0.05, typing_expiry_seconds=0.05),
            on_change=self.changes.append,
        )

    async def asyncTearDown(self):
        self.typing.stop()
        await self.timers.wait_closed()

    def _sent(self):
        return [payload["isTyping"] for payload in self.transport.emitted_payloads(TYPING)]

    async def test_keystrokes_emit_once_then_idle_false(self):
        self.typing.keystroke()
        self.typing.keystroke()
        self.typing.keystroke()
        self.assertEqual(self._sent(), [True])

        await asyncio.sleep(0.15)

        self.assertEqual(self._sent(), [True, False])
        self.assertFalse(self.typing.is_typing)

    async def test_keystrokes_keep_resetting_idle_timer(self):
        for _ in range(4):
            self.typing.keystroke()
            await asyncio.sleep(0.01)

        self.assertEqual(self._sent(), [True])

    async def test_stop_typing_emits_false_once(self):
        self.typing.keystroke()
        self.typing.stop_typing()
        self.typing.stop_typing()

        await asyncio.sleep(0.1)
        self.assertEqual(self._sent(), [True, False])

    async def test_remote_typing_expires(self):
        self.typing.on_remote({"conversationId": "c1", "userId": "bob", "isTyping": True})
        self.assertTrue(self.typing.is_peer_typing)

        await asyncio.sleep(0.15)

        self.assertFalse(self.typing.is_peer_typing)
        self.assertEqual(self.changes, [frozenset({"bob"}), frozenset()])

    async def test_remote_false_clears_immediately(self):
        self.typing.on_remote({"conversationId": "c1", "userId": "bob", "isTyping": True})
        self.typing.on_remote({"conversationId": "c1", "userId": "carol", "isTyping": True})
        self.typing.on_remote({"conversationId": "c1", "userId": "bob", "isTyping": False})

        self.assertEqual(self.typing.typing_users, frozenset({"carol"}))

    async def test_own_and_foreign_events_are_ignored(self):
        self.typing.on_remote({"conversationId": "c1", "userId": "alice", "isTyping": True})
        self.typing.on_remote({"conversationId": "c2", "userId": "bob", "isTyping": True})

        self.assertFalse(self.typing.is_peer_typing)
        self.assertEqual(self.changes, [])

    async def test_disconnected_transport_does_not_raise(self):
        self.transport.connected = False

        self.typing.keystroke()

        self.assertTrue(self.typing.is_typing)
        self.assertEqual(self._sent(), [])

    async def test_stop_cancels_every_timer(self):
        self.typing.keystroke()
        self.typing.on_remote({"conversationId": "c1", "userId": "bob", "isTyping": True})

        self.typing.stop()

        self.assertEqual(self.timers.active_names(), [])
        self.assertFalse(self.typing.is_peer_typing)
