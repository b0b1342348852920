import asyncio
import unittest

from chat_sync.timers import TimerRegistry


class TimerRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.timers = TimerRegistry()
        self.fired = []

    async def asyncTearDown(self):
        self.timers.cancel_all()
        await self.timers.wait_closed()

    async def test_restarting_a_name_replaces_the_timer(self):
        self.timers.start_timer("t", 0.02, lambda: self.fired.append("first"))
        self.timers.start_timer("t", 0.02, lambda: self.fired.append("second"))

        await asyncio.sleep(0.06)

        self.assertEqual(self.fired, ["second"])
        self.assertEqual(self.timers.active_names(), [])

    async def test_periodic_runs_until_cancelled(self):
        self.timers.start_periodic("p", 0.01, lambda: self.fired.append("tick"), run_immediately=True)
        await asyncio.sleep(0.055)
        self.assertTrue(self.timers.cancel("p"))
        count = len(self.fired)

        await asyncio.sleep(0.03)

        self.assertGreaterEqual(count, 3)
        self.assertEqual(len(self.fired), count)
        self.assertFalse(self.timers.cancel("p"))

    async def test_async_callbacks_are_awaited(self):
        async def callback():
            await asyncio.sleep(0)
            self.fired.append("async")

        self.timers.start_timer("a", 0.01, callback)
        await asyncio.sleep(0.05)

        self.assertEqual(self.fired, ["async"])

    async def test_cancel_prefix_and_all(self):
        self.timers.start_timer("typing.peer:bob", 10, lambda: None)
        self.timers.start_timer("typing.peer:carol", 10, lambda: None)
        self.timers.start_timer("presence.poll", 10, lambda: None)

        self.assertEqual(self.timers.cancel_prefix("typing.peer:"), 2)
        self.assertEqual(self.timers.active_names(), ["presence.poll"])
        self.assertEqual(self.timers.cancel_all(), 1)
        await self.timers.wait_closed()
        self.assertEqual(self.timers.active_names(), [])

    async def test_restarts_do_not_accumulate_cancelled_tasks(self):
        for _ in range(500):
            self.timers.start_timer("t", 10, lambda: None)
        await asyncio.sleep(0.01)

        self.assertEqual(self.timers.active_names(), ["t"])
        self.assertEqual(len(self.timers._retired), 0)
