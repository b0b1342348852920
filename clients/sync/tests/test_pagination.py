import asyncio
import unittest

from chat_sync.api import InMemoryMessageApi
from chat_sync.errors import MessageApiError
from chat_sync.pagination import PaginationController
from chat_sync.store import MessageStore

from .sync_util import make_message


class SlowApi:
    def __init__(self, inner):
        self.inner = inner
        self.release = asyncio.Event()
        self.calls = 0

    async def get_messages(self, conversation_id, limit=50, offset=0):
        self.calls += 1
        await self.release.wait()
        return await self.inner.get_messages(conversation_id, limit, offset)


class FailingApi:
    async def get_messages(self, conversation_id, limit=50, offset=0):
        raise MessageApiError(status=503, code="unavailable")


class TestPaginationController(unittest.IsolatedAsyncioTestCase):
    def _history(self, count):
        return [make_message(f"m{i:03d}", offset_ms=i) for i in range(count)]

    async def test_pages_accumulate_until_short_page(self):
        api = InMemoryMessageApi("alice", self._history(70))
        store = MessageStore()
        pager = PaginationController(api, store, "c1", page_size=50)

        self.assertEqual(await pager.load_more(), 50)
        self.assertTrue(pager.has_more)
        self.assertEqual(await pager.load_more(), 20)
        self.assertFalse(pager.has_more)
        self.assertEqual(await pager.load_more(), 0)

        ids = [m.id for m in store.ordered_view()]
        self.assertEqual(ids, [f"m{i:03d}" for i in range(70)])
        self.assertEqual(api.page_requests, [("c1", 50, 0), ("c1", 50, 50)])

    async def test_live_messages_shift_the_offset(self):
        api = InMemoryMessageApi("alice", self._history(70))
        store = MessageStore()
        pager = PaginationController(api, store, "c1", page_size=50)
        await pager.load_more()

        live = api.put(make_message("m070", offset_ms=70))
        store.upsert(live)
        added = await pager.load_more()

        self.assertEqual(added, 20)
        self.assertEqual(len(store), 71)
        self.assertEqual(api.page_requests[-1], ("c1", 50, 51))

    async def test_overlapping_page_only_merges(self):
        history = self._history(3)
        api = InMemoryMessageApi("alice", history)
        store = MessageStore()
        store.upsert(history[0])
        pager = PaginationController(api, store, "c1", page_size=2)

        self.assertEqual(await pager.load_more(), 1)
        self.assertEqual([m.id for m in store.ordered_view()], ["m000", "m001"])

    async def test_concurrent_load_is_a_no_op(self):
        api = SlowApi(InMemoryMessageApi("alice", self._history(5)))
        pager = PaginationController(api, MessageStore(), "c1", page_size=50)

        first = asyncio.ensure_future(pager.load_more())
        await asyncio.sleep(0)
        self.assertTrue(pager.loading)
        self.assertEqual(await pager.load_more(), 0)

        api.release.set()
        self.assertEqual(await first, 5)
        self.assertEqual(api.calls, 1)
        self.assertFalse(pager.loading)

    async def test_api_errors_propagate_and_keep_has_more(self):
        pager = PaginationController(FailingApi(), MessageStore(), "c1")

        with self.assertRaises(MessageApiError):
            await pager.load_more()

        self.assertTrue(pager.has_more)
        self.assertFalse(pager.loading)

    async def test_reset_allows_loading_again(self):
        api = InMemoryMessageApi("alice", self._history(2))
        pager = PaginationController(api, MessageStore(), "c1", page_size=50)
        await pager.load_more()
        self.assertFalse(pager.has_more)

        pager.reset()

        self.assertTrue(pager.has_more)
        self.assertEqual(await pager.load_more(), 0)
        self.assertEqual(len(api.page_requests), 2)

    async def test_temp_and_foreign_ids_are_skipped(self):
        api = InMemoryMessageApi(
            "alice",
            [make_message("m1"), make_message("temp_1_ab", offset_ms=1)],
        )
        store = MessageStore()
        pager = PaginationController(api, store, "c1")

        with self.assertLogs("chat_sync.pagination", level="WARNING"):
            added = await pager.load_more()

        self.assertEqual(added, 1)
        self.assertEqual([m.id for m in store.ordered_view()], ["m1"])
