from __future__ import annotations

import logging

from .api import MessageApi
from .store import MessageStore

logger = logging.getLogger(__name__)


class PaginationController:
    """Loads older history page by page into a shared store.

    The offset is the number of server messages already held, so pages that
    overlap with live events only ever merge; nothing is replaced.
    """

    def __init__(self, api: MessageApi, store: MessageStore, conversation_id: str, *, page_size: int = 50) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.conversation_id = conversation_id
        self.page_size = page_size
        self.has_more = True
        self.loading = False
        self.pages_loaded = 0
        self._api = api
        self._store = store

    def reset(self) -> None:
        self.has_more = True
        self.pages_loaded = 0

    async def load_more(self) -> int:
        if self.loading or not self.has_more:
            return 0
        self.loading = True
        try:
            offset = self._store.server_count()
            page = await self._api.get_messages(self.conversation_id, self.page_size, offset)
        finally:
            self.loading = False

        added = 0
        with self._store.batch():
            for message in page:
                if message.is_temp:
                    logger.warning("history page carried temp id %s; skipped", message.id)
                    continue
                if message.conversation_id != self.conversation_id:
                    logger.debug("history page carried %s from %s; skipped", message.id, message.conversation_id)
                    continue
                known = message.id in self._store
                self._store.upsert(message)
                if not known:
                    added += 1
        self.has_more = len(page) == self.page_size
        self.pages_loaded += 1
        logger.debug(
            "loaded page %d of %s: %d messages, %d new, has_more=%s",
            self.pages_loaded,
            self.conversation_id,
            len(page),
            added,
            self.has_more,
        )
        return added
