from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Set, Union

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[Any, Awaitable[Any]]]


async def _invoke(callback: TimerCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class TimerRegistry:
    """Named, cancellable asyncio tasks owned by one engine instance.

    Starting a timer under a name that is already running replaces it, so a
    debounce is just ``start_timer`` with the same name on every keystroke.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}
        self._retired: Set[asyncio.Task] = set()

    def start_timer(self, name: str, delay_seconds: float, callback: TimerCallback) -> asyncio.Task:
        return self._start(name, self._one_shot(name, delay_seconds, callback))

    def start_periodic(
        self,
        name: str,
        interval_seconds: float,
        callback: TimerCallback,
        *,
        run_immediately: bool = False,
    ) -> asyncio.Task:
        return self._start(name, self._periodic(name, interval_seconds, callback, run_immediately))

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        if not task.done():
            self._retired.add(task)
            task.add_done_callback(self._retired.discard)
        return True

    def cancel_prefix(self, prefix: str) -> int:
        names = [name for name in self._tasks if name.startswith(prefix)]
        for name in names:
            self.cancel(name)
        return len(names)

    def cancel_all(self) -> int:
        names = list(self._tasks)
        for name in names:
            self.cancel(name)
        return len(names)

    def active_names(self) -> List[str]:
        return sorted(name for name, task in self._tasks.items() if not task.done())

    async def wait_closed(self) -> None:
        tasks = list(self._retired) + list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start(self, name: str, coro: Awaitable[Any]) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.ensure_future(coro)
        self._tasks[name] = task
        return task

    def _release(self, name: str) -> None:
        task = self._tasks.get(name)
        if task is not None and task is asyncio.current_task():
            self._tasks.pop(name, None)

    async def _one_shot(self, name: str, delay_seconds: float, callback: TimerCallback) -> None:
        try:
            await asyncio.sleep(delay_seconds)
        except asyncio.CancelledError:
            return
        self._release(name)
        await _invoke(callback)

    async def _periodic(
        self,
        name: str,
        interval_seconds: float,
        callback: TimerCallback,
        run_immediately: bool,
    ) -> None:
        try:
            if run_immediately:
                await _invoke(callback)
            while True:
                await asyncio.sleep(interval_seconds)
                await _invoke(callback)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("periodic task %s stopped", name)
            raise
