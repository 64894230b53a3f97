"""
Keyed registry of cancelable asyncio tasks.

Heartbeat loops, countdowns and sweeps are all owned here under a hashable key
so that a second start for the same key is refused instead of doubling up, and
teardown is a single cancel.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional

from .logging_utils import get_logger

logger = get_logger("lastpress.timers")

Callback = Callable[[], Any]


async def run_callback(callback: Callback) -> Any:
    """Call a sync or async callback and return its result."""
    result = callback()
    if inspect.isawaitable(result):
        result = await result
    return result


class TimerRegistry:
    def __init__(self):
        self._tasks: Dict[Hashable, asyncio.Task] = {}

    def _live(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        if task is None:
            return False
        if task.done() or task.get_loop().is_closed():
            self._tasks.pop(key, None)
            return False
        return True

    def is_active(self, key: Hashable) -> bool:
        return self._live(key)

    def keys(self) -> List[Hashable]:
        return [k for k in list(self._tasks) if self._live(k)]

    def start(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> bool:
        """Run factory() as a task under key. Refuses if one is already live.

        Must be called from a running event loop.
        """
        if self._live(key):
            return False
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._guarded(key, factory))
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return True

    def schedule(self, key: Hashable, delay: float, callback: Callback) -> bool:
        """Fire callback once after delay seconds."""
        async def _once():
            await asyncio.sleep(delay)
            await run_callback(callback)
        return self.start(key, _once)

    def every(self, key: Hashable, interval: float, callback: Callback) -> bool:
        """Fire callback every interval seconds until it returns False or the key is cancelled."""
        async def _loop():
            while True:
                await asyncio.sleep(interval)
                try:
                    keep = await run_callback(callback)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("timer_tick_failed", extra={"event": repr(key)})
                    keep = True
                if keep is False:
                    return
        return self.start(key, _loop)

    def detach(self, key: Hashable) -> None:
        """Drop the key without cancelling; used by a task that is finishing on its own."""
        self._tasks.pop(key, None)

    def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        if task.get_loop().is_closed():
            return False
        task.cancel()
        return True

    def cancel_where(self, predicate: Callable[[Hashable], bool]) -> int:
        return sum(1 for key in list(self._tasks) if predicate(key) and self.cancel(key))

    def cancel_all(self) -> int:
        return self.cancel_where(lambda _key: True)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def _guarded(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Optional[Any]:
        try:
            return await factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("timer_failed", extra={"event": repr(key)})
            return None
