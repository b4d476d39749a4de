# /chatflow/utils/tasks.py

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from chatflow.utils.metrics import timer_counter

logger = logging.getLogger(__name__)

TimerCallback = Callable[[str, str], Awaitable[None]]


class TimerScheduler:
    """
    Runs one delayed callback per conversation key for timer nodes.

    Scheduling a new timer for a key replaces the previous one. The callback
    receives (conversation_key, token) and is responsible for ignoring stale
    tokens. `sleep` is injectable so tests can drive time.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}
        self._callback: Optional[TimerCallback] = None

    def bind(self, callback: TimerCallback):
        self._callback = callback

    def schedule(self, key: str, token: str, delay_ms: int) -> asyncio.Task:
        if self._callback is None:
            raise RuntimeError("TimerScheduler has no callback bound")
        self.cancel(key)
        task = asyncio.create_task(self._run(key, token, delay_ms), name=f"timer:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        timer_counter.labels(event="scheduled").inc()
        logger.debug(f"Timer {token} scheduled for {key} in {delay_ms} ms")
        return task

    def cancel(self, key: str):
        task = self._tasks.pop(key, None)
        if task and not task.done():
            task.cancel()
            timer_counter.labels(event="cancelled").inc()

    def is_pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return bool(task and not task.done())

    async def shutdown(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Timer scheduler stopped; {len(tasks)} pending timers cancelled")

    async def _run(self, key: str, token: str, delay_ms: int):
        await self._sleep(delay_ms / 1000)
        # Detach before firing so a timer scheduled by the callback does not cancel this task.
        self._forget(key, asyncio.current_task())
        timer_counter.labels(event="fired").inc()
        try:
            await self._callback(key, token)
        except Exception:
            logger.error(f"Timer callback failed for {key} (token {token})", exc_info=True)

    def _forget(self, key: str, task: asyncio.Task):
        if self._tasks.get(key) is task:
            del self._tasks[key]
