import asyncio
from typing import Awaitable, Callable, Dict, Tuple

from constants import TYPING_IDLE_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)

Callback = Callable[[], Awaitable[None]]


class AsyncioScheduler:
    """Runs one-shot coroutine callbacks after a delay on the running event loop.

    ``call_later`` returns a handle with ``cancel()``, ``cancelled()`` and ``done()``;
    a cancelled handle never fires and a fired handle never fires again. Tests swap
    this for a virtual-clock scheduler with the same interface.
    """

    def __init__(self):
        # Strong references; the loop only keeps weak ones to tasks
        self._tasks = set()

    def call_later(self, delay: float, callback: Callback) -> asyncio.Task:
        task = asyncio.create_task(self._run(delay, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, delay: float, callback: Callback):
        await asyncio.sleep(delay)
        try:
            await callback()
        except Exception as e:
            logger.error(f"Scheduled callback failed: {e}", exc_info=True)

    def __len__(self):
        return len(self._tasks)


class TypingTimerManager:
    """Pending typing-expiry timers, one per (room_id, user_id)."""

    def __init__(self, scheduler, idle_seconds: float = TYPING_IDLE_SECONDS):
        self._scheduler = scheduler
        self.idle_seconds = idle_seconds
        self._timers: Dict[Tuple[str, str], object] = {}

    def arm(self, room_id: str, user_id: str, on_expire: Callback):
        """(Re)start the idle window; ``on_expire`` runs once unless the window is restarted or cancelled."""
        key = (room_id, user_id)
        self.cancel(room_id, user_id)

        async def expire():
            if self._timers.get(key) is handle:
                del self._timers[key]
            logger.debug(f"Typing idle window elapsed for {user_id} in room {room_id}")
            await on_expire()

        handle = self._scheduler.call_later(self.idle_seconds, expire)
        self._timers[key] = handle

    def cancel(self, room_id: str, user_id: str) -> bool:
        handle = self._timers.pop((room_id, user_id), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_pending(self, room_id: str, user_id: str) -> bool:
        return (room_id, user_id) in self._timers

    def shutdown(self):
        count = len(self._timers)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if count:
            logger.debug(f"Cancelled {count} pending typing timers")

    def __len__(self):
        return len(self._timers)
