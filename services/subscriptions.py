import asyncio
import inspect
from typing import Any, Awaitable, Callable, Sequence

import redis

from errors import StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)


class Subscription:
    """Live view over one or more change channels.

    On ``start()`` the current snapshot is delivered once, then again after every
    change notification on ``channels``. ``close()`` detaches the pub/sub listener
    exactly once and may be called any number of times.
    """

    def __init__(self, backend, channels: Sequence[str], snapshot: Callable[[], Awaitable[Any]],
                 callback: Callable[[Any], Any], name: str = "subscription"):
        self._backend = backend
        self.channels = list(channels)
        self._snapshot = snapshot
        self._callback = callback
        self.name = name
        self._pubsub = None
        self._task = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> "Subscription":
        try:
            self._pubsub = self._backend.pubsub()
            await self._pubsub.subscribe(*self.channels)
        except redis.RedisError as e:
            logger.error(f"Failed to subscribe {self.name} to {self.channels}: {e}", exc_info=True)
            await self.close()
            raise StoreUnavailable() from e
        logger.debug(f"Subscribed {self.name} to {self.channels}")
        try:
            await self._deliver()
        except Exception:
            await self.close()
            raise
        self._task = asyncio.create_task(self._listen())
        return self

    async def _deliver(self):
        data = await self._snapshot()
        result = self._callback(data)
        if inspect.isawaitable(result):
            await result

    async def _listen(self):
        try:
            while not self._closed:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    await self._deliver()
                except Exception as e:
                    logger.error(f"Error delivering {self.name} snapshot: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug(f"Listener for {self.name} cancelled")
            raise
        except Exception as e:
            logger.error(f"Listener for {self.name} stopped: {e}", exc_info=True)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            except Exception as e:
                logger.error(f"Error closing pub/sub for {self.name}: {e}")
        logger.debug(f"Closed {self.name}")
