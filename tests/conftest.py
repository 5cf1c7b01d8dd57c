import itertools
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

# Ensure the project modules are importable when tests run from the repo root
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend import RedisBackend
from services.client import ChatClient


class FakeHandle:
    def __init__(self, due, seq, callback):
        self.due = due
        self.seq = seq
        self.callback = callback
        self._cancelled = False
        self._done = False

    def cancel(self):
        if not self._done:
            self._cancelled = True

    def cancelled(self):
        return self._cancelled

    def done(self):
        return self._done or self._cancelled


class FakeScheduler:
    """Virtual clock with the AsyncioScheduler interface; time moves only on advance()."""

    def __init__(self):
        self.now = 0.0
        self._seq = itertools.count()
        self._handles = []

    def call_later(self, delay, callback):
        handle = FakeHandle(self.now + delay, next(self._seq), callback)
        self._handles.append(handle)
        return handle

    async def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.done() and h.due <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.due, h.seq))
            self.now = max(self.now, handle.due)
            handle._done = True
            await handle.callback()
        self.now = target

    @property
    def pending(self):
        return [h for h in self._handles if not h.done()]


@pytest_asyncio.fixture
async def fake_redis():
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest.fixture
def backend(fake_redis):
    return RedisBackend(fake_redis)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest_asyncio.fixture
async def make_client(backend, scheduler):
    clients = []

    def factory(connection_id=None, send=None):
        client = ChatClient(backend, connection_id=connection_id, scheduler=scheduler, send=send)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


@pytest.fixture
def client(make_client):
    return make_client("conn-1")
