import asyncio

import pytest


class FakeSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def push(self, frame):
        self.incoming.put_nowait(frame)

    def drop(self):
        """Server-side close."""
        self.incoming.put_nowait(None)

    async def send(self, data):
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(data)

    async def close(self):
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)


class FakeConnector:
    """Callable passed as `connect=`; hands out FakeSockets in order."""

    def __init__(self, failures=0):
        self.failures = failures
        self.urls = []
        self.sockets = []

    async def __call__(self, url):
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        sock = FakeSocket()
        self.sockets.append(sock)
        return sock


async def eventually(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def connector():
    return FakeConnector()
