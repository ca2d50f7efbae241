"""
In-memory stand-ins for the upstream websocket and local client sessions.
"""
import asyncio
import json

from websockets.exceptions import ConnectionClosed

_CLOSE = object()


class FakeUpstream:
    """Stands in for a websockets client connection to Helius."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, text):
        if self.closed:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(text))

    def push(self, message):
        """Queue a frame as if the upstream had sent it."""
        if not isinstance(message, (str, bytes)):
            message = json.dumps(message)
        self._incoming.put_nowait(message)

    def drop(self):
        """Simulate the upstream closing the connection."""
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    async def close(self):
        if not self.closed:
            self.drop()

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Connector that hands out FakeUpstream connections, optionally failing first."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.connections = []

    async def __call__(self, url):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeUpstream()
        self.connections.append(ws)
        return ws

    @property
    def current(self) -> FakeUpstream:
        return self.connections[-1]


class FakeClient:
    """A local client session as the relay sees it."""

    def __init__(self, name: str = "client"):
        self.name = name
        self.is_open = True
        self.received = []

    def __repr__(self):
        return f"<FakeClient {self.name}>"

    async def send_text(self, text):
        self.received.append(json.loads(text))

    def close(self):
        self.is_open = False


async def settle(rounds: int = 20):
    """Let background relay tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
