import asyncio
import json

import pytest

from credentials import Credentials

VALID_KEY = "0a1b2c3d-4e5f-6a7b-8c9d-0e1f2a3b4c5d"
VALID_SECRET = "A" * 32
VALID_PASSPHRASE = "hunter2"


class FakeWebSocket:
    """Stands in for a websockets connection; frames are fed through ``push``."""

    def __init__(self, url):
        self.url = url
        self.sent = []
        self.closed = False
        self.close_calls = 0
        self.fail_sends = False
        self._incoming = asyncio.Queue()

    def push(self, frame):
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._incoming.put_nowait(frame)

    def fail(self, exc):
        self._incoming.put_nowait(exc)

    async def send(self, frame):
        if self.closed or self.fail_sends:
            raise ConnectionResetError("socket closed")
        self.sent.append(frame)

    async def recv(self):
        item = await self._incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(ConnectionResetError("closed locally"))

    def sent_json(self):
        return [json.loads(frame) for frame in self.sent if frame not in ("ping", "pong")]


class FakeConnector:
    """Callable replacing websockets.connect; ``fail_at`` holds call indexes that refuse."""

    def __init__(self, fail_at=()):
        self.fail_at = set(fail_at)
        self.sockets = []
        self.calls = 0

    async def __call__(self, url, **kwargs):
        index = self.calls
        self.calls += 1
        if index in self.fail_at:
            raise ConnectionRefusedError(f"refused {url}")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws


def drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def live_credentials():
    return Credentials(VALID_KEY, VALID_SECRET, VALID_PASSPHRASE)
