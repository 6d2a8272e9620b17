import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from ride_dispatch.utils.auth import create_access_token

# Cairo, close to the pickup used throughout the dispatch tests
PICKUP = (30.0, 31.2)


class Clock:
    """Settable UTC clock for staleness tests."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(json.loads(data))

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(ConnectionResetError("closed"))

    def push_event(self, subscription_id, payload):
        self.incoming.put_nowait(
            json.dumps({"type": "event", "subscriptionId": subscription_id, "payload": payload})
        )

    def drop(self):
        self.incoming.put_nowait(ConnectionResetError("connection reset by peer"))

    def frames(self, frame_type):
        return [frame for frame in self.sent if frame["type"] == frame_type]


class FakeServer:
    """Connect factory that can refuse the first N attempts."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.sockets = []
        self.gate = None

    async def connect(self, url):
        self.attempts += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


async def eventually(predicate, timeout: float = 2.0):
    """Yield to the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def driver_id():
    return str(uuid.uuid4())


@pytest.fixture
def customer_id():
    return str(uuid.uuid4())


@pytest.fixture
def make_token():
    def _make(user_id, role="customer"):
        return create_access_token(uuid.UUID(str(user_id)), role)
    return _make
