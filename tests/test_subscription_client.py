import asyncio

import pytest

from ride_dispatch.client.config import ClientSettings
from ride_dispatch.client.subscription_client import ConnectionState, SubscriptionClient

from conftest import FakeServer, eventually

pytestmark = pytest.mark.unit

TRIP_STATUS = {"channel": "trip:status", "tripId": "trip-1"}


class RecordedSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_client(server, sleep=None, token="token-1", max_delay=30.0):
    settings = ClientSettings(
        api_url="http://dispatch.test/api",
        reconnect_base_delay=1.0,
        reconnect_max_delay=max_delay,
        connect_timeout=1.0,
    )
    return SubscriptionClient(
        token_provider=(lambda: token),
        settings=settings,
        connect=server.connect,
        sleep=sleep or RecordedSleep(),
    )


@pytest.mark.asyncio
async def test_auth_then_subscribe_on_connect():
    server = FakeServer()
    client = make_client(server)
    client.subscribe(TRIP_STATUS, lambda payload: None)

    await eventually(lambda: server.sockets and len(server.sockets[0].sent) == 2)
    auth, subscribe = server.sockets[0].sent

    assert auth == {"type": "auth", "token": "token-1"}
    assert subscribe["type"] == "subscribe"
    assert subscribe["channel"] == "trip:status"
    assert subscribe["tripId"] == "trip-1"
    assert client.state == ConnectionState.CONNECTED
    await client.close()


@pytest.mark.asyncio
async def test_resubscribes_with_original_id_after_drop():
    server = FakeServer()
    client = make_client(server)
    received = []
    client.subscribe(TRIP_STATUS, received.append)

    await eventually(lambda: server.sockets and server.sockets[0].frames("subscribe"))
    first_id = server.sockets[0].frames("subscribe")[0]["subscriptionId"]

    server.sockets[0].drop()
    await eventually(lambda: len(server.sockets) == 2 and server.sockets[1].frames("subscribe"))
    second = server.sockets[1]

    assert second.frames("auth")
    assert [f["subscriptionId"] for f in second.frames("subscribe")] == [first_id]

    # The same handler is still attached
    second.push_event(first_id, {"status": "accepted"})
    await eventually(lambda: received)
    assert received == [{"status": "accepted"}]
    await client.close()


@pytest.mark.asyncio
async def test_backoff_grows_and_resets_after_success():
    server = FakeServer(failures=5)
    sleep = RecordedSleep()
    client = make_client(server, sleep=sleep, max_delay=8.0)
    client.subscribe(TRIP_STATUS, lambda payload: None)

    await eventually(lambda: server.sockets)
    assert sleep.delays == [1, 2, 4, 8, 8]

    server.sockets[0].drop()
    await eventually(lambda: len(server.sockets) == 2)
    assert sleep.delays[-1] == 1
    await client.close()


@pytest.mark.asyncio
async def test_no_reconnect_without_subscriptions():
    server = FakeServer()
    sleep = RecordedSleep()
    client = make_client(server, sleep=sleep)
    unsubscribe = client.subscribe(TRIP_STATUS, lambda payload: None)
    await eventually(lambda: server.sockets and server.sockets[0].frames("subscribe"))

    unsubscribe()
    await eventually(lambda: server.sockets[0].frames("unsubscribe"))
    server.sockets[0].drop()
    await eventually(lambda: client.state == ConnectionState.DISCONNECTED)
    await asyncio.sleep(0.05)

    assert server.attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_subscribe_while_connecting_is_sent_once():
    server = FakeServer()
    server.gate = asyncio.Event()
    client = make_client(server)
    client.subscribe(TRIP_STATUS, lambda payload: None)
    await eventually(lambda: server.attempts == 1)
    assert client.state == ConnectionState.CONNECTING

    client.subscribe({"channel": "trip:offers", "tripId": "trip-1"}, lambda payload: None)
    server.gate.set()

    await eventually(lambda: server.sockets and len(server.sockets[0].frames("subscribe")) == 2)
    await asyncio.sleep(0.02)
    ids = [f["subscriptionId"] for f in server.sockets[0].frames("subscribe")]
    assert sorted(ids) == sorted(client.subscription_ids)
    await client.close()


@pytest.mark.asyncio
async def test_subscribe_while_connected_sends_immediately():
    server = FakeServer()
    client = make_client(server)
    client.subscribe(TRIP_STATUS, lambda payload: None)
    await eventually(lambda: client.state == ConnectionState.CONNECTED)

    client.subscribe({"channel": "surge:zones"}, lambda payload: None)

    await eventually(lambda: len(server.sockets[0].frames("subscribe")) == 2)
    assert server.sockets[0].frames("subscribe")[1]["channel"] == "surge:zones"
    await client.close()


@pytest.mark.asyncio
async def test_malformed_and_unknown_frames_ignored():
    server = FakeServer()
    client = make_client(server)
    received = []
    client.subscribe(TRIP_STATUS, received.append)
    await eventually(lambda: server.sockets and server.sockets[0].frames("subscribe"))
    socket = server.sockets[0]
    subscription_id = socket.frames("subscribe")[0]["subscriptionId"]

    socket.incoming.put_nowait("not json")
    socket.incoming.put_nowait("[1, 2]")
    socket.push_event("sub_unknown", {"status": "x"})
    socket.push_event(subscription_id, {"status": "arrived"})

    await eventually(lambda: received)
    assert received == [{"status": "arrived"}]
    assert client.state == ConnectionState.CONNECTED
    await client.close()


@pytest.mark.asyncio
async def test_slow_handler_does_not_block_other_subscriptions():
    server = FakeServer()
    client = make_client(server)
    stuck = asyncio.Event()
    fast = []

    async def slow_handler(payload):
        await stuck.wait()

    client.subscribe({"channel": "trip:offers", "tripId": "trip-1"}, slow_handler)
    client.subscribe(TRIP_STATUS, fast.append)
    await eventually(lambda: server.sockets and len(server.sockets[0].frames("subscribe")) == 2)
    slow_id, fast_id = [f["subscriptionId"] for f in server.sockets[0].frames("subscribe")]

    server.sockets[0].push_event(slow_id, {"n": 1})
    server.sockets[0].push_event(fast_id, {"n": 2})

    await eventually(lambda: fast)
    assert fast == [{"n": 2}]
    stuck.set()
    await client.close()


@pytest.mark.asyncio
async def test_handler_errors_are_contained():
    server = FakeServer()
    client = make_client(server)
    received = []

    def flaky(payload):
        received.append(payload)
        if len(received) == 1:
            raise RuntimeError("handler bug")

    client.subscribe(TRIP_STATUS, flaky)
    await eventually(lambda: server.sockets and server.sockets[0].frames("subscribe"))
    subscription_id = server.sockets[0].frames("subscribe")[0]["subscriptionId"]

    server.sockets[0].push_event(subscription_id, 1)
    server.sockets[0].push_event(subscription_id, 2)

    await eventually(lambda: len(received) == 2)
    await client.close()


@pytest.mark.asyncio
async def test_close_stops_reconnecting():
    server = FakeServer()
    client = make_client(server)
    client.subscribe(TRIP_STATUS, lambda payload: None)
    await eventually(lambda: server.sockets)

    await client.close()
    await asyncio.sleep(0.05)

    assert server.attempts == 1
    assert client.state == ConnectionState.DISCONNECTED
    assert client.subscription_ids == []
    assert server.sockets[0].closed


@pytest.mark.asyncio
async def test_no_auth_frame_without_token():
    server = FakeServer()
    client = make_client(server, token=None)
    client.subscribe({"channel": "surge:zones"}, lambda payload: None)

    await eventually(lambda: server.sockets and server.sockets[0].sent)
    assert [f["type"] for f in server.sockets[0].sent] == ["subscribe"]
    await client.close()


@pytest.mark.asyncio
async def test_failing_token_provider_does_not_stop_the_client():
    server = FakeServer()
    calls = []

    def flaky_token():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("session storage unavailable")
        return "token-2"

    client = SubscriptionClient(
        token_provider=flaky_token,
        settings=ClientSettings(api_url="http://dispatch.test/api", connect_timeout=1.0),
        connect=server.connect,
        sleep=RecordedSleep(),
    )
    client.subscribe(TRIP_STATUS, lambda payload: None)

    await eventually(lambda: server.sockets and server.sockets[0].frames("subscribe"))
    assert server.sockets[0].frames("auth") == []
    assert client.state == ConnectionState.CONNECTED

    server.sockets[0].drop()
    await eventually(lambda: len(server.sockets) == 2 and server.sockets[1].frames("subscribe"))
    assert server.sockets[1].sent[0] == {"type": "auth", "token": "token-2"}
    await client.close()
