import asyncio
import json
import uuid

import pytest

from ride_dispatch.schemas.realtime import Channel
from ride_dispatch.services.broadcaster import Broadcaster, topic_key

pytestmark = pytest.mark.unit


class Sink:
    """Collects frames written to one connection."""

    def __init__(self, fail: bool = False):
        self.frames = []
        self.fail = fail

    async def send(self, message: str):
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.frames.append(json.loads(message))

    def events(self):
        return [frame for frame in self.frames if frame["type"] == "event"]


def frame(**kwargs):
    return json.dumps(kwargs)


async def open_connection(hub, sink=None):
    sink = sink or Sink()
    connection = await hub.register(sink.send)
    return connection, sink


@pytest.fixture
async def hub():
    broadcaster = Broadcaster(outbox_size=8)
    yield broadcaster
    await broadcaster.close_all()


@pytest.mark.asyncio
async def test_public_channel_needs_no_auth(hub):
    connection, sink = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="surge:zones"))

    assert hub.publish(Channel.SURGE_ZONES, {}, {"zone": "downtown"}) == 1
    await connection.flush()

    assert sink.events() == [{"type": "event", "subscriptionId": "s1", "payload": {"zone": "downtown"}}]


@pytest.mark.asyncio
async def test_subscribe_before_auth_is_deferred_until_auth(hub, customer_id, make_token):
    trip_id = str(uuid.uuid4())
    connection, sink = await open_connection(hub)

    await hub.handle_frame(
        connection, frame(type="subscribe", subscriptionId="s1", channel="trip:status", tripId=trip_id)
    )
    assert hub.subscriber_count(Channel.TRIP_STATUS, {"tripId": trip_id}) == 0
    assert hub.publish(Channel.TRIP_STATUS, {"tripId": trip_id}, {"status": "accepted"}) == 0

    await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))
    assert hub.subscriber_count(Channel.TRIP_STATUS, {"tripId": trip_id}) == 1

    hub.publish(Channel.TRIP_STATUS, {"tripId": trip_id}, {"status": "arrived"})
    await connection.flush()
    # Events published before the subscription was bound are not replayed
    assert [e["payload"] for e in sink.events()] == [{"status": "arrived"}]


@pytest.mark.asyncio
async def test_invalid_token_leaves_connection_unauthenticated(hub):
    connection, _ = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="auth", token="not-a-jwt"))

    assert not connection.authenticated


@pytest.mark.asyncio
async def test_first_successful_auth_wins(hub, customer_id, driver_id, make_token):
    connection, _ = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="auth", token=make_token(driver_id, "driver")))
    await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))

    assert connection.user_id == driver_id


@pytest.mark.asyncio
async def test_driver_channel_bound_to_authenticated_driver(hub, driver_id, make_token):
    connection, sink = await open_connection(hub)
    other_driver = str(uuid.uuid4())
    await hub.handle_frame(connection, frame(type="auth", token=make_token(driver_id, "driver")))
    # A client-supplied driverId is ignored in favour of the token subject
    await hub.handle_frame(
        connection,
        frame(type="subscribe", subscriptionId="offers", channel="driver:trip-requests", driverId=other_driver),
    )

    assert hub.subscriber_count(Channel.DRIVER_TRIP_REQUESTS, {"driverId": driver_id}) == 1
    assert hub.subscriber_count(Channel.DRIVER_TRIP_REQUESTS, {"driverId": other_driver}) == 0

    report = hub.notify_drivers([driver_id, other_driver], "INSERT", {"id": "t1"})
    await connection.flush()

    assert report.delivered == [driver_id]
    assert report.unreachable == [other_driver]
    assert not report.all_failed
    assert sink.events()[0]["payload"] == {"eventType": "INSERT", "new": {"id": "t1"}}


@pytest.mark.asyncio
async def test_customer_cannot_subscribe_to_driver_channel(hub, customer_id, make_token):
    connection, _ = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))
    await hub.handle_frame(
        connection, frame(type="subscribe", subscriptionId="s1", channel="driver:trip-requests")
    )

    assert connection.subscriptions == {}
    assert hub.subscriber_count(Channel.DRIVER_TRIP_REQUESTS, {"driverId": customer_id}) == 0


@pytest.mark.asyncio
async def test_publish_reaches_only_matching_topic(hub, customer_id, make_token):
    first, first_sink = await open_connection(hub)
    second, second_sink = await open_connection(hub)
    for connection, trip in ((first, "trip-a"), (second, "trip-b")):
        await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))
        await hub.handle_frame(
            connection, frame(type="subscribe", subscriptionId="status", channel="trip:status", tripId=trip)
        )

    assert hub.publish(Channel.TRIP_STATUS, {"tripId": "trip-a"}, {"status": "started"}) == 1
    await first.flush()
    await second.flush()

    assert len(first_sink.events()) == 1
    assert second_sink.events() == []


@pytest.mark.asyncio
async def test_resubscribe_same_id_replaces_binding(hub, customer_id, make_token):
    connection, _ = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="trip:status", tripId="a"))
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="trip:status", tripId="b"))

    assert hub.subscriber_count(Channel.TRIP_STATUS, {"tripId": "a"}) == 0
    assert hub.subscriber_count(Channel.TRIP_STATUS, {"tripId": "b"}) == 1


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(hub, customer_id, make_token):
    connection, sink = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="trip:status", tripId="a"))
    await hub.handle_frame(connection, frame(type="unsubscribe", subscriptionId="s1"))

    assert hub.publish(Channel.TRIP_STATUS, {"tripId": "a"}, {"status": "started"}) == 0
    await connection.flush()
    assert sink.events() == []


@pytest.mark.asyncio
async def test_missing_channel_param_rejected(hub, customer_id, make_token):
    connection, _ = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="trip:status"))

    assert connection.subscriptions == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        json.dumps({"type": "subscribe", "subscriptionId": "s1", "channel": "no-such-channel"}),
        json.dumps({"type": "teleport"}),
        json.dumps({"type": "auth"}),
        json.dumps([1, 2, 3]),
    ],
)
async def test_malformed_frames_are_dropped(hub, raw):
    connection, sink = await open_connection(hub)
    await hub.handle_frame(connection, raw)
    await hub.handle_frame(connection, frame(type="ping"))
    await connection.flush()

    # Connection is still usable after the bad frame
    assert sink.frames == [{"type": "pong"}]
    assert connection.subscriptions == {}


@pytest.mark.asyncio
async def test_unregister_removes_every_subscription(hub, customer_id, make_token):
    connection, _ = await open_connection(hub)
    await hub.handle_frame(connection, frame(type="auth", token=make_token(customer_id)))
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="trip:status", tripId="a"))
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s2", channel="trip:offers", tripId="a"))

    await hub.unregister(connection)

    assert hub.connection_count == 0
    assert hub.subscriber_count(Channel.TRIP_STATUS, {"tripId": "a"}) == 0
    assert hub.publish(Channel.TRIP_OFFERS, {"tripId": "a"}, {}) == 0


@pytest.mark.asyncio
async def test_failed_send_marks_connection_closed(hub):
    connection, _ = await open_connection(hub, Sink(fail=True))
    await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="surge:zones"))

    hub.publish(Channel.SURGE_ZONES, {}, {"zone": "a"})
    await connection.flush()

    assert connection.closed
    assert hub.publish(Channel.SURGE_ZONES, {}, {"zone": "b"}) == 0


@pytest.mark.asyncio
async def test_slow_connection_does_not_block_others(hub):
    gate = asyncio.Event()

    async def stuck_send(message):
        await gate.wait()

    slow = await hub.register(stuck_send)
    fast, fast_sink = await open_connection(hub)
    for connection in (slow, fast):
        await hub.handle_frame(connection, frame(type="subscribe", subscriptionId="s1", channel="surge:zones"))

    # Slow outbox fills at 8 and starts dropping; the fast one keeps draining
    counts = []
    for n in range(20):
        counts.append(hub.publish(Channel.SURGE_ZONES, {}, {"n": n}))
        await fast.flush()

    assert len(fast_sink.events()) == 20
    assert min(counts) == 1
    gate.set()


def test_topic_key_ignores_extra_params():
    assert topic_key(Channel.TRIP_STATUS, {"tripId": "a", "extra": "x"}) == ("trip:status", (("tripId", "a"),))
    with pytest.raises(ValueError):
        topic_key(Channel.DRIVER_LOCATION, {"tripId": "a"})
