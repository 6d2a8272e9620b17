"""
Realtime fan-out hub behind the ``/ws`` endpoint.

Each open WebSocket is a ``Connection`` with its own bounded outbox and
writer task, so publishing never waits on a slow socket. Subscriptions
are indexed by topic key ``(channel, params)`` so a publish touches only
the matching subscribers.

Delivery is at-most-once and best-effort: nothing is queued for a
disconnected client and a full outbox drops the event for that
connection only.
"""

import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import ValidationError

from ..config import settings
from ..schemas.realtime import (
    AuthFrame,
    Channel,
    EventFrame,
    PingFrame,
    PongFrame,
    SubscribeFrame,
    UnsubscribeFrame,
    client_frame_adapter,
)
from ..utils.auth import InvalidTokenError, TokenClaims, decode_access_token

logger = logging.getLogger(__name__)

TopicKey = Tuple[str, Tuple[Tuple[str, str], ...]]
Sender = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class ChannelSpec:
    params: Tuple[str, ...] = ()
    user_param: Optional[str] = None  # bound from the authenticated user, never from the client
    roles: Optional[frozenset] = None
    public: bool = False

    @property
    def key_params(self) -> Tuple[str, ...]:
        if self.user_param:
            return self.params + (self.user_param,)
        return self.params


DRIVER_ONLY = frozenset({"driver"})

CHANNEL_SPECS: Dict[Channel, ChannelSpec] = {
    Channel.DRIVER_TRIP_REQUESTS: ChannelSpec(user_param="driverId", roles=DRIVER_ONLY),
    Channel.DRIVER_OFFER_UPDATES: ChannelSpec(user_param="driverId", roles=DRIVER_ONLY),
    Channel.DRIVER_LOCATION: ChannelSpec(params=("tripId", "driverId")),
    Channel.TRIP_OFFERS: ChannelSpec(params=("tripId",)),
    Channel.TRIP_STATUS: ChannelSpec(params=("tripId",)),
    Channel.TRIP_MESSAGES: ChannelSpec(params=("tripId",)),
    Channel.SUPPORT_MESSAGES: ChannelSpec(params=("ticketId",)),
    Channel.SURGE_ZONES: ChannelSpec(public=True),
}


def topic_key(channel: Channel, params: Mapping[str, Any]) -> TopicKey:
    """Normalize (channel, params) to a hashable key. Extra params are ignored."""
    spec = CHANNEL_SPECS[channel]
    missing = [name for name in spec.key_params if params.get(name) in (None, "")]
    if missing:
        raise ValueError(f"{channel.value} requires {', '.join(missing)}")
    return channel.value, tuple((name, str(params[name])) for name in spec.key_params)


class Connection:
    """One accepted WebSocket and the subscriptions bound to it."""

    def __init__(self, send: Sender, outbox_size: int, connection_id: Optional[str] = None):
        self.connection_id = connection_id or uuid.uuid4().hex
        self.claims: Optional[TokenClaims] = None
        self.subscriptions: Dict[str, TopicKey] = {}
        self.deferred: Dict[str, SubscribeFrame] = {}
        self.closed = False
        self._send = send
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.claims.user_id if self.claims else None

    @property
    def authenticated(self) -> bool:
        return self.claims is not None

    def start(self) -> None:
        self._writer = asyncio.create_task(self._drain(), name=f"ws-writer-{self.connection_id}")

    def enqueue(self, message: str) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(message)
            return True
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for connection {self.connection_id}, dropping event")
            return False

    async def flush(self) -> None:
        """Wait until everything enqueued so far has been written."""
        await self._outbox.join()

    async def close(self) -> None:
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        self._discard_pending()

    async def _drain(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self._send(message)
            except Exception as e:
                logger.info(f"Send failed on connection {self.connection_id}: {e}")
                self.closed = True
                self._outbox.task_done()
                self._discard_pending()
                return
            self._outbox.task_done()

    def _discard_pending(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()


@dataclass
class DeliveryReport:
    delivered: List[str] = field(default_factory=list)
    unreachable: List[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.unreachable) and not self.delivered


class Broadcaster:
    """Connection registry and topic-indexed publisher."""

    def __init__(
        self,
        token_decoder: Callable[[str], TokenClaims] = decode_access_token,
        outbox_size: Optional[int] = None,
    ):
        self._decode_token = token_decoder
        self._outbox_size = outbox_size or settings.connection_outbox_size
        self._connections: Dict[str, Connection] = {}
        self._topics: Dict[TopicKey, Set[Tuple[str, str]]] = defaultdict(set)
        # Guards _connections and _topics; never held across an await
        self._lock = threading.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def subscriber_count(self, channel: Channel, params: Mapping[str, Any]) -> int:
        with self._lock:
            return len(self._topics.get(topic_key(channel, params), ()))

    # ---------------------- Connection lifecycle ----------------------

    async def register(self, send: Sender) -> Connection:
        connection = Connection(send, self._outbox_size)
        connection.start()
        with self._lock:
            self._connections[connection.connection_id] = connection
        logger.info(f"Realtime connection opened: {connection.connection_id}")
        return connection

    async def unregister(self, connection: Connection) -> None:
        with self._lock:
            self._connections.pop(connection.connection_id, None)
            for subscription_id, key in connection.subscriptions.items():
                self._unbind(key, connection.connection_id, subscription_id)
            connection.subscriptions.clear()
            connection.deferred.clear()
        await connection.close()
        logger.info(f"Realtime connection closed: {connection.connection_id}")

    # ---------------------- Inbound frames ----------------------

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        """Apply one client frame. Malformed frames are dropped."""
        try:
            frame = client_frame_adapter.validate_json(raw)
        except ValidationError:
            logger.debug(f"Dropping malformed frame on connection {connection.connection_id}")
            return

        if isinstance(frame, AuthFrame):
            self.authenticate(connection, frame.token)
        elif isinstance(frame, SubscribeFrame):
            self.subscribe(connection, frame)
        elif isinstance(frame, UnsubscribeFrame):
            self.unsubscribe(connection, frame.subscription_id)
        elif isinstance(frame, PingFrame):
            connection.enqueue(PongFrame().model_dump_json())

    def authenticate(self, connection: Connection, token: str) -> bool:
        if connection.authenticated:
            # First successful auth wins for the lifetime of the connection
            return True
        try:
            claims = self._decode_token(token)
        except InvalidTokenError as e:
            logger.info(f"Rejected auth on connection {connection.connection_id}: {e}")
            return False

        connection.claims = claims
        logger.info(f"Connection {connection.connection_id} authenticated as {claims.user_id}")

        deferred = list(connection.deferred.values())
        connection.deferred.clear()
        for frame in deferred:
            self.subscribe(connection, frame)
        return True

    def subscribe(self, connection: Connection, frame: SubscribeFrame) -> bool:
        """Bind a subscription; returns False when rejected or deferred."""
        spec = CHANNEL_SPECS[frame.channel]
        subscription_id = frame.subscription_id

        if not spec.public and not connection.authenticated:
            # Replaces any earlier frame with the same id
            self._drop_subscription(connection, subscription_id)
            connection.deferred[subscription_id] = frame
            logger.debug(f"Deferred {frame.channel.value} subscription {subscription_id} until auth")
            return False

        if spec.roles is not None and connection.claims.role not in spec.roles:
            logger.info(f"Rejected {frame.channel.value} for role {connection.claims.role}")
            return False

        params = frame.channel_params()
        if spec.user_param:
            params[spec.user_param] = connection.user_id
        try:
            key = topic_key(frame.channel, params)
        except ValueError as e:
            logger.debug(f"Rejected subscription {subscription_id}: {e}")
            return False

        with self._lock:
            # Re-subscribing with a known id overwrites the old binding
            previous = connection.subscriptions.get(subscription_id)
            if previous is not None:
                self._unbind(previous, connection.connection_id, subscription_id)
            connection.subscriptions[subscription_id] = key
            self._topics[key].add((connection.connection_id, subscription_id))
        return True

    def unsubscribe(self, connection: Connection, subscription_id: str) -> None:
        self._drop_subscription(connection, subscription_id)
        connection.deferred.pop(subscription_id, None)

    def _drop_subscription(self, connection: Connection, subscription_id: str) -> None:
        with self._lock:
            key = connection.subscriptions.pop(subscription_id, None)
            if key is not None:
                self._unbind(key, connection.connection_id, subscription_id)

    def _unbind(self, key: TopicKey, connection_id: str, subscription_id: str) -> None:
        subscribers = self._topics.get(key)
        if subscribers is None:
            return
        subscribers.discard((connection_id, subscription_id))
        if not subscribers:
            del self._topics[key]

    # ---------------------- Outbound events ----------------------

    def publish(self, channel: Channel, params: Mapping[str, Any], payload: Any) -> int:
        """Deliver payload to every subscription on (channel, params); returns the number enqueued."""
        key = topic_key(channel, params)
        with self._lock:
            targets = [
                (self._connections.get(connection_id), subscription_id)
                for connection_id, subscription_id in self._topics.get(key, ())
            ]

        delivered = 0
        for connection, subscription_id in targets:
            if connection is None:
                continue
            frame = EventFrame(subscription_id=subscription_id, payload=payload)
            if connection.enqueue(frame.model_dump_json(by_alias=True)):
                delivered += 1
        return delivered

    def notify_drivers(self, driver_ids: Iterable[str], event_type: str, record: Mapping[str, Any]) -> DeliveryReport:
        """Push a trip request change to each driver's trip-requests subscription."""
        report = DeliveryReport()
        payload = {"eventType": event_type, "new": dict(record)}
        for driver_id in driver_ids:
            sent = self.publish(Channel.DRIVER_TRIP_REQUESTS, {"driverId": driver_id}, payload)
            if sent:
                report.delivered.append(driver_id)
            else:
                report.unreachable.append(driver_id)
        return report

    def publish_trip_status(self, record: Mapping[str, Any], previous_status: Optional[str] = None) -> int:
        payload: Dict[str, Any] = {"eventType": "UPDATE", "new": dict(record)}
        if previous_status is not None:
            payload["old"] = {"status": previous_status}
        return self.publish(Channel.TRIP_STATUS, {"tripId": record["id"]}, payload)

    def publish_driver_location(self, trip_id: str, driver_id: str, lat: float, lng: float) -> int:
        payload = {"driverId": driver_id, "lat": lat, "lng": lng}
        return self.publish(Channel.DRIVER_LOCATION, {"tripId": trip_id, "driverId": driver_id}, payload)

    async def close_all(self) -> None:
        with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            await self.unregister(connection)


# Global broadcaster instance
broadcaster = Broadcaster()
