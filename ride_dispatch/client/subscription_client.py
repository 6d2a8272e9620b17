"""
Reconnecting realtime client.

One WebSocket is shared by every logical subscription. Subscriptions live
in a registry owned by the client and survive reconnects: after each
successful connect the client sends ``auth`` (when a token is available)
followed by one ``subscribe`` frame per registered subscription, using the
subscription's original id.

Handlers run on a per-subscription delivery task fed by a queue, never on
the socket read loop. Delivery is best-effort; an event straddling a
reconnect may be seen twice, so handlers should be idempotent.
"""

import asyncio
import enum
import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import websockets
from websockets.exceptions import WebSocketException

from ..schemas.realtime import Channel
from .api import TokenProvider, resolve_token
from .backoff import ExponentialBackoff
from .config import ClientSettings

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
ConnectFactory = Callable[[str], Awaitable[Any]]

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class _Subscription:
    subscription_id: str
    params: Dict[str, str]
    handler: Handler
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None

    def subscribe_frame(self) -> Dict[str, str]:
        return {"type": "subscribe", "subscriptionId": self.subscription_id, **self.params}


def _default_connect(url: str):
    return websockets.connect(url)


class SubscriptionClient:

    def __init__(
        self,
        url: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        settings: Optional[ClientSettings] = None,
        connect: ConnectFactory = _default_connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or ClientSettings()
        self.url = url or settings.ws_url
        self.connect_timeout = settings.connect_timeout
        self.backoff = ExponentialBackoff(settings.reconnect_base_delay, settings.reconnect_max_delay)
        self._token_provider = token_provider
        self._connect = connect
        self._sleep = sleep

        self._subscriptions: Dict[str, _Subscription] = {}
        self._state = ConnectionState.DISCONNECTED
        self._runner: Optional[asyncio.Task] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._socket = None
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscription_ids(self) -> list:
        return list(self._subscriptions)

    def subscribe(self, params: Mapping[str, Any], handler: Handler) -> Callable[[], None]:
        """
        Register interest in a channel; returns a function that unsubscribes.

        Must be called from a running event loop. The subscription is
        registered before any connection attempt, so a subscribe racing a
        reconnect is flushed once the socket opens.
        """
        channel = Channel(params["channel"])
        frame_params = {key: str(value) for key, value in params.items()}
        frame_params["channel"] = channel.value

        subscription_id = f"sub_{uuid.uuid4().hex}"
        record = _Subscription(subscription_id, frame_params, handler)
        record.task = asyncio.create_task(self._deliver(record), name=f"deliver-{subscription_id}")
        self._subscriptions[subscription_id] = record

        if self._state == ConnectionState.CONNECTED:
            self._send(record.subscribe_frame())
        else:
            self._ensure_running()

        return lambda: self.unsubscribe(subscription_id)

    def unsubscribe(self, subscription_id: str) -> None:
        record = self._subscriptions.pop(subscription_id, None)
        if record is None:
            return
        if record.task is not None:
            record.task.cancel()
        if self._state == ConnectionState.CONNECTED:
            self._send({"type": "unsubscribe", "subscriptionId": subscription_id})

    async def close(self) -> None:
        """Intentional shutdown: no reconnect, all subscriptions dropped."""
        self._closed = True
        for subscription_id in list(self._subscriptions):
            self.unsubscribe(subscription_id)
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self._state = ConnectionState.DISCONNECTED

    # ---------------------- Connection loop ----------------------

    def _ensure_running(self) -> None:
        self._closed = False
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run(), name="realtime-connection")

    def _should_connect(self) -> bool:
        # Nobody listening means no reconnect churn
        return not self._closed and bool(self._subscriptions)

    async def _run(self) -> None:
        try:
            while self._should_connect():
                self._state = ConnectionState.CONNECTING
                try:
                    socket = await asyncio.wait_for(self._connect(self.url), self.connect_timeout)
                except TRANSPORT_ERRORS as e:
                    self._state = ConnectionState.DISCONNECTED
                    delay = self.backoff.next_delay()
                    logger.info(f"Realtime connect failed ({e!r}), retrying in {delay:.1f}s")
                    await self._sleep(delay)
                    continue

                self.backoff.reset()
                logger.info("Realtime connected")
                try:
                    await self._serve(socket)
                except TRANSPORT_ERRORS as e:
                    logger.info(f"Realtime connection lost: {e!r}")
                finally:
                    self._state = ConnectionState.DISCONNECTED
                    self._outbox = None
                    self._socket = None
                    await self._close_quietly(socket)

                if not self._should_connect():
                    break
                delay = self.backoff.next_delay()
                logger.info(f"Reconnecting in {delay:.1f}s")
                await self._sleep(delay)
        finally:
            self._state = ConnectionState.DISCONNECTED

    async def _token(self) -> Optional[str]:
        try:
            return await resolve_token(self._token_provider)
        except Exception:
            # Connect unauthenticated; the next reconnect asks again
            logger.warning("Token provider failed, connecting without auth", exc_info=True)
            return None

    async def _serve(self, socket) -> None:
        token = await self._token()

        outbox: asyncio.Queue = asyncio.Queue()
        if token:
            outbox.put_nowait({"type": "auth", "token": token})
        # No await between flushing the registry and flipping to CONNECTED,
        # so every subscription is sent exactly once on this socket.
        for record in self._subscriptions.values():
            outbox.put_nowait(record.subscribe_frame())
        self._outbox = outbox
        self._socket = socket
        self._state = ConnectionState.CONNECTED

        writer = asyncio.create_task(self._write(socket, outbox))
        try:
            while True:
                raw = await socket.recv()
                self._dispatch(raw)
        finally:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    async def _write(self, socket, outbox: asyncio.Queue) -> None:
        while True:
            frame = await outbox.get()
            try:
                await socket.send(json.dumps(frame))
            except TRANSPORT_ERRORS as e:
                logger.info(f"Realtime send failed: {e!r}")
                # Unblocks the read loop so the connection is re-established
                await self._close_quietly(socket)
                return

    def _send(self, frame: Dict[str, Any]) -> None:
        if self._outbox is not None:
            self._outbox.put_nowait(frame)

    @staticmethod
    async def _close_quietly(socket) -> None:
        try:
            await socket.close()
        except TRANSPORT_ERRORS:
            pass

    # ---------------------- Event delivery ----------------------

    def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return
        if not isinstance(message, dict) or message.get("type") != "event":
            return
        record = self._subscriptions.get(message.get("subscriptionId"))
        if record is not None:
            record.queue.put_nowait(message.get("payload"))

    async def _deliver(self, record: _Subscription) -> None:
        while True:
            payload = await record.queue.get()
            try:
                result = record.handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Handler for {record.subscription_id} failed")
