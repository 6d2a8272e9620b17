"""
Trip status monitoring over two channels.

The ``trip:status`` push subscription is the primary signal; polling
``GET /trips/{id}`` on a fixed interval is the backstop for pushes lost
while the socket was down. Whichever channel reports a new status first
fires the change callback; the other channel's later report of the same
status is a no-op.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Set

import httpx

from ..schemas.realtime import Channel
from .api import TripsApi
from .config import ClientSettings
from .subscription_client import SubscriptionClient

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"completed", "cancelled", "expired"})

# Lifecycle position; a status never moves a trip backwards
STATUS_RANK = {
    "requested": 0,
    "accepted": 1,
    "arrived": 2,
    "started": 3,
    "completed": 4,
    "cancelled": 4,
    "expired": 4,
}


@dataclass(frozen=True)
class StatusChange:
    trip_id: str
    previous: Optional[str]
    status: str
    source: str  # "push" or "poll"
    # Travel requests skip in-city side effects such as auto-navigation
    is_travel_request: bool = False
    record: Dict[str, Any] = field(default_factory=dict, compare=False)


class StatusReconciler:

    def __init__(
        self,
        client: SubscriptionClient,
        api: TripsApi,
        on_change: Callable[[StatusChange], Any],
        poll_interval: Optional[float] = None,
    ):
        self._client = client
        self._api = api
        self._on_change = on_change
        self.poll_interval = poll_interval or ClientSettings().poll_interval

        self._trip_id: Optional[str] = None
        self._last_status: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._callbacks: Set[asyncio.Task] = set()

    @property
    def trip_id(self) -> Optional[str]:
        return self._trip_id

    @property
    def last_status(self) -> Optional[str]:
        return self._last_status

    def is_monitoring(self) -> bool:
        return self._trip_id is not None

    def start_monitoring(self, trip_id: str) -> None:
        trip_id = str(trip_id)
        if self._trip_id == trip_id:
            return
        self.stop_monitoring()

        self._trip_id = trip_id
        logger.info(f"Monitoring trip {trip_id}")
        self._unsubscribe = self._client.subscribe(
            {"channel": Channel.TRIP_STATUS.value, "tripId": trip_id},
            lambda payload: self._on_push(trip_id, payload),
        )
        self._poll_task = asyncio.create_task(self._poll_loop(trip_id), name=f"poll-{trip_id}")

    def stop_monitoring(self) -> None:
        """Clears the poll timer and unsubscribes before returning."""
        poll_task, self._poll_task = self._poll_task, None
        if poll_task is not None:
            poll_task.cancel()

        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()

        if self._trip_id is not None:
            logger.info(f"Stopped monitoring trip {self._trip_id}")
        self._trip_id = None
        self._last_status = None

    def _on_push(self, trip_id: str, payload: Any) -> None:
        new = payload.get("new") if isinstance(payload, dict) else None
        if isinstance(new, dict):
            self._observe(trip_id, new, "push")

    async def _poll_loop(self, trip_id: str) -> None:
        while True:
            try:
                await self._poll_once(trip_id)
            except Exception:
                logger.exception(f"Status poll for trip {trip_id} crashed, retrying next tick")
            await asyncio.sleep(self.poll_interval)

    async def _poll_once(self, trip_id: str) -> None:
        try:
            trip = await self._api.get_trip(trip_id)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            # Network blips are expected; the next tick retries
            logger.debug(f"Status poll for trip {trip_id} failed: {e!r}")
            return
        if isinstance(trip, dict):
            self._observe(trip_id, trip, "poll")

    def _observe(self, trip_id: str, record: Mapping[str, Any], source: str) -> None:
        status = record.get("status")
        if trip_id != self._trip_id or not status:
            return
        previous = self._last_status
        if status == previous:
            return
        if previous is not None and STATUS_RANK.get(status, -1) < STATUS_RANK.get(previous, -1):
            logger.debug(f"Ignoring stale {source} status {status} after {previous} for trip {trip_id}")
            return

        self._last_status = status
        logger.info(f"Trip {trip_id} {source}: {previous} -> {status}")
        change = StatusChange(
            trip_id=trip_id,
            previous=previous,
            status=status,
            source=source,
            is_travel_request=bool(record.get("is_travel_request")),
            record=dict(record),
        )

        if status in TERMINAL_STATUSES:
            self.stop_monitoring()
        self._emit(change)

    def _emit(self, change: StatusChange) -> None:
        try:
            result = self._on_change(change)
        except Exception:
            logger.exception(f"Status change callback failed for trip {change.trip_id}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._callbacks.add(task)
            task.add_done_callback(self._callbacks.discard)
