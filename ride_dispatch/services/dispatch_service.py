"""
Trip dispatch: find nearby eligible drivers and push the request to them.

A dispatch cycle for a trip starts on the first ``dispatch()`` call and
stays active until the trip leaves ``requested`` (``resolve()``) or the
offer window elapses. Calls for a trip with an active cycle are merged
into it: they wait for and return the same result instead of running a
second query and fan-out.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..config import settings
from ..models.trip import Trip, VehicleType
from ..schemas.trip import TripResponse
from .broadcaster import Broadcaster
from .eligibility import TravelCaptainDirectory
from .exceptions import BackingStoreUnavailableError
from .geo_index import GeoIndex, NearbyFilter, utcnow

logger = logging.getLogger(__name__)

TRIP_REQUEST_EVENT = "INSERT"


@dataclass(frozen=True)
class TripDispatchRequest:
    trip_id: str
    pickup_lat: float
    pickup_lng: float
    vehicle_type: Optional[VehicleType] = None
    is_travel_request: bool = False
    created_at: datetime = field(default_factory=utcnow)
    # Trip record pushed to drivers
    record: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_trip(cls, trip: Trip) -> "TripDispatchRequest":
        record = TripResponse.model_validate(trip).model_dump(mode="json")
        return cls(
            trip_id=str(trip.id),
            pickup_lat=trip.pickup_lat,
            pickup_lng=trip.pickup_lng,
            vehicle_type=trip.car_type,
            is_travel_request=bool(trip.is_travel_request),
            created_at=trip.created_at or utcnow(),
            record=record,
        )


@dataclass(frozen=True)
class DispatchResult:
    trip_id: str
    candidate_count: int = 0
    broadcast_targets: List[str] = field(default_factory=list)
    delivered: List[str] = field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None
    broadcast_failed: bool = False
    merged: bool = False
    # Trip left requested before the fan-out; nothing was sent
    resolved: bool = False


@dataclass
class _DispatchCycle:
    task: asyncio.Future
    started_at: float
    resolved: bool = False


class DispatchCoordinator:
    """Runs at most one dispatch cycle per trip at a time."""

    def __init__(
        self,
        geo_index: GeoIndex,
        captain_directory: TravelCaptainDirectory,
        broadcaster: Broadcaster,
        default_radius_km: Optional[float] = None,
        intercity_radius_km: Optional[float] = None,
        max_targets: Optional[int] = None,
        cycle_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_radius_km is None:
            default_radius_km = settings.default_search_radius_km
        if intercity_radius_km is None:
            intercity_radius_km = settings.intercity_search_radius_km
        if max_targets is None:
            max_targets = settings.max_broadcast_targets
        if cycle_ttl_seconds is None:
            cycle_ttl_seconds = settings.dispatch_cycle_ttl_seconds

        self.geo_index = geo_index
        self.captain_directory = captain_directory
        self.broadcaster = broadcaster
        self.default_radius_km = default_radius_km
        self.intercity_radius_km = intercity_radius_km
        self.max_targets = max_targets
        self.cycle_ttl_seconds = cycle_ttl_seconds
        self._clock = clock
        self._cycles: Dict[str, _DispatchCycle] = {}
        self._lock = threading.Lock()

    def is_active(self, trip_id: str) -> bool:
        with self._lock:
            cycle = self._cycles.get(str(trip_id))
            return cycle is not None and not cycle.resolved and not self._expired(cycle)

    async def dispatch(self, request: TripDispatchRequest) -> DispatchResult:
        with self._lock:
            cycle = self._cycles.get(request.trip_id)
            # A resolved cycle still in flight is joined, never run twice
            merged = cycle is not None and (cycle.resolved or not self._expired(cycle))
            if not merged:
                cycle = _DispatchCycle(
                    task=asyncio.ensure_future(self._run_cycle(request)),
                    started_at=self._clock(),
                )
                self._cycles[request.trip_id] = cycle

        if merged:
            logger.info(f"Dispatch for trip {request.trip_id} already active, merging")

        # A cancelled caller must not cancel the shared cycle
        result = await asyncio.shield(cycle.task)
        if merged:
            return replace(result, merged=True)
        return result

    def resolve(self, trip_id: str) -> List[str]:
        """
        End the trip's dispatch cycle once it leaves ``requested``.

        Returns the drivers the request was pushed to so callers can
        retract it from them. A cycle still searching is flagged instead
        and skips its fan-out, so there is nothing to retract.
        """
        with self._lock:
            cycle = self._cycles.get(str(trip_id))
            if cycle is None:
                return []
            cycle.resolved = True
            if not cycle.task.done():
                # Removed by the cycle itself when it finishes
                return []
            del self._cycles[str(trip_id)]

        if cycle.task.cancelled() or cycle.task.exception() is not None:
            return []
        return list(cycle.task.result().broadcast_targets)

    def _expired(self, cycle: _DispatchCycle) -> bool:
        if not cycle.task.done():
            return False
        return self._clock() - cycle.started_at >= self.cycle_ttl_seconds

    def _current_cycle(self, trip_id: str) -> Optional[_DispatchCycle]:
        cycle = self._cycles.get(trip_id)
        if cycle is not None and cycle.task is asyncio.current_task():
            return cycle
        return None

    def _release(self, trip_id: str) -> None:
        with self._lock:
            if self._current_cycle(trip_id) is not None:
                del self._cycles[trip_id]

    def _claim_fanout(self, trip_id: str) -> bool:
        """False once the trip was resolved; the cycle then drops itself."""
        with self._lock:
            cycle = self._current_cycle(trip_id)
            if cycle is not None and cycle.resolved:
                del self._cycles[trip_id]
                return False
            return True

    async def _run_cycle(self, request: TripDispatchRequest) -> DispatchResult:
        try:
            return await self._search_and_notify(request)
        except Exception:
            # Release so the next dispatch() starts a fresh cycle
            self._release(request.trip_id)
            raise

    async def _search_and_notify(self, request: TripDispatchRequest) -> DispatchResult:
        trip_id = request.trip_id
        radius_km = self.intercity_radius_km if request.is_travel_request else self.default_radius_km

        nearby_filter = None
        if not request.is_travel_request and request.vehicle_type is not None:
            nearby_filter = NearbyFilter(vehicle_types=frozenset({VehicleType(request.vehicle_type)}))

        try:
            nearby = await self.geo_index.query_nearby(
                request.pickup_lat, request.pickup_lng, radius_km, nearby_filter
            )
            candidate_ids = [driver.driver_id for driver in nearby]

            if request.is_travel_request and candidate_ids:
                approved = await self.captain_directory.filter_approved(candidate_ids)
                candidate_ids = [driver_id for driver_id in candidate_ids if driver_id in approved]
        except BackingStoreUnavailableError as e:
            logger.error(f"Dispatch for trip {trip_id} failed: {e}")
            # Let a later call retry instead of merging into a failed cycle
            self._release(trip_id)
            return DispatchResult(trip_id=trip_id, failed=True, error=str(e))

        # No await from here on: a resolve() either lands before this check
        # or sees the finished cycle and its targets
        if not self._claim_fanout(trip_id):
            logger.info(f"Trip {trip_id} left requested during dispatch, skipping fan-out")
            return DispatchResult(trip_id=trip_id, candidate_count=len(candidate_ids), resolved=True)

        targets = candidate_ids[: self.max_targets]
        if not targets:
            logger.info(f"No eligible drivers within {radius_km}km for trip {trip_id}")
            return DispatchResult(trip_id=trip_id)

        try:
            report = self.broadcaster.notify_drivers(targets, TRIP_REQUEST_EVENT, request.record)
        except Exception as e:
            logger.exception(f"Broadcast for trip {trip_id} failed: {e}")
            return DispatchResult(
                trip_id=trip_id,
                candidate_count=len(candidate_ids),
                broadcast_targets=targets,
                broadcast_failed=True,
                error=str(e),
            )

        if report.all_failed:
            logger.warning(f"Trip {trip_id} reached none of {len(targets)} drivers")
        else:
            logger.info(
                f"Dispatched trip {trip_id} to {len(report.delivered)}/{len(targets)} drivers "
                f"({len(candidate_ids)} candidates)"
            )

        return DispatchResult(
            trip_id=trip_id,
            candidate_count=len(candidate_ids),
            broadcast_targets=targets,
            delivered=report.delivered,
            broadcast_failed=report.all_failed,
        )
