"""
Driver location index.

Maps driver id to last-known position, online flag and vehicle type, and
answers "who is within R km of P" queries.

Entries are never deleted. A location report older than the staleness
window, or one flagged offline, is simply left out of query results
(soft expiry). Two backends share the same filtering rules:

- ``RedisGeoIndex``: GEO set for the coarse radius search plus one hash
  of metadata per driver. Used in production.
- ``InMemoryGeoIndex``: process-local dictionary. Used for single-node
  development and tests.

Query failures surface as ``GeoIndexUnavailableError`` so callers can tell
"nobody nearby" (empty list) apart from "could not ask".
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from ..config import settings
from ..models.trip import VehicleType
from ..utils.geo import haversine_km
from ..utils.redis_client import RedisClient
from .exceptions import GeoIndexUnavailableError

logger = logging.getLogger(__name__)

# Redis GEO hashes positions with ~0.6mm error; search a little wider and
# let haversine on the stored coordinates decide the boundary.
GEO_SEARCH_PADDING_KM = 0.05


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DriverLocationEntry:
    driver_id: str
    latitude: float
    longitude: float
    updated_at: datetime
    is_online: bool
    vehicle_type: VehicleType

    def is_eligible(self, now: datetime, staleness: timedelta) -> bool:
        """Online and reported within the staleness window."""
        return self.is_online and now - self.updated_at <= staleness


@dataclass(frozen=True)
class NearbyDriver:
    driver_id: str
    distance_km: float


@dataclass(frozen=True)
class NearbyFilter:
    vehicle_types: Optional[frozenset] = None
    exclude_driver_ids: frozenset = frozenset()

    def accepts(self, entry: DriverLocationEntry) -> bool:
        if entry.driver_id in self.exclude_driver_ids:
            return False
        if self.vehicle_types is not None and entry.vehicle_type not in self.vehicle_types:
            return False
        return True


class GeoIndex:
    """Shared contract and filtering rules for driver location backends."""

    def __init__(
        self,
        staleness_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if staleness_seconds is None:
            staleness_seconds = settings.location_staleness_seconds
        if timeout_seconds is None:
            timeout_seconds = settings.geo_query_timeout_seconds
        self.staleness = timedelta(seconds=staleness_seconds)
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    async def upsert_location(
        self,
        driver_id: str,
        lat: float,
        lng: float,
        is_online: bool,
        vehicle_type: VehicleType,
    ) -> None:
        entry = DriverLocationEntry(
            driver_id=str(driver_id),
            latitude=float(lat),
            longitude=float(lng),
            updated_at=self._clock(),
            is_online=is_online,
            vehicle_type=VehicleType(vehicle_type),
        )
        try:
            await asyncio.wait_for(self._store(entry), self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GeoIndexUnavailableError("Location update timed out") from e

    async def query_nearby(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        filter: Optional[NearbyFilter] = None,
    ) -> List[NearbyDriver]:
        """
        Drivers within radius_km of (lat, lng), nearest first.

        Only online entries reported within the staleness window are
        returned. Raises GeoIndexUnavailableError when the backing store
        fails or does not answer within the query timeout.
        """
        if radius_km < 0:
            raise ValueError("radius_km must be non-negative")
        try:
            entries = await asyncio.wait_for(self._candidates(lat, lng, radius_km), self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GeoIndexUnavailableError("Proximity query timed out") from e
        return self._select(entries, lat, lng, radius_km, filter)

    def _select(
        self,
        entries: Iterable[DriverLocationEntry],
        lat: float,
        lng: float,
        radius_km: float,
        filter: Optional[NearbyFilter],
    ) -> List[NearbyDriver]:
        now = self._clock()
        results = []
        for entry in entries:
            if not entry.is_eligible(now, self.staleness):
                continue
            if filter is not None and not filter.accepts(entry):
                continue
            distance = haversine_km(lat, lng, entry.latitude, entry.longitude)
            if distance <= radius_km:
                results.append(NearbyDriver(entry.driver_id, distance))
        results.sort(key=lambda d: (d.distance_km, d.driver_id))
        return results

    async def _store(self, entry: DriverLocationEntry) -> None:
        raise NotImplementedError

    async def _candidates(self, lat: float, lng: float, radius_km: float) -> List[DriverLocationEntry]:
        raise NotImplementedError


class InMemoryGeoIndex(GeoIndex):
    """Process-local index; every query scans all known drivers."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._entries: Dict[str, DriverLocationEntry] = {}
        self._lock = threading.Lock()

    async def _store(self, entry: DriverLocationEntry) -> None:
        with self._lock:
            self._entries[entry.driver_id] = entry

    async def _candidates(self, lat: float, lng: float, radius_km: float) -> List[DriverLocationEntry]:
        with self._lock:
            return list(self._entries.values())

    def get_entry(self, driver_id: str) -> Optional[DriverLocationEntry]:
        with self._lock:
            return self._entries.get(str(driver_id))


class RedisGeoIndex(GeoIndex):
    """Redis GEO backed index shared by every service instance."""

    def __init__(self, client: RedisClient, **kwargs):
        super().__init__(**kwargs)
        self._client = client

    async def _store(self, entry: DriverLocationEntry) -> None:
        meta = {
            "lat": repr(entry.latitude),
            "lng": repr(entry.longitude),
            "is_online": "1" if entry.is_online else "0",
            "vehicle_type": entry.vehicle_type.value,
            "updated_at": repr(entry.updated_at.timestamp()),
        }
        try:
            await self._client.store_driver_location(entry.driver_id, entry.latitude, entry.longitude, meta)
        except (RedisError, OSError) as e:
            logger.error(f"Failed to store location for driver {entry.driver_id}: {e}")
            raise GeoIndexUnavailableError(str(e)) from e

    async def _candidates(self, lat: float, lng: float, radius_km: float) -> List[DriverLocationEntry]:
        try:
            driver_ids = await self._client.search_driver_ids(lat, lng, radius_km + GEO_SEARCH_PADDING_KM)
            metas = await self._client.get_driver_metas(driver_ids)
        except (RedisError, OSError) as e:
            logger.error(f"Proximity query failed: {e}")
            raise GeoIndexUnavailableError(str(e)) from e

        entries = []
        for driver_id, meta in zip(driver_ids, metas):
            entry = self._parse_meta(driver_id, meta)
            if entry is not None:
                entries.append(entry)
        return entries

    @staticmethod
    def _parse_meta(driver_id: str, meta: Optional[Dict[str, str]]) -> Optional[DriverLocationEntry]:
        # Metadata hash expired or was never written
        if not meta:
            return None
        try:
            return DriverLocationEntry(
                driver_id=driver_id,
                latitude=float(meta["lat"]),
                longitude=float(meta["lng"]),
                updated_at=datetime.fromtimestamp(float(meta["updated_at"]), tz=timezone.utc),
                is_online=meta.get("is_online") == "1",
                vehicle_type=VehicleType(meta["vehicle_type"]),
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping malformed location metadata for driver {driver_id}: {e}")
            return None


def create_geo_index(client: RedisClient) -> GeoIndex:
    """Build the index selected by settings.geo_backend."""
    if settings.geo_backend == "memory":
        logger.info("Using in-memory geo index")
        return InMemoryGeoIndex()
    return RedisGeoIndex(client)
