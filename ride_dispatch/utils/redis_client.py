import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
import json
import logging
from typing import Optional, Any, Dict, List
from ..config import settings

logger = logging.getLogger(__name__)

DRIVERS_GEO_KEY = "drivers:geo"
DRIVER_META_PREFIX = "driver:meta:"


class RedisClient:
    def __init__(self):
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        try:
            self.redis = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                retry_on_timeout=True,
                socket_keepalive=True,
                socket_timeout=settings.geo_query_timeout_seconds,
            )
            # Test connection
            await self.redis.ping()
            logger.info("Connected to Redis successfully")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Disconnected from Redis")

    def _require(self) -> redis.Redis:
        if self.redis is None:
            raise RedisConnectionError("Redis client is not connected")
        return self.redis

    async def store_driver_location(self, driver_id: str, lat: float, lng: float, meta: Dict[str, str]):
        """Write driver position to the GEO set and its metadata hash"""
        client = self._require()
        meta_key = f"{DRIVER_META_PREFIX}{driver_id}"
        async with client.pipeline(transaction=True) as pipe:
            pipe.geoadd(DRIVERS_GEO_KEY, (lng, lat, driver_id))
            pipe.hset(meta_key, mapping=meta)
            pipe.expire(meta_key, settings.location_meta_ttl_seconds)
            await pipe.execute()

    async def search_driver_ids(self, lat: float, lng: float, radius_km: float) -> List[str]:
        """Driver ids whose GEO position lies within radius_km, nearest first"""
        client = self._require()
        return await client.geosearch(
            DRIVERS_GEO_KEY,
            longitude=lng,
            latitude=lat,
            radius=radius_km,
            unit="km",
            sort="ASC",
        )

    async def get_driver_metas(self, driver_ids: List[str]) -> List[Dict[str, str]]:
        """Fetch metadata hashes for many drivers in one round trip"""
        if not driver_ids:
            return []
        client = self._require()
        async with client.pipeline(transaction=False) as pipe:
            for driver_id in driver_ids:
                pipe.hgetall(f"{DRIVER_META_PREFIX}{driver_id}")
            return await pipe.execute()

    async def publish_event(self, channel: str, event_data: Dict[str, Any]):
        """Publish event to Redis channel"""
        client = self._require()
        await client.publish(channel, json.dumps(event_data, default=str))
        logger.debug(f"Published event to {channel}: {event_data.get('event_type')}")

    async def health_check(self) -> bool:
        """Check Redis health"""
        try:
            await self._require().ping()
            return True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False


# Global Redis client instance
redis_client = RedisClient()
