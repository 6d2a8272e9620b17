import logging
from typing import Dict, Any
from datetime import datetime, timezone
import uuid

from redis.exceptions import RedisError

from ..utils.redis_client import RedisClient, redis_client

logger = logging.getLogger(__name__)


class EventService:
    """Publish trip lifecycle events to Redis for downstream consumers"""

    TRIP_EVENTS_CHANNEL = "trip-events"

    def __init__(self, client: RedisClient = redis_client):
        self._client = client

    async def publish_trip_event(self, event_type: str, event_data: Dict[str, Any]) -> bool:
        """Publish a trip event; failures are logged, never raised"""
        event = {
            "event_id": str(uuid.uuid4()),
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "ride-dispatch",
            "data": event_data,
        }
        try:
            await self._client.publish_event(self.TRIP_EVENTS_CHANNEL, event)
        except (RedisError, OSError) as e:
            logger.error(f"Failed to publish trip event {event_type}: {e}")
            return False
        logger.info(f"Published trip event: {event_type}")
        return True
