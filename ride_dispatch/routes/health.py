from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from datetime import datetime, timezone
import logging

from ..database import check_database_health
from ..dependencies import get_broadcaster
from ..services.broadcaster import Broadcaster
from ..utils.redis_client import redis_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dispatch", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: datetime
    dependencies: dict
    realtime_connections: int


@router.get("/health", response_model=HealthResponse)
async def health_check(response: Response, broadcaster: Broadcaster = Depends(get_broadcaster)):
    """Health check endpoint for Kubernetes probes"""
    db_healthy = await check_database_health()
    redis_healthy = await redis_client.health_check()

    overall_status = "healthy" if db_healthy and redis_healthy else "unhealthy"
    if overall_status != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status=overall_status,
        service="ride-dispatch",
        timestamp=datetime.now(timezone.utc),
        dependencies={
            "database": "connected" if db_healthy else "disconnected",
            "redis": "connected" if redis_healthy else "disconnected"
        },
        realtime_connections=broadcaster.connection_count,
    )
