from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional
import logging

from ..config import settings
from ..dependencies import get_broadcaster, get_geo_index
from ..models.trip import VehicleType
from ..schemas.location import (
    LocationHeartbeatRequest,
    LocationHeartbeatResponse,
    NearbyDriver,
    NearbyDriversResponse,
)
from ..services.broadcaster import Broadcaster
from ..services.exceptions import GeoIndexUnavailableError
from ..services.geo_index import GeoIndex, NearbyFilter
from ..utils.auth import TokenClaims, get_current_claims, get_current_driver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/location", tags=["location"])


@router.put("", response_model=LocationHeartbeatResponse)
async def report_location(
    heartbeat: LocationHeartbeatRequest,
    claims: TokenClaims = Depends(get_current_driver),
    geo_index: GeoIndex = Depends(get_geo_index),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    """Driver location heartbeat"""
    try:
        await geo_index.upsert_location(
            claims.user_id,
            heartbeat.lat,
            heartbeat.lng,
            heartbeat.is_online,
            heartbeat.vehicle_type,
        )
    except GeoIndexUnavailableError as e:
        logger.error(f"Failed to record location for driver {claims.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Location service unavailable"
        )

    if heartbeat.trip_id is not None:
        broadcaster.publish_driver_location(str(heartbeat.trip_id), claims.user_id, heartbeat.lat, heartbeat.lng)

    return LocationHeartbeatResponse(driver_id=claims.user_id)


@router.get("/nearby", response_model=NearbyDriversResponse)
async def get_nearby_drivers(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(settings.default_search_radius_km, ge=0, le=200),
    vehicle_type: Optional[VehicleType] = None,
    claims: TokenClaims = Depends(get_current_claims),
    geo_index: GeoIndex = Depends(get_geo_index),
):
    """Online, fresh drivers around a point (operators and testing)"""
    nearby_filter = NearbyFilter(vehicle_types=frozenset({vehicle_type})) if vehicle_type else None
    try:
        drivers = await geo_index.query_nearby(lat, lng, radius_km, nearby_filter)
    except GeoIndexUnavailableError as e:
        logger.error(f"Failed to get nearby drivers: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Location service unavailable"
        )

    return NearbyDriversResponse(
        drivers=[NearbyDriver(driver_id=d.driver_id, distance_km=round(d.distance_km, 3)) for d in drivers],
        count=len(drivers),
        radius_km=radius_km,
    )
