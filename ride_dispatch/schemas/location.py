from pydantic import BaseModel, Field, UUID4
from typing import Optional
from ..models.trip import VehicleType


# Request schemas
class LocationHeartbeatRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    is_online: bool = True
    vehicle_type: VehicleType = VehicleType.SAVER
    trip_id: Optional[UUID4] = Field(None, description="Active trip to stream this location to")


# Response schemas
class LocationHeartbeatResponse(BaseModel):
    driver_id: str
    accepted: bool = True


class NearbyDriver(BaseModel):
    driver_id: str
    distance_km: float


class NearbyDriversResponse(BaseModel):
    drivers: list[NearbyDriver]
    count: int
    radius_km: float
