from pydantic import BaseModel, Field, UUID4, model_validator
from typing import Optional
from datetime import datetime
from decimal import Decimal
from ..models.trip import TripStatus, VehicleType


# Request schemas
class TripCreateRequest(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    pickup_address: Optional[str] = Field(None, max_length=500)
    dest_lat: Optional[float] = Field(None, ge=-90, le=90)
    dest_lng: Optional[float] = Field(None, ge=-180, le=180)
    dest_address: Optional[str] = Field(None, max_length=500)
    car_type: VehicleType = VehicleType.SAVER
    is_travel_request: bool = False
    seats_requested: Optional[int] = Field(None, ge=1, le=8)
    price: Optional[Decimal] = Field(None, ge=0)

    @model_validator(mode="after")
    def travel_requests_use_intercity(self):
        if self.is_travel_request:
            self.car_type = VehicleType.INTERCITY
        return self


class TripStatusUpdateRequest(BaseModel):
    status: TripStatus


class TripCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# Response schemas
class TripResponse(BaseModel):
    id: UUID4
    customer_id: UUID4
    driver_id: Optional[UUID4] = None
    pickup_lat: float
    pickup_lng: float
    pickup_address: Optional[str] = None
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    dest_address: Optional[str] = None
    car_type: VehicleType
    is_travel_request: bool
    seats_requested: Optional[int] = None
    price: Optional[Decimal] = None
    payment_method: str = "cash"
    status: TripStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TripEnvelope(BaseModel):
    trip: TripResponse


class TripCreateResponse(BaseModel):
    trip: TripResponse
    message: str = "Trip requested successfully. Finding nearby drivers..."
