from sqlalchemy import Column, String, Boolean, Integer, Float, DECIMAL, TIMESTAMP, Text, Enum
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
import uuid
import enum
from ..database import Base


class VehicleType(str, enum.Enum):
    SAVER = "saver"
    COMFORT = "comfort"
    VIP = "vip"
    TAXI = "taxi"
    INTERCITY = "intercity"


class TripStatus(str, enum.Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    ARRIVED = "arrived"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({TripStatus.COMPLETED, TripStatus.CANCELLED, TripStatus.EXPIRED})


class Trip(Base):
    __tablename__ = "trips"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(PG_UUID(as_uuid=True), nullable=False, index=True)
    driver_id = Column(PG_UUID(as_uuid=True), nullable=True, index=True)

    # Pickup / destination
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(Text, nullable=True)
    dest_lat = Column(Float, nullable=True)
    dest_lng = Column(Float, nullable=True)
    dest_address = Column(Text, nullable=True)

    # Request details
    car_type = Column(Enum(VehicleType), nullable=False, default=VehicleType.SAVER)
    is_travel_request = Column(Boolean, nullable=False, default=False)
    seats_requested = Column(Integer, nullable=True)
    price = Column(DECIMAL(10, 2), nullable=True)
    payment_method = Column(String(20), nullable=False, default="cash")

    status = Column(Enum(TripStatus), nullable=False, default=TripStatus.REQUESTED, index=True)

    # Timestamps
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
    accepted_at = Column(TIMESTAMP(timezone=True), nullable=True)
    started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Trip(id={self.id}, status={self.status}, customer_id={self.customer_id})>"
