from sqlalchemy import Column, Boolean, TIMESTAMP, Enum
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
import enum
from ..database import Base
from .trip import VehicleType


class TravelCaptainStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Driver(Base):
    __tablename__ = "drivers"

    id = Column(PG_UUID(as_uuid=True), primary_key=True)
    vehicle_type = Column(Enum(VehicleType), nullable=False, default=VehicleType.SAVER)
    is_approved = Column(Boolean, default=False, nullable=False)

    # Intercity eligibility
    is_travel_captain = Column(Boolean, default=False, nullable=False)
    travel_captain_status = Column(Enum(TravelCaptainStatus), nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Driver(id={self.id}, vehicle_type={self.vehicle_type}, travel_captain={self.is_travel_captain})>"
