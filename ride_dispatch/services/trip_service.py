from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from typing import Optional
import logging
from uuid import UUID
from datetime import datetime, timezone

from ..models.trip import Trip, TripStatus
from ..schemas.trip import TripCreateRequest
from .exceptions import TripNotFoundError, InvalidStatusTransitionError, TripAlreadyAssignedError

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    TripStatus.REQUESTED: {TripStatus.ACCEPTED, TripStatus.CANCELLED, TripStatus.EXPIRED},
    TripStatus.ACCEPTED: {TripStatus.ARRIVED, TripStatus.STARTED, TripStatus.CANCELLED},
    TripStatus.ARRIVED: {TripStatus.STARTED, TripStatus.CANCELLED},
    TripStatus.STARTED: {TripStatus.COMPLETED},
    TripStatus.COMPLETED: set(),  # Terminal state
    TripStatus.CANCELLED: set(),  # Terminal state
    TripStatus.EXPIRED: set(),    # Terminal state
}


def is_valid_transition(current: TripStatus, new: TripStatus) -> bool:
    return new in VALID_TRANSITIONS.get(current, set())


class TripService:

    async def create_trip(self, customer_id: UUID, trip_data: TripCreateRequest, db: AsyncSession) -> Trip:
        """Persist a new trip request"""
        trip = Trip(
            customer_id=customer_id,
            pickup_lat=trip_data.pickup_lat,
            pickup_lng=trip_data.pickup_lng,
            pickup_address=trip_data.pickup_address,
            dest_lat=trip_data.dest_lat,
            dest_lng=trip_data.dest_lng,
            dest_address=trip_data.dest_address,
            car_type=trip_data.car_type,
            is_travel_request=trip_data.is_travel_request,
            seats_requested=trip_data.seats_requested,
            price=trip_data.price,
            status=TripStatus.REQUESTED,
        )
        try:
            db.add(trip)
            await db.commit()
            await db.refresh(trip)
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to create trip: {e}")
            raise

        logger.info(f"Created trip {trip.id} for customer {customer_id}")
        return trip

    async def get_trip(self, trip_id: UUID, db: AsyncSession) -> Optional[Trip]:
        stmt = select(Trip).where(Trip.id == trip_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def require_trip(self, trip_id: UUID, db: AsyncSession) -> Trip:
        trip = await self.get_trip(trip_id, db)
        if trip is None:
            raise TripNotFoundError(f"Trip {trip_id} not found")
        return trip

    async def accept_trip(self, trip_id: UUID, driver_id: UUID, db: AsyncSession) -> Trip:
        """
        Assign the trip to driver_id.

        The update only matches while the trip is still requested, so when
        several notified drivers accept at once exactly one wins.
        """
        stmt = (
            update(Trip)
            .where(Trip.id == trip_id, Trip.status == TripStatus.REQUESTED)
            .values(
                status=TripStatus.ACCEPTED,
                driver_id=driver_id,
                accepted_at=datetime.now(timezone.utc),
            )
        )
        try:
            result = await db.execute(stmt)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to accept trip {trip_id}: {e}")
            raise

        if result.rowcount == 0:
            trip = await self.require_trip(trip_id, db)
            raise TripAlreadyAssignedError(f"Trip {trip_id} is already {trip.status.value}")

        trip = await self.require_trip(trip_id, db)
        await db.refresh(trip)
        logger.info(f"Driver {driver_id} accepted trip {trip_id}")
        return trip

    async def update_status(self, trip_id: UUID, new_status: TripStatus, db: AsyncSession) -> tuple[Trip, TripStatus]:
        """Move the trip to new_status; returns the trip and its previous status"""
        trip = await self.require_trip(trip_id, db)
        previous = trip.status
        if not is_valid_transition(previous, new_status):
            raise InvalidStatusTransitionError(previous.value, new_status.value)

        values = {"status": new_status}
        now = datetime.now(timezone.utc)
        if new_status == TripStatus.STARTED:
            values["started_at"] = now
        elif new_status == TripStatus.COMPLETED:
            values["completed_at"] = now

        # Guard on the status we validated against
        stmt = update(Trip).where(Trip.id == trip_id, Trip.status == previous).values(**values)
        try:
            result = await db.execute(stmt)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to update trip status: {e}")
            raise

        if result.rowcount == 0:
            current = await self.require_trip(trip_id, db)
            await db.refresh(current)
            raise InvalidStatusTransitionError(current.status.value, new_status.value)

        await db.refresh(trip)
        logger.info(f"Updated trip {trip_id} status {previous.value} -> {new_status.value}")
        return trip, previous
