from fastapi import APIRouter, Depends, HTTPException, status, BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging
from uuid import UUID

from ..database import get_db
from ..dependencies import get_broadcaster, get_dispatch_coordinator, get_event_service
from ..models.trip import Trip, TripStatus
from ..schemas.trip import (
    TripCreateRequest,
    TripCreateResponse,
    TripEnvelope,
    TripResponse,
    TripStatusUpdateRequest,
    TripCancelRequest,
)
from ..services.broadcaster import Broadcaster
from ..services.dispatch_service import DispatchCoordinator, TripDispatchRequest
from ..services.event_service import EventService
from ..services.exceptions import (
    InvalidStatusTransitionError,
    TripAlreadyAssignedError,
    TripNotFoundError,
)
from ..services.trip_service import TripService
from ..utils.auth import TokenClaims, get_current_claims, get_current_driver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/trips", tags=["trips"])

# Service instances
trip_service = TripService()

# Statuses an assigned driver may set through the status endpoint
DRIVER_STATUSES = {TripStatus.ARRIVED, TripStatus.STARTED, TripStatus.COMPLETED, TripStatus.CANCELLED}


def trip_record(trip: Trip) -> dict:
    return TripResponse.model_validate(trip).model_dump(mode="json")


async def run_dispatch(coordinator: DispatchCoordinator, events: EventService, request: TripDispatchRequest):
    """Background dispatch; never raises into the request path"""
    result = await coordinator.dispatch(request)
    if result.merged:
        return
    await events.publish_trip_event(
        "dispatch_completed",
        {
            "trip_id": result.trip_id,
            "candidate_count": result.candidate_count,
            "broadcast_targets": result.broadcast_targets,
            "failed": result.failed,
            "broadcast_failed": result.broadcast_failed,
        },
    )


async def announce_transition(
    trip: Trip,
    previous: TripStatus,
    coordinator: DispatchCoordinator,
    broadcaster: Broadcaster,
    events: EventService,
    event_type: str,
):
    """Push the new status to the customer and retract the request from notified drivers"""
    record = trip_record(trip)
    broadcaster.publish_trip_status(record, previous_status=previous.value)

    if previous == TripStatus.REQUESTED:
        notified = coordinator.resolve(str(trip.id))
        assigned = str(trip.driver_id) if trip.driver_id else None
        others = [driver_id for driver_id in notified if driver_id != assigned]
        if others:
            broadcaster.notify_drivers(others, "UPDATE", record)

    await events.publish_trip_event(
        event_type,
        {
            "trip_id": str(trip.id),
            "customer_id": str(trip.customer_id),
            "driver_id": str(trip.driver_id) if trip.driver_id else None,
            "previous_status": previous.value,
            "status": trip.status.value,
        },
    )


def _can_view(trip: Trip, claims: TokenClaims) -> bool:
    if claims.role == "admin":
        return True
    if str(trip.customer_id) == claims.user_id:
        return True
    if trip.driver_id and str(trip.driver_id) == claims.user_id:
        return True
    # Open requests are visible to drivers deciding whether to accept
    return claims.role == "driver" and trip.status == TripStatus.REQUESTED


@router.post("/request", response_model=TripCreateResponse, status_code=status.HTTP_201_CREATED)
async def request_trip(
    trip_data: TripCreateRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(get_current_claims),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
    events: EventService = Depends(get_event_service),
):
    """Request a new trip"""
    try:
        trip = await trip_service.create_trip(UUID(claims.user_id), trip_data, db)
    except Exception as e:
        logger.error(f"Failed to request trip: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create trip request"
        )

    # Dispatch runs after the response; its failures never undo the trip
    background_tasks.add_task(run_dispatch, coordinator, events, TripDispatchRequest.from_trip(trip))

    await events.publish_trip_event(
        "trip_requested",
        {
            "trip_id": str(trip.id),
            "customer_id": claims.user_id,
            "car_type": trip.car_type.value,
            "is_travel_request": trip.is_travel_request,
        },
    )

    return TripCreateResponse(trip=TripResponse.model_validate(trip))


@router.get("/{trip_id}", response_model=TripEnvelope)
async def get_trip(
    trip_id: UUID,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(get_current_claims),
):
    """Get trip details; also the poll source for status reconciliation"""
    try:
        trip = await trip_service.get_trip(trip_id, db)
    except Exception as e:
        logger.error(f"Failed to get trip: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve trip"
        )

    if trip is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    if not _can_view(trip, claims):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    return TripEnvelope(trip=TripResponse.model_validate(trip))


@router.post("/{trip_id}/accept", response_model=TripEnvelope)
async def accept_trip(
    trip_id: UUID,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(get_current_driver),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    events: EventService = Depends(get_event_service),
):
    """Driver accepts an open trip request; first accept wins"""
    try:
        trip = await trip_service.accept_trip(trip_id, UUID(claims.user_id), db)
    except TripNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    except TripAlreadyAssignedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to accept trip: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to accept trip"
        )

    await announce_transition(trip, TripStatus.REQUESTED, coordinator, broadcaster, events, "trip_accepted")
    return TripEnvelope(trip=TripResponse.model_validate(trip))


@router.put("/{trip_id}/status", response_model=TripEnvelope)
async def update_trip_status(
    trip_id: UUID,
    status_data: TripStatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(get_current_claims),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    events: EventService = Depends(get_event_service),
):
    """Assigned driver (or an admin) moves the trip through its lifecycle"""
    try:
        trip = await trip_service.require_trip(trip_id, db)
        if claims.role != "admin":
            if claims.role != "driver" or str(trip.driver_id) != claims.user_id:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Only the assigned driver can update trip status"
                )
            if status_data.status not in DRIVER_STATUSES:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Drivers cannot set status {status_data.status.value}"
                )
        trip, previous = await trip_service.update_status(trip_id, status_data.status, db)
    except HTTPException:
        raise
    except TripNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to update trip status: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update trip status"
        )

    await announce_transition(trip, previous, coordinator, broadcaster, events, "trip_status_updated")
    return TripEnvelope(trip=TripResponse.model_validate(trip))


@router.post("/{trip_id}/cancel", response_model=TripEnvelope)
async def cancel_trip(
    trip_id: UUID,
    cancel_data: Optional[TripCancelRequest] = None,
    db: AsyncSession = Depends(get_db),
    claims: TokenClaims = Depends(get_current_claims),
    coordinator: DispatchCoordinator = Depends(get_dispatch_coordinator),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    events: EventService = Depends(get_event_service),
):
    """Customer cancels their trip"""
    try:
        trip = await trip_service.require_trip(trip_id, db)
        if claims.role != "admin" and str(trip.customer_id) != claims.user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
        trip, previous = await trip_service.update_status(trip_id, TripStatus.CANCELLED, db)
    except HTTPException:
        raise
    except TripNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trip not found")
    except InvalidStatusTransitionError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot cancel trip in current status"
        )
    except Exception as e:
        logger.error(f"Failed to cancel trip: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel trip"
        )

    if cancel_data and cancel_data.reason:
        logger.info(f"Trip {trip_id} cancelled: {cancel_data.reason}")
    await announce_transition(trip, previous, coordinator, broadcaster, events, "trip_cancelled")
    return TripEnvelope(trip=TripResponse.model_validate(trip))
