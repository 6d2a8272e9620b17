"""Shared service instances, exposed as FastAPI dependencies so tests can override them."""

from .services.broadcaster import Broadcaster, broadcaster
from .services.dispatch_service import DispatchCoordinator
from .services.eligibility import TravelCaptainDirectory
from .services.event_service import EventService
from .services.geo_index import GeoIndex, create_geo_index
from .utils.redis_client import redis_client

geo_index = create_geo_index(redis_client)
captain_directory = TravelCaptainDirectory()
dispatch_coordinator = DispatchCoordinator(geo_index, captain_directory, broadcaster)
event_service = EventService(redis_client)


def get_geo_index() -> GeoIndex:
    return geo_index


def get_broadcaster() -> Broadcaster:
    return broadcaster


def get_dispatch_coordinator() -> DispatchCoordinator:
    return dispatch_coordinator


def get_event_service() -> EventService:
    return event_service
