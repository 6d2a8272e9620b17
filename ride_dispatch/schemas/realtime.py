"""Wire frames exchanged over the ``/ws`` realtime endpoint.

All frames are JSON objects carrying a ``type`` discriminator. Client
frames are validated through :data:`client_frame_adapter`; anything that
fails validation is dropped by the receiver.
"""

import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Channel(str, enum.Enum):
    DRIVER_TRIP_REQUESTS = "driver:trip-requests"
    DRIVER_OFFER_UPDATES = "driver:offer-updates"
    DRIVER_LOCATION = "driver:location"
    TRIP_OFFERS = "trip:offers"
    TRIP_STATUS = "trip:status"
    TRIP_MESSAGES = "trip:messages"
    SUPPORT_MESSAGES = "support:messages"
    SURGE_ZONES = "surge:zones"


# Client -> Server
class AuthFrame(BaseModel):
    type: Literal["auth"]
    token: str = Field(..., min_length=1)


class SubscribeFrame(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: Literal["subscribe"]
    subscription_id: str = Field(..., alias="subscriptionId", min_length=1, max_length=128)
    channel: Channel

    def channel_params(self) -> dict[str, str]:
        """Topic parameters sent alongside the channel (``tripId`` etc)."""
        return {
            key: str(value)
            for key, value in (self.model_extra or {}).items()
            if isinstance(value, (str, int))
        }


class UnsubscribeFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["unsubscribe"]
    subscription_id: str = Field(..., alias="subscriptionId", min_length=1, max_length=128)


class PingFrame(BaseModel):
    type: Literal["ping"]


ClientFrame = Annotated[
    Union[AuthFrame, SubscribeFrame, UnsubscribeFrame, PingFrame],
    Field(discriminator="type"),
]

client_frame_adapter = TypeAdapter(ClientFrame)


# Server -> Client
class EventFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["event"] = "event"
    subscription_id: str = Field(..., alias="subscriptionId")
    payload: Any


class PongFrame(BaseModel):
    type: Literal["pong"] = "pong"
