import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from .config import ClientSettings

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


async def resolve_token(provider: Optional[TokenProvider]) -> Optional[str]:
    """Call a sync or async token provider."""
    if provider is None:
        return None
    token = provider()
    if inspect.isawaitable(token):
        token = await token
    return token or None


class TripsApi:
    """Request/response access to trip records (the poll source)."""

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or ClientSettings()
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=settings.api_url.rstrip("/") + "/",
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def get_trip(self, trip_id: str) -> Dict[str, Any]:
        headers = {}
        token = await resolve_token(self._token_provider)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        response = await self._client.get(f"trips/{trip_id}", headers=headers)
        response.raise_for_status()
        body = response.json()
        trip = body.get("trip") if isinstance(body, dict) else None
        if not isinstance(trip, dict):
            raise ValueError(f"Response for trip {trip_id} carries no trip record")
        return trip

    async def aclose(self) -> None:
        await self._client.aclose()
