from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import Iterable, Optional, Set
import asyncio
import logging
from uuid import UUID

from ..config import settings
from ..database import AsyncSessionLocal
from ..models.driver import Driver, TravelCaptainStatus
from .exceptions import EligibilityLookupError

logger = logging.getLogger(__name__)


class TravelCaptainDirectory:
    """Answers which drivers are approved for intercity travel requests"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        timeout_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.timeout_seconds = timeout_seconds or settings.eligibility_timeout_seconds

    async def filter_approved(self, driver_ids: Iterable[str]) -> Set[str]:
        """Return the subset of driver_ids flagged as approved travel captains"""
        candidates = {}
        for driver_id in driver_ids:
            try:
                candidates[UUID(str(driver_id))] = str(driver_id)
            except ValueError:
                logger.warning(f"Ignoring non-UUID driver id {driver_id!r} in eligibility lookup")
        if not candidates:
            return set()

        try:
            approved = await asyncio.wait_for(self._query(list(candidates)), self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise EligibilityLookupError("Travel captain lookup timed out") from e
        except SQLAlchemyError as e:
            logger.error(f"Travel captain lookup failed: {e}")
            raise EligibilityLookupError(str(e)) from e

        return {candidates[driver_uuid] for driver_uuid in approved if driver_uuid in candidates}

    async def _query(self, driver_uuids: list[UUID]) -> list[UUID]:
        async with self._session_factory() as session:
            stmt = select(Driver.id).where(
                Driver.id.in_(driver_uuids),
                Driver.is_travel_captain.is_(True),
                Driver.travel_captain_status == TravelCaptainStatus.APPROVED,
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
