import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from ride_dispatch.services.eligibility import TravelCaptainDirectory
from ride_dispatch.services.exceptions import EligibilityLookupError

pytestmark = pytest.mark.unit


def session_factory(approved=None, execute=None):
    """async_sessionmaker stand-in whose session returns `approved` ids."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(approved or [])

    session = MagicMock()
    session.execute = execute or AsyncMock(return_value=result)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=session)
    context.__aexit__ = AsyncMock(return_value=False)

    factory = MagicMock(return_value=context)
    factory.session = session
    return factory


@pytest.mark.asyncio
async def test_returns_subset_of_requested_ids():
    captain, other = uuid.uuid4(), uuid.uuid4()
    factory = session_factory(approved=[captain])
    directory = TravelCaptainDirectory(factory, timeout_seconds=1.0)

    approved = await directory.filter_approved([str(captain), str(other)])

    assert approved == {str(captain)}
    factory.session.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_empty_and_non_uuid_ids_skip_the_database():
    factory = session_factory()
    directory = TravelCaptainDirectory(factory, timeout_seconds=1.0)

    assert await directory.filter_approved([]) == set()
    assert await directory.filter_approved(["not-a-uuid"]) == set()
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_database_error_raises_lookup_error():
    execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("connection refused")))
    directory = TravelCaptainDirectory(session_factory(execute=execute), timeout_seconds=1.0)

    with pytest.raises(EligibilityLookupError):
        await directory.filter_approved([str(uuid.uuid4())])


@pytest.mark.asyncio
async def test_slow_lookup_times_out():
    async def hang(*args, **kwargs):
        await asyncio.sleep(1.0)

    directory = TravelCaptainDirectory(session_factory(execute=hang), timeout_seconds=0.01)

    with pytest.raises(EligibilityLookupError):
        await directory.filter_approved([str(uuid.uuid4())])
