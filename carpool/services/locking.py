"""
Per-ride serialization.

Every mutation of a ride or its requests runs in one transaction that starts
by taking the ride row lock (SELECT ... FOR UPDATE). Both rows also carry a
`version_id_col`, so a flush against a row that changed underneath us raises
StaleDataError, which is surfaced to callers as StaleState.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from carpool.errors import NotFound, StaleState
from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """Open a session and commit on exit; any error rolls the whole unit back."""
    try:
        async with session_factory() as db:
            async with db.begin():
                yield db
    except (StaleDataError, IntegrityError) as exc:
        raise StaleState("Ride changed concurrently; reload and retry") from exc


async def lock_ride(db: AsyncSession, ride_id: str) -> Ride:
    result = await db.execute(
        select(Ride)
        .where(Ride.id == ride_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    ride = result.scalar_one_or_none()
    if ride is None:
        raise NotFound(f"Ride {ride_id} not found")
    return ride


async def lock_request(db: AsyncSession, request_id: str) -> tuple[RideRequest, Ride]:
    """Lock the owning ride first, then the request, so lock order is always ride → request."""
    request = await db.get(RideRequest, request_id)
    if request is None:
        raise NotFound(f"Ride request {request_id} not found")
    ride = await lock_ride(db, request.ride_id)
    result = await db.execute(
        select(RideRequest)
        .where(RideRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one(), ride
