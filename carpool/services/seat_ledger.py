"""
Seat inventory for a ride.

Callers must hold the ride row lock (see locking.lock_ride). A request holds a
seat from approval until it is cancelled; `seat_held` on the request makes
release idempotent.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.errors import NoSeatsAvailable
from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeatReservation:
    ride_id: str
    request_id: str
    seats_left: int


def reserve_seat(ride: Ride, request: RideRequest) -> SeatReservation:
    if request.seat_held:
        return SeatReservation(ride.id, request.id, ride.seats_left)
    if ride.seats_left <= 0:
        raise NoSeatsAvailable(f"Ride {ride.id} has no seats left")
    ride.seats_left -= 1
    request.seat_held = True
    logger.info("Seat reserved ride=%s request=%s seats_left=%d", ride.id, request.id, ride.seats_left)
    return SeatReservation(ride.id, request.id, ride.seats_left)


def release_seat(ride: Ride, request: RideRequest) -> bool:
    """Give the request's seat back. Returns False when it held none."""
    if not request.seat_held:
        return False
    ride.seats_left = min(ride.seats_left + 1, ride.seats_total)
    request.seat_held = False
    logger.info("Seat released ride=%s request=%s seats_left=%d", ride.id, request.id, ride.seats_left)
    return True


async def occupied_seats(db: AsyncSession, ride_id: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(RideRequest)
        .where(RideRequest.ride_id == ride_id, RideRequest.seat_held.is_(True))
    )
    return int(result.scalar_one())


async def check_seat_invariant(db: AsyncSession, ride: Ride) -> bool:
    occupied = await occupied_seats(db, ride.id)
    ok = 0 <= ride.seats_left <= ride.seats_total and ride.seats_left == ride.seats_total - occupied
    if not ok:
        logger.error(
            "Seat invariant broken ride=%s total=%d left=%d occupied=%d",
            ride.id, ride.seats_total, ride.seats_left, occupied,
        )
    return ok
