"""
Passenger → driver request workflow.

    PENDING ──approve──▶ APPROVED ──▶ COMPLETED | CANCELLED_BY_DRIVER | CANCELLED_BY_PASSENGER
       │
       ├──reject───▶ REJECTED
       └──withdraw─▶ CANCELLED_BY_PASSENGER

All functions run inside a transaction holding the ride lock.
"""
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.errors import DuplicateRequest, InvalidTransition, NotAuthorized, RideNotOpen
from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest
from carpool.schemas.schemas import (
    ACTIVE_REQUEST_STATUSES,
    TERMINAL_RIDE_STATUSES,
    PaymentStatusEnum,
    RequestStatusEnum,
    RideKindEnum,
    RideStatusEnum,
)
from carpool.services import escrow
from carpool.services.seat_ledger import SeatReservation, reserve_seat

logger = logging.getLogger(__name__)


def ensure_not_terminal(ride: Ride) -> None:
    if ride.status in TERMINAL_RIDE_STATUSES:
        raise InvalidTransition(f"Ride {ride.id} is {ride.status}")


def require_driver(ride: Ride, actor_id: str) -> None:
    if ride.driver_id != actor_id:
        raise NotAuthorized("Only the ride's driver can do this")


def require_passenger(request: RideRequest, actor_id: str) -> None:
    if request.passenger_id != actor_id:
        raise NotAuthorized("Only the passenger who made this request can do this")


async def find_active_request(db: AsyncSession, ride_id: str, passenger_id: str) -> RideRequest | None:
    result = await db.execute(
        select(RideRequest).where(
            RideRequest.ride_id == ride_id,
            RideRequest.passenger_id == passenger_id,
            RideRequest.status.in_(ACTIVE_REQUEST_STATUSES),
        )
    )
    return result.scalars().first()


async def validate_submission(db: AsyncSession, ride: Ride, passenger_id: str) -> None:
    if ride.kind != RideKindEnum.driver_posting.value:
        raise InvalidTransition("Seats can only be requested on a driver's posting")
    if ride.status != RideStatusEnum.OPEN.value:
        raise RideNotOpen(f"Ride {ride.id} is {ride.status}")
    if ride.driver_id == passenger_id:
        raise NotAuthorized("Drivers cannot request a seat on their own ride")
    if await find_active_request(db, ride.id, passenger_id):
        raise DuplicateRequest("You already have an open request for this ride")


def create_request(
    db: AsyncSession,
    ride: Ride,
    request_id: str,
    passenger_id: str,
    payment_token: str,
    now: datetime,
) -> RideRequest:
    request = RideRequest(
        id=request_id,
        ride_id=ride.id,
        passenger_id=passenger_id,
        payment_token=payment_token,
        status=RequestStatusEnum.PENDING.value,
        payment_status=PaymentStatusEnum.NONE.value,
        amount=Decimal(ride.price),
        seat_held=False,
        refund_attempts=0,
        created_at=now,
    )
    db.add(request)
    logger.info("Request submitted request=%s ride=%s passenger=%s", request_id, ride.id, passenger_id)
    return request


def approve(ride: Ride, request: RideRequest, actor_id: str) -> SeatReservation:
    ensure_not_terminal(ride)
    require_driver(ride, actor_id)
    if ride.status != RideStatusEnum.OPEN.value:
        raise RideNotOpen(f"Ride {ride.id} is {ride.status}")
    if request.status != RequestStatusEnum.PENDING.value:
        raise InvalidTransition(f"Cannot approve a {request.status} request")

    reservation = reserve_seat(ride, request)
    request.status = RequestStatusEnum.APPROVED.value
    logger.info("Request approved request=%s ride=%s", request.id, ride.id)
    return reservation


def reject(ride: Ride, request: RideRequest, actor_id: str, now: datetime) -> bool:
    """Returns True when a hold now needs releasing."""
    ensure_not_terminal(ride)
    require_driver(ride, actor_id)
    if request.status != RequestStatusEnum.PENDING.value:
        raise InvalidTransition(f"Cannot reject a {request.status} request")
    request.status = RequestStatusEnum.REJECTED.value
    request.cancelled_at = now
    logger.info("Request rejected request=%s ride=%s", request.id, ride.id)
    return escrow.begin_refund(request, now)


def withdraw(ride: Ride, request: RideRequest, actor_id: str, now: datetime) -> bool:
    ensure_not_terminal(ride)
    require_passenger(request, actor_id)
    if request.status != RequestStatusEnum.PENDING.value:
        raise InvalidTransition(f"Cannot withdraw a {request.status} request")
    request.status = RequestStatusEnum.CANCELLED_BY_PASSENGER.value
    request.cancelled_at = now
    logger.info("Request withdrawn request=%s ride=%s", request.id, ride.id)
    return escrow.begin_refund(request, now)


async def reject_pending(db: AsyncSession, ride: Ride, now: datetime, reason: str) -> list[str]:
    """Reject every PENDING request on the ride; returns the ids whose hold needs releasing."""
    result = await db.execute(
        select(RideRequest).where(
            RideRequest.ride_id == ride.id,
            RideRequest.status == RequestStatusEnum.PENDING.value,
        )
    )
    pending = list(result.scalars().all())
    refunds = []
    for request in pending:
        request.status = RequestStatusEnum.REJECTED.value
        request.cancelled_at = now
        request.cancellation_reason = reason
        if escrow.begin_refund(request, now):
            refunds.append(request.id)
    if pending:
        logger.info("Pending requests rejected ride=%s count=%d", ride.id, len(pending))
    return refunds
