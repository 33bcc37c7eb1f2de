"""
One-time codes gating the physical start and completion of a ride.

The driver issues both codes; passengers verify them. Checking and clearing a
code happens under the ride row lock, so two near-simultaneous submissions
cannot both consume one code.
"""
import hmac
import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.config import get_settings
from carpool.errors import (
    CodeExpired,
    InvalidCode,
    InvalidTransition,
    NoApprovedPassengers,
    NotAuthorized,
    NotFound,
)
from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest
from carpool.schemas.schemas import (
    TERMINAL_RIDE_STATUSES,
    ClaimantRoleEnum,
    RequestStatusEnum,
    RideStatusEnum,
)
from carpool.utils import as_utc

logger = logging.getLogger(__name__)
settings = get_settings()

START_CODE_DIGITS = 4
COMPLETION_CODE_DIGITS = 6


def generate_code(digits: int) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def _check_code(stored: str | None, expires_at: datetime | None, submitted: str, now: datetime) -> None:
    if stored is None:
        raise InvalidCode("No active verification code for this ride")
    if not hmac.compare_digest(stored.encode(), submitted.encode()):
        raise InvalidCode("Verification code does not match")
    if expires_at is not None and as_utc(expires_at) <= now:
        raise CodeExpired("Verification code has expired; ask the driver for a new one")


def _require_driver(ride: Ride, actor_id: str) -> None:
    if ride.driver_id != actor_id:
        raise NotAuthorized("Only the ride's driver can do this")


async def approved_requests(db: AsyncSession, ride_id: str) -> list[RideRequest]:
    result = await db.execute(
        select(RideRequest).where(
            RideRequest.ride_id == ride_id,
            RideRequest.status == RequestStatusEnum.APPROVED.value,
        )
    )
    return list(result.scalars().all())


def clear_codes(ride: Ride) -> None:
    ride.start_code = None
    ride.start_code_issued_at = None
    ride.start_code_expires_at = None
    ride.completion_code = None
    ride.completion_code_issued_at = None
    ride.completion_code_expires_at = None


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

async def generate_start_code(db: AsyncSession, ride: Ride, actor_id: str, now: datetime) -> tuple[str, datetime]:
    _require_driver(ride, actor_id)
    if ride.status != RideStatusEnum.OPEN.value:
        raise InvalidTransition(f"Cannot issue a start code for a {ride.status} ride")
    if not await approved_requests(db, ride.id):
        raise NoApprovedPassengers("Approve at least one passenger before starting the ride")

    code = generate_code(START_CODE_DIGITS)
    expires_at = now + timedelta(minutes=settings.start_code_ttl_minutes)
    ride.start_code = code
    ride.start_code_issued_at = now
    ride.start_code_expires_at = expires_at
    logger.info("Start code issued ride=%s expires_at=%s", ride.id, expires_at.isoformat())
    return code, expires_at


async def verify_start(db: AsyncSession, ride: Ride, actor_id: str, code: str, now: datetime) -> RideRequest:
    """Any approved passenger confirms boarding; the ride starts once, for everyone."""
    if ride.status in TERMINAL_RIDE_STATUSES:
        raise InvalidTransition(f"Ride is already {ride.status}")

    mine = [r for r in await approved_requests(db, ride.id) if r.passenger_id == actor_id]
    if not mine:
        raise NotAuthorized("Only an approved passenger can confirm the ride start")

    _check_code(ride.start_code, ride.start_code_expires_at, code, now)
    if ride.status != RideStatusEnum.OPEN.value:
        raise InvalidTransition(f"Ride is already {ride.status}")

    ride.start_code = None
    ride.start_code_issued_at = None
    ride.start_code_expires_at = None
    ride.status = RideStatusEnum.STARTED.value
    ride.started_at = now
    logger.info("Ride started ride=%s confirmed_by=%s", ride.id, actor_id)
    return mine[0]


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

def generate_completion_code(ride: Ride, actor_id: str, now: datetime) -> tuple[str, datetime]:
    _require_driver(ride, actor_id)
    if ride.status != RideStatusEnum.STARTED.value:
        raise InvalidTransition(f"Cannot issue a completion code for a {ride.status} ride")

    code = generate_code(COMPLETION_CODE_DIGITS)
    expires_at = now + timedelta(hours=settings.completion_code_ttl_hours)
    ride.completion_code = code
    ride.completion_code_issued_at = now
    ride.completion_code_expires_at = expires_at
    logger.info("Completion code issued ride=%s", ride.id)
    return code, expires_at


async def check_completion_claim(
    db: AsyncSession,
    ride: Ride,
    actor_id: str,
    code: str,
    claimant_role: ClaimantRoleEnum,
    request_id: str | None,
    now: datetime,
) -> RideRequest:
    """
    Validate a completion claim and return the passenger request it settles.

    The driver confirms a named passenger's leg; a passenger confirms their
    own. Nothing is written here: the code is consumed when the capture
    commits.
    """
    if ride.status in TERMINAL_RIDE_STATUSES:
        raise InvalidTransition(f"Ride is already {ride.status}")

    if claimant_role == ClaimantRoleEnum.driver:
        _require_driver(ride, actor_id)
        if not request_id:
            raise InvalidTransition("The driver must name the passenger request being completed")
        request = await db.get(RideRequest, request_id)
        if request is None or request.ride_id != ride.id:
            raise NotFound(f"Ride request {request_id} not found on ride {ride.id}")
    else:
        result = await db.execute(
            select(RideRequest).where(
                RideRequest.ride_id == ride.id,
                RideRequest.passenger_id == actor_id,
                RideRequest.status.in_(
                    (RequestStatusEnum.APPROVED.value, RequestStatusEnum.COMPLETED.value)
                ),
            )
        )
        candidates = list(result.scalars().all())
        if request_id:
            candidates = [r for r in candidates if r.id == request_id]
        if not candidates:
            raise NotAuthorized("Only an approved passenger of this ride can confirm completion")
        # An approved leg takes precedence over one this passenger already finished.
        candidates.sort(key=lambda r: r.status != RequestStatusEnum.APPROVED.value)
        request = candidates[0]

    if request.status == RequestStatusEnum.COMPLETED.value:
        raise InvalidCode("Completion code was already used for this passenger")
    _check_code(ride.completion_code, ride.completion_code_expires_at, code, now)
    if ride.status != RideStatusEnum.STARTED.value:
        raise InvalidTransition(f"Ride is {ride.status}, not STARTED")
    if request.status != RequestStatusEnum.APPROVED.value:
        raise InvalidTransition(f"Request is {request.status}")
    return request


async def _leg_statuses(db: AsyncSession, ride_id: str) -> list[str]:
    """Statuses of the requests still riding or already dropped off."""
    result = await db.execute(
        select(RideRequest.status).where(
            RideRequest.ride_id == ride_id,
            RideRequest.status.in_(
                (RequestStatusEnum.APPROVED.value, RequestStatusEnum.COMPLETED.value)
            ),
        )
    )
    return list(result.scalars().all())


async def maybe_complete_ride(db: AsyncSession, ride: Ride, now: datetime) -> bool:
    """Complete a started ride once every approved, non-cancelled request has completed."""
    if ride.status != RideStatusEnum.STARTED.value:
        return False
    statuses = await _leg_statuses(db, ride.id)
    if not statuses or any(s != RequestStatusEnum.COMPLETED.value for s in statuses):
        return False

    ride.status = RideStatusEnum.COMPLETED.value
    ride.completed_at = now
    clear_codes(ride)
    logger.info("Ride completed ride=%s passengers=%d", ride.id, len(statuses))
    return True


async def abandon_if_empty(db: AsyncSession, ride: Ride, reason: str | None, now: datetime) -> bool:
    """Close a started ride with no passengers left. Ends CANCELLED, with no strike."""
    if ride.status != RideStatusEnum.STARTED.value:
        return False
    if await _leg_statuses(db, ride.id):
        return False

    ride.status = RideStatusEnum.CANCELLED.value
    ride.cancelled_at = now
    ride.cancellation_reason = reason or "All passengers removed"
    clear_codes(ride)
    logger.info("Ride closed with no passengers left ride=%s", ride.id)
    return True
