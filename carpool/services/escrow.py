"""
Escrow settlement: authorization at request time, capture at completion
(manual or timeout-triggered), refund on cancellation.

PSP calls never run under the ride lock. The pattern is:

  1. lock, validate, note the row version, commit
  2. call the PSP with an idempotency key derived from (request id, operation)
  3. lock again and commit only if the row is still the one we validated

Refunds invert the order: the cancellation commits the request into
REFUND_PENDING together with its seat release and status change, then the
refund is attempted. A failed refund stays REFUND_PENDING and the sweeper
retries it with backoff, so money owed back is never dropped.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from carpool.config import get_settings
from carpool.errors import InvalidTransition, PaymentProcessorUnavailable, StaleState
from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest
from carpool.schemas.schemas import PaymentStatusEnum, RequestStatusEnum, RideStatusEnum
from carpool.services import verification
from carpool.services.locking import lock_request, transaction
from carpool.services.payment import PaymentProcessor, idempotency_key
from carpool.utils import as_utc, to_money

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class Settlement:
    captured_amount: Decimal
    platform_fee: Decimal
    driver_payout: Decimal


@dataclass
class CaptureResult:
    request: RideRequest
    ride: Ride
    settlement: Settlement
    ride_completed: bool


def split_settlement(price: Decimal) -> Settlement:
    """Fee split is always taken from the ride's posted price."""
    price = to_money(price)
    platform_fee = to_money(price * Decimal(str(settings.platform_fee_rate)))
    return Settlement(price, platform_fee, price - platform_fee)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

async def authorize(processor: PaymentProcessor, request_id: str, amount: Decimal, payer_token: str) -> str:
    return await processor.authorize(to_money(amount), payer_token, idempotency_key(request_id, "authorize"))


def record_authorization(request: RideRequest, authorization_id: str) -> None:
    if request.payment_status == PaymentStatusEnum.AUTHORIZED.value:
        return
    if request.payment_status != PaymentStatusEnum.NONE.value:
        raise InvalidTransition(f"Cannot authorize a {request.payment_status} payment")
    request.authorization_id = authorization_id
    request.payment_status = PaymentStatusEnum.AUTHORIZED.value


async def void_authorization(processor: PaymentProcessor, request_id: str, authorization_id: str) -> None:
    """Release a hold placed for a request that was never created."""
    try:
        await processor.refund(authorization_id, idempotency_key(request_id, "refund"))
    except PaymentProcessorUnavailable as exc:
        # No row to park a retry on; the PSP lets uncaptured holds lapse.
        logger.error("Could not void orphaned hold auth=%s request=%s: %s", authorization_id, request_id, exc)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

def ensure_capturable(request: RideRequest) -> None:
    if request.payment_status != PaymentStatusEnum.AUTHORIZED.value:
        raise InvalidTransition(f"Cannot capture a {request.payment_status} payment")
    if request.status != RequestStatusEnum.APPROVED.value:
        raise InvalidTransition(f"Cannot capture for a {request.status} request")


def record_capture(ride: Ride, request: RideRequest, receipt_id: str, now: datetime) -> Settlement:
    ensure_capturable(request)
    settlement = split_settlement(ride.price)
    request.receipt_id = receipt_id
    request.payment_status = PaymentStatusEnum.CAPTURED.value
    request.platform_fee = settlement.platform_fee
    request.driver_payout = settlement.driver_payout
    request.status = RequestStatusEnum.COMPLETED.value
    request.completed_at = now
    logger.info(
        "Captured request=%s amount=%s platform_fee=%s driver_payout=%s",
        request.id, settlement.captured_amount, settlement.platform_fee, settlement.driver_payout,
    )
    return settlement


async def capture_and_complete(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    request_id: str,
    expected_version: int,
    now: datetime,
) -> CaptureResult:
    """
    Capture a validated request and complete it.

    `expected_version` is the request version seen when the claim was
    validated. If anything touched the request while the PSP call was in
    flight, the commit is rejected with StaleState.
    """
    async with transaction(session_factory) as db:
        request, _ = await lock_request(db, request_id)
        if request.version != expected_version:
            raise StaleState(f"Request {request_id} changed before capture")
        ensure_capturable(request)
        authorization_id = request.authorization_id

    receipt_id = await processor.capture(authorization_id, idempotency_key(request_id, "capture"))

    stale = False
    async with transaction(session_factory) as db:
        request, ride = await lock_request(db, request_id)
        if request.version != expected_version:
            stale = True
            if request.payment_status == PaymentStatusEnum.REFUND_PENDING.value and request.receipt_id is None:
                # Cancelled while the capture went through: refund the charge, not the spent hold.
                request.receipt_id = receipt_id
        else:
            settlement = record_capture(ride, request, receipt_id, now)
            completed = await verification.maybe_complete_ride(db, ride, now)

    if stale:
        logger.warning("Stale capture commit rejected request=%s", request_id)
        raise StaleState(f"Request {request_id} was settled concurrently")
    return CaptureResult(request, ride, settlement, completed)


async def auto_capture(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    request_id: str,
    now: datetime,
) -> CaptureResult | None:
    """Timeout capture for a passenger who never confirmed completion."""
    grace = timedelta(hours=settings.auto_capture_grace_hours)
    async with transaction(session_factory) as db:
        request, ride = await lock_request(db, request_id)
        due = (
            ride.status == RideStatusEnum.STARTED.value
            and ride.started_at is not None
            and as_utc(ride.started_at) + grace <= now
            and request.status == RequestStatusEnum.APPROVED.value
            and request.payment_status == PaymentStatusEnum.AUTHORIZED.value
        )
        version = request.version
    if not due:
        return None
    logger.info("Auto-capturing request=%s ride=%s", request_id, request.ride_id)
    return await capture_and_complete(session_factory, processor, request_id, version, now)


async def due_for_auto_capture(session_factory: async_sessionmaker, now: datetime) -> list[str]:
    cutoff = now - timedelta(hours=settings.auto_capture_grace_hours)
    async with session_factory() as db:
        result = await db.execute(
            select(RideRequest.id)
            .join(Ride, Ride.id == RideRequest.ride_id)
            .where(
                Ride.status == RideStatusEnum.STARTED.value,
                Ride.started_at <= cutoff,
                RideRequest.status == RequestStatusEnum.APPROVED.value,
                RideRequest.payment_status == PaymentStatusEnum.AUTHORIZED.value,
            )
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Refund
# ---------------------------------------------------------------------------

def begin_refund(request: RideRequest, now: datetime) -> bool:
    """
    Mark money owed back. Must run inside the cancellation's transaction.
    Returns False when there is nothing to refund.
    """
    status = request.payment_status
    if status in (PaymentStatusEnum.REFUND_PENDING.value, PaymentStatusEnum.REFUNDED.value):
        return False
    if status == PaymentStatusEnum.NONE.value:
        return False
    request.payment_status = PaymentStatusEnum.REFUND_PENDING.value
    request.next_refund_attempt_at = now
    return True


def refund_backoff(attempts: int) -> timedelta:
    seconds = settings.refund_retry_base_seconds * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, settings.refund_retry_max_seconds))


async def settle_refund(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    request_id: str,
    now: datetime,
) -> bool:
    """Attempt a pending refund. Returns True once the request is REFUNDED."""
    async with session_factory() as db:
        request = await db.get(RideRequest, request_id)
        if request is None or request.payment_status != PaymentStatusEnum.REFUND_PENDING.value:
            return False
        reference = request.receipt_id or request.authorization_id

    try:
        confirmation = await processor.refund(reference, idempotency_key(request_id, "refund"))
    except PaymentProcessorUnavailable as exc:
        async with transaction(session_factory) as db:
            request, _ = await lock_request(db, request_id)
            if request.payment_status == PaymentStatusEnum.REFUND_PENDING.value:
                request.refund_attempts += 1
                request.last_payment_error = str(exc)[:500]
                request.next_refund_attempt_at = now + refund_backoff(request.refund_attempts)
                logger.warning(
                    "Refund failed request=%s attempt=%d next_attempt=%s: %s",
                    request_id, request.refund_attempts, request.next_refund_attempt_at.isoformat(), exc,
                )
        return False

    async with transaction(session_factory) as db:
        request, _ = await lock_request(db, request_id)
        if request.payment_status != PaymentStatusEnum.REFUND_PENDING.value:
            return request.payment_status == PaymentStatusEnum.REFUNDED.value
        request.payment_status = PaymentStatusEnum.REFUNDED.value
        request.refund_reference = confirmation
        request.next_refund_attempt_at = None
        request.last_payment_error = None
    logger.info("Refunded request=%s confirmation=%s", request_id, confirmation)
    return True


async def due_refunds(session_factory: async_sessionmaker, now: datetime) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(
            select(RideRequest.id, RideRequest.next_refund_attempt_at).where(
                RideRequest.payment_status == PaymentStatusEnum.REFUND_PENDING.value
            )
        )
        return [
            request_id
            for request_id, next_at in result.all()
            if next_at is None or as_utc(next_at) <= now
        ]
