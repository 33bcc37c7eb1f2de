"""
Monthly cancellation strikes and penalty fees.

Strikes are keyed by (user_id, "YYYY-MM"); a month with no record counts as
zero. A short-notice cancellation (inside the penalty window) is forgiven the
first time in a month and costs a share of the ride price after that. The fee
is a separate PSP charge, recorded as a PenaltyCharge so that a failed charge
is retried by the sweeper instead of being lost.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.config import get_settings
from carpool.errors import PaymentProcessorUnavailable
from carpool.models.penalty import PenaltyCharge
from carpool.models.ride import Ride
from carpool.models.strike import StrikeRecord
from carpool.schemas.schemas import PenaltyStatusEnum
from carpool.services.locking import transaction
from carpool.services.payment import PaymentProcessor
from carpool.utils import as_utc, to_money

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass(frozen=True)
class CancellationOutcome:
    strike_count: int
    penalty_applied: bool
    penalty_amount: Decimal
    charge_id: str | None = None


def year_month(now: datetime) -> str:
    return now.strftime("%Y-%m")


def hours_until(departure_time: datetime, now: datetime) -> float:
    return (as_utc(departure_time) - now).total_seconds() / 3600


def penalty_for(price: Decimal) -> Decimal:
    return to_money(Decimal(price) * Decimal(str(settings.penalty_rate)))


async def get_strike_count(db: AsyncSession, user_id: str, now: datetime) -> int:
    record = await db.get(StrikeRecord, (user_id, year_month(now)))
    return record.count if record else 0


async def evaluate_cancellation(
    db: AsyncSession,
    user_id: str,
    ride: Ride,
    payment_token: str | None,
    now: datetime,
) -> CancellationOutcome:
    """Apply the strike/penalty rules for one cancellation, inside the caller's transaction."""
    if hours_until(ride.departure_time, now) >= settings.penalty_window_hours:
        return CancellationOutcome(await get_strike_count(db, user_id, now), False, Decimal("0.00"))

    key = year_month(now)
    result = await db.execute(
        select(StrikeRecord)
        .where(StrikeRecord.user_id == user_id, StrikeRecord.year_month == key)
        .with_for_update()
    )
    record = result.scalar_one_or_none()
    if record is None:
        record = StrikeRecord(user_id=user_id, year_month=key, count=0, last_penalty_amount=Decimal("0.00"))
        db.add(record)

    if record.count == 0:
        record.count = 1
        logger.info("Strike recorded user=%s month=%s count=1 (grace)", user_id, key)
        return CancellationOutcome(1, False, Decimal("0.00"))

    amount = penalty_for(ride.price)
    record.count += 1
    record.last_penalty_amount = amount
    charge = PenaltyCharge(
        user_id=user_id,
        ride_id=ride.id,
        amount=amount,
        payment_token=payment_token,
        status=PenaltyStatusEnum.PENDING.value,
    )
    db.add(charge)
    await db.flush()
    if not payment_token:
        logger.warning("Penalty charge=%s user=%s has no payment method on file", charge.id, user_id)
    logger.info("Penalty applied user=%s ride=%s amount=%s strikes=%d", user_id, ride.id, amount, record.count)
    return CancellationOutcome(record.count, True, amount, charge.id)


async def settle_penalty_charge(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    charge_id: str,
) -> bool:
    """Charge a pending penalty. Returns True once it is CHARGED."""
    async with session_factory() as db:
        charge = await db.get(PenaltyCharge, charge_id)
        if charge is None or charge.status != PenaltyStatusEnum.PENDING.value:
            return False
        amount, token = charge.amount, charge.payment_token

    if not token:
        # Not selected by pending_charges; stays PENDING until a payment method is attached.
        return False

    try:
        receipt_id = await processor.charge_separate(amount, token, f"penalty:{charge_id}")
    except PaymentProcessorUnavailable as exc:
        async with transaction(session_factory) as db:
            charge = await db.get(PenaltyCharge, charge_id, with_for_update=True)
            charge.attempts += 1
            charge.last_error = str(exc)[:500]
        logger.warning("Penalty charge failed charge=%s: %s", charge_id, exc)
        return False

    async with transaction(session_factory) as db:
        charge = await db.get(PenaltyCharge, charge_id, with_for_update=True)
        if charge.status == PenaltyStatusEnum.PENDING.value:
            charge.status = PenaltyStatusEnum.CHARGED.value
            charge.receipt_id = receipt_id
    logger.info("Penalty charged charge=%s receipt=%s", charge_id, receipt_id)
    return True


async def pending_charges(session_factory: async_sessionmaker) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(
            select(PenaltyCharge.id).where(
                PenaltyCharge.status == PenaltyStatusEnum.PENDING.value,
                PenaltyCharge.payment_token.is_not(None),
                PenaltyCharge.payment_token != "",
            )
        )
        return list(result.scalars().all())
