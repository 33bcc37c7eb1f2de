"""
Background settlement sweep.

Each cycle:
  1. auto-captures approved requests on rides started more than the grace
     period ago (drivers get paid even if a passenger never confirms)
  2. retries REFUND_PENDING refunds whose backoff has elapsed
  3. retries penalty charges the PSP did not accept
  4. checks seats_left against held seats on every live ride and logs drift

Only one worker sweeps per cycle (Redis SET NX lock). A capture that loses
the race to a manual completion is rejected with StaleState and skipped.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from carpool.config import get_settings
from carpool.errors import InvalidTransition, PaymentProcessorUnavailable
from carpool.models.ride import Ride
from carpool.redis_client import acquire_lock, get_redis, release_lock
from carpool.schemas.schemas import RideStatusEnum
from carpool.services import escrow, penalty
from carpool.services.notify import EventPublisher, RideEvent
from carpool.services.payment import PaymentProcessor
from carpool.services.seat_ledger import check_seat_invariant
from carpool.utils import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

SWEEP_LOCK_KEY = "carpool:sweeper:lock"


@dataclass
class SweepReport:
    captured: list[str] = field(default_factory=list)
    capture_failures: list[str] = field(default_factory=list)
    refunded: list[str] = field(default_factory=list)
    refunds_pending: list[str] = field(default_factory=list)
    penalties_charged: list[str] = field(default_factory=list)
    seat_drift: list[str] = field(default_factory=list)


async def sweep_once(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    publisher: EventPublisher,
    now: datetime | None = None,
) -> SweepReport:
    now = now or utcnow()
    report = SweepReport()

    for request_id in await escrow.due_for_auto_capture(session_factory, now):
        try:
            result = await escrow.auto_capture(session_factory, processor, request_id, now)
        except PaymentProcessorUnavailable as exc:
            # Stays APPROVED; picked up again next cycle.
            logger.warning("Auto-capture deferred request=%s: %s", request_id, exc)
            report.capture_failures.append(request_id)
            continue
        except InvalidTransition as exc:
            logger.info("Auto-capture skipped request=%s: %s", request_id, exc)
            continue
        if result is None:
            continue
        report.captured.append(request_id)
        events = [
            RideEvent(
                "request.completed", result.ride.id, request_id, None,
                {"auto_capture": True, "captured": str(result.settlement.captured_amount)},
            )
        ]
        if result.ride_completed:
            events.append(RideEvent("ride.completed", result.ride.id, None, None, {"auto_capture": True}))
        await publisher.publish(events)

    for request_id in await escrow.due_refunds(session_factory, now):
        if await escrow.settle_refund(session_factory, processor, request_id, now):
            report.refunded.append(request_id)
        else:
            report.refunds_pending.append(request_id)

    for charge_id in await penalty.pending_charges(session_factory):
        if await penalty.settle_penalty_charge(session_factory, processor, charge_id):
            report.penalties_charged.append(charge_id)

    report.seat_drift = await seat_drift(session_factory)

    if report.captured or report.refunded or report.penalties_charged or report.capture_failures or report.seat_drift:
        logger.info(
            "Sweep done captured=%d capture_failures=%d refunded=%d refunds_pending=%d penalties=%d seat_drift=%d",
            len(report.captured), len(report.capture_failures), len(report.refunded),
            len(report.refunds_pending), len(report.penalties_charged), len(report.seat_drift),
        )
    return report


async def seat_drift(session_factory: async_sessionmaker) -> list[str]:
    """Ids of live rides whose seats_left disagrees with the seats their requests hold."""
    async with session_factory() as db:
        result = await db.execute(
            select(Ride).where(Ride.status.in_((RideStatusEnum.OPEN.value, RideStatusEnum.STARTED.value)))
        )
        return [ride.id for ride in result.scalars().all() if not await check_seat_invariant(db, ride)]


async def run_sweeper(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    publisher: EventPublisher,
) -> None:
    """Sweep forever; started as a task from the app lifespan and cancelled on shutdown."""
    owner = str(uuid.uuid4())
    ttl_ms = settings.sweeper_lock_ttl_seconds * 1000
    logger.info("Settlement sweeper started (interval=%ss)", settings.sweep_interval_seconds)
    while True:
        try:
            redis = await get_redis()
            if await acquire_lock(redis, SWEEP_LOCK_KEY, owner, ttl_ms):
                try:
                    await sweep_once(session_factory, processor, publisher)
                finally:
                    await release_lock(redis, SWEEP_LOCK_KEY, owner)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Sweep cycle failed: %s", exc, exc_info=True)
        await asyncio.sleep(settings.sweep_interval_seconds)
