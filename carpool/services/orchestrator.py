"""
Ride orchestrator: the façade over the ride state machine.

    OPEN ──verify_start──▶ STARTED ──(all passengers completed)──▶ COMPLETED
      │                       │
      └──────cancel_ride──────┴──▶ CANCELLED

Every public method takes the authenticated actor id, runs its state change
in one ride-locked transaction, performs PSP calls outside the lock, and
publishes domain events after commit.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from carpool.errors import EngineError, InvalidTransition, NotFound
from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest
from carpool.schemas.schemas import (
    ClaimantRoleEnum,
    DriverPostingCreate,
    PassengerRequestCreate,
    RequestStatusEnum,
    RideStatusEnum,
)
from carpool.services import escrow, matcher, penalty, seat_ledger, verification
from carpool.services.locking import lock_request, lock_ride, transaction
from carpool.services.notify import EventPublisher, RideEvent
from carpool.services.payment import PaymentProcessor
from carpool.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CancellationResult:
    id: str
    status: str
    outcome: penalty.CancellationOutcome


@dataclass
class CompletionResult:
    request: RideRequest
    ride_status: str
    settlement: escrow.Settlement


class RideOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        processor: PaymentProcessor,
        publisher: EventPublisher,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.publisher = publisher

    # ------------------------------------------------------------------
    # Postings & queries
    # ------------------------------------------------------------------

    async def post_ride(self, actor_id: str, payload: DriverPostingCreate | PassengerRequestCreate) -> Ride:
        if isinstance(payload, DriverPostingCreate):
            seats, car_model, token = payload.seats_total, payload.car_model, payload.payment_token
        else:
            seats, car_model, token = payload.seats_needed, None, None
        ride = Ride(
            kind=payload.kind,
            driver_id=actor_id,
            origin=payload.origin,
            origin_area=payload.origin_area,
            destination=payload.destination,
            destination_area=payload.destination_area,
            departure_time=payload.departure_time,
            arrival_time=payload.arrival_time,
            price=payload.price,
            seats_total=seats,
            seats_left=seats,
            gender_preference=payload.gender_preference.value,
            car_model=car_model,
            notes=payload.notes,
            driver_payment_token=token,
            status=RideStatusEnum.OPEN.value,
        )
        async with self.session_factory() as db:
            db.add(ride)
            await db.commit()
            await db.refresh(ride)
        logger.info("Ride posted ride=%s kind=%s by=%s seats=%d", ride.id, ride.kind, actor_id, seats)
        return ride

    async def get_ride(self, ride_id: str) -> Ride:
        async with self.session_factory() as db:
            ride = await db.get(Ride, ride_id)
        if ride is None:
            raise NotFound(f"Ride {ride_id} not found")
        return ride

    async def get_request(self, request_id: str) -> RideRequest:
        async with self.session_factory() as db:
            request = await db.get(RideRequest, request_id)
        if request is None:
            raise NotFound(f"Ride request {request_id} not found")
        return request

    async def list_ride_requests(self, ride_id: str, actor_id: str) -> list[RideRequest]:
        async with self.session_factory() as db:
            ride = await db.get(Ride, ride_id)
            if ride is None:
                raise NotFound(f"Ride {ride_id} not found")
            matcher.require_driver(ride, actor_id)
            result = await db.execute(
                select(RideRequest).where(RideRequest.ride_id == ride_id).order_by(RideRequest.created_at)
            )
            return list(result.scalars().all())

    async def list_passenger_requests(self, passenger_id: str, approved_only: bool = False) -> list[RideRequest]:
        query = select(RideRequest).where(RideRequest.passenger_id == passenger_id)
        if approved_only:
            query = query.where(RideRequest.status == RequestStatusEnum.APPROVED.value)
        async with self.session_factory() as db:
            result = await db.execute(query.order_by(RideRequest.created_at.desc()))
            return list(result.scalars().all())

    async def get_strike_count(self, user_id: str, now: datetime | None = None) -> int:
        async with self.session_factory() as db:
            return await penalty.get_strike_count(db, user_id, now or utcnow())

    # ------------------------------------------------------------------
    # Request matcher
    # ------------------------------------------------------------------

    async def submit_request(
        self, ride_id: str, passenger_id: str, payment_token: str, now: datetime | None = None
    ) -> RideRequest:
        now = now or utcnow()
        request_id = str(uuid.uuid4())

        async with transaction(self.session_factory) as db:
            ride = await lock_ride(db, ride_id)
            await matcher.validate_submission(db, ride, passenger_id)
            amount = ride.price

        # No request exists without a hold; a PSP failure fails the whole call.
        authorization_id = await escrow.authorize(self.processor, request_id, amount, payment_token)

        try:
            async with transaction(self.session_factory) as db:
                ride = await lock_ride(db, ride_id)
                # The ride may have moved on while the PSP call was in flight.
                await matcher.validate_submission(db, ride, passenger_id)
                request = matcher.create_request(db, ride, request_id, passenger_id, payment_token, now)
                escrow.record_authorization(request, authorization_id)
        except EngineError:
            await escrow.void_authorization(self.processor, request_id, authorization_id)
            raise

        await self._publish(RideEvent("request.submitted", ride_id, request_id, passenger_id))
        return await self.get_request(request_id)

    async def approve_request(self, request_id: str, actor_id: str) -> RideRequest:
        async with transaction(self.session_factory) as db:
            request, ride = await lock_request(db, request_id)
            reservation = matcher.approve(ride, request, actor_id)

        await self._publish(
            RideEvent(
                "request.approved", ride.id, request_id, actor_id,
                {"passenger_id": request.passenger_id, "seats_left": reservation.seats_left},
            )
        )
        return request

    async def reject_request(self, request_id: str, actor_id: str, now: datetime | None = None) -> RideRequest:
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            request, ride = await lock_request(db, request_id)
            refund_due = matcher.reject(ride, request, actor_id, now)

        if refund_due:
            await escrow.settle_refund(self.session_factory, self.processor, request_id, now)
        await self._publish(RideEvent("request.rejected", ride.id, request_id, actor_id))
        return await self.get_request(request_id)

    async def withdraw_request(self, request_id: str, actor_id: str, now: datetime | None = None) -> RideRequest:
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            request, ride = await lock_request(db, request_id)
            refund_due = matcher.withdraw(ride, request, actor_id, now)

        if refund_due:
            await escrow.settle_refund(self.session_factory, self.processor, request_id, now)
        await self._publish(RideEvent("request.withdrawn", ride.id, request_id, actor_id))
        return await self.get_request(request_id)

    # ------------------------------------------------------------------
    # Verification codes
    # ------------------------------------------------------------------

    async def generate_start_code(self, ride_id: str, actor_id: str, now: datetime | None = None) -> tuple[str, datetime]:
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            ride = await lock_ride(db, ride_id)
            return await verification.generate_start_code(db, ride, actor_id, now)

    async def verify_start(self, ride_id: str, actor_id: str, code: str, now: datetime | None = None) -> Ride:
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            ride = await lock_ride(db, ride_id)
            request = await verification.verify_start(db, ride, actor_id, code, now)
            # Approval needs an OPEN ride, so requests still pending can never board.
            refunds = await matcher.reject_pending(db, ride, now, "Ride started")

        for pending_id in refunds:
            await escrow.settle_refund(self.session_factory, self.processor, pending_id, now)
        await self._publish(RideEvent("ride.started", ride_id, request.id, actor_id, {"rejected": refunds}))
        return ride

    async def generate_completion_code(
        self, ride_id: str, actor_id: str, now: datetime | None = None
    ) -> tuple[str, datetime]:
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            ride = await lock_ride(db, ride_id)
            return verification.generate_completion_code(ride, actor_id, now)

    async def verify_completion(
        self,
        ride_id: str,
        actor_id: str,
        code: str,
        claimant_role: ClaimantRoleEnum,
        request_id: str | None = None,
        now: datetime | None = None,
    ) -> CompletionResult:
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            ride = await lock_ride(db, ride_id)
            request = await verification.check_completion_claim(
                db, ride, actor_id, code, claimant_role, request_id, now
            )
            request_id, version = request.id, request.version

        result = await escrow.capture_and_complete(
            self.session_factory, self.processor, request_id, version, now
        )
        await self._publish(*self._completion_events(result, actor_id))
        return CompletionResult(result.request, result.ride.status, result.settlement)

    # ------------------------------------------------------------------
    # Cancellations
    # ------------------------------------------------------------------

    async def cancel_ride(
        self, ride_id: str, actor_id: str, reason: str | None = None, now: datetime | None = None
    ) -> CancellationResult:
        now = now or utcnow()
        refunds: list[str] = []
        async with transaction(self.session_factory) as db:
            ride = await lock_ride(db, ride_id)
            matcher.ensure_not_terminal(ride)
            matcher.require_driver(ride, actor_id)

            result = await db.execute(
                select(RideRequest).where(
                    RideRequest.ride_id == ride_id,
                    RideRequest.status.in_(
                        (RequestStatusEnum.PENDING.value, RequestStatusEnum.APPROVED.value)
                    ),
                )
            )
            for request in result.scalars().all():
                if request.status == RequestStatusEnum.APPROVED.value:
                    seat_ledger.release_seat(ride, request)
                    request.status = RequestStatusEnum.CANCELLED_BY_DRIVER.value
                else:
                    request.status = RequestStatusEnum.REJECTED.value
                request.cancelled_at = now
                request.cancellation_reason = reason
                if escrow.begin_refund(request, now):
                    refunds.append(request.id)

            outcome = await penalty.evaluate_cancellation(
                db, ride.driver_id, ride, ride.driver_payment_token, now
            )
            verification.clear_codes(ride)
            ride.status = RideStatusEnum.CANCELLED.value
            ride.cancelled_at = now
            ride.cancellation_reason = reason
        logger.info("Ride cancelled ride=%s by=%s refunds=%d", ride_id, actor_id, len(refunds))

        await self._settle(refunds, outcome, now)
        await self._publish(
            RideEvent("ride.cancelled", ride_id, None, actor_id, {"reason": reason, "refunds": refunds})
        )
        return CancellationResult(ride_id, ride.status, outcome)

    async def cancel_single_passenger(
        self, request_id: str, actor_id: str, reason: str | None = None, now: datetime | None = None
    ) -> RideRequest:
        """Driver drops one approved passenger; no strike for a partial removal."""
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            request, ride = await lock_request(db, request_id)
            matcher.ensure_not_terminal(ride)
            matcher.require_driver(ride, actor_id)
            if request.status != RequestStatusEnum.APPROVED.value:
                raise InvalidTransition(f"Cannot remove a {request.status} passenger")

            refund_due = escrow.begin_refund(request, now)
            seat_ledger.release_seat(ride, request)
            request.status = RequestStatusEnum.CANCELLED_BY_DRIVER.value
            request.cancelled_at = now
            request.cancellation_reason = reason
            ride_completed = await verification.maybe_complete_ride(db, ride, now)
            ride_abandoned = not ride_completed and await verification.abandon_if_empty(db, ride, reason, now)
        logger.info("Passenger removed request=%s ride=%s", request_id, ride.id)

        if refund_due:
            await escrow.settle_refund(self.session_factory, self.processor, request_id, now)
        events = [RideEvent("request.cancelled_by_driver", ride.id, request_id, actor_id, {"reason": reason})]
        if ride_completed:
            events.append(RideEvent("ride.completed", ride.id, None, actor_id))
        elif ride_abandoned:
            events.append(RideEvent("ride.cancelled", ride.id, None, actor_id, {"reason": ride.cancellation_reason}))
        await self._publish(*events)
        return await self.get_request(request_id)

    async def cancel_by_passenger(
        self, request_id: str, actor_id: str, reason: str | None = None, now: datetime | None = None
    ) -> CancellationResult:
        now = now or utcnow()
        async with transaction(self.session_factory) as db:
            request, ride = await lock_request(db, request_id)
            matcher.ensure_not_terminal(ride)
            matcher.require_passenger(request, actor_id)
            if request.status != RequestStatusEnum.APPROVED.value:
                raise InvalidTransition(f"Cannot cancel a {request.status} request; withdraw pending requests instead")
            if ride.status != RideStatusEnum.OPEN.value:
                raise InvalidTransition(f"Cannot cancel once the ride is {ride.status}")

            refund_due = escrow.begin_refund(request, now)
            seat_ledger.release_seat(ride, request)
            request.status = RequestStatusEnum.CANCELLED_BY_PASSENGER.value
            request.cancelled_at = now
            request.cancellation_reason = reason
            outcome = await penalty.evaluate_cancellation(db, actor_id, ride, request.payment_token, now)
        logger.info("Passenger cancelled request=%s ride=%s", request_id, ride.id)

        await self._settle([request_id] if refund_due else [], outcome, now)
        await self._publish(
            RideEvent("request.cancelled_by_passenger", ride.id, request_id, actor_id, {"reason": reason})
        )
        return CancellationResult(request_id, request.status, outcome)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _settle(self, refunds: list[str], outcome: penalty.CancellationOutcome, now: datetime) -> None:
        """Post-commit PSP work; anything that fails here is left for the sweeper."""
        for request_id in refunds:
            await escrow.settle_refund(self.session_factory, self.processor, request_id, now)
        if outcome.charge_id:
            await penalty.settle_penalty_charge(self.session_factory, self.processor, outcome.charge_id)

    @staticmethod
    def _completion_events(result: escrow.CaptureResult, actor_id: str | None) -> list[RideEvent]:
        events = [
            RideEvent(
                "request.completed", result.ride.id, result.request.id, actor_id,
                {
                    "captured": str(result.settlement.captured_amount),
                    "platform_fee": str(result.settlement.platform_fee),
                    "driver_payout": str(result.settlement.driver_payout),
                },
            )
        ]
        if result.ride_completed:
            events.append(RideEvent("ride.completed", result.ride.id, None, actor_id))
        return events

    async def _publish(self, *events: RideEvent) -> None:
        await self.publisher.publish(events)


_orchestrator: RideOrchestrator | None = None


def get_orchestrator() -> RideOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        from carpool.database import AsyncSessionLocal
        from carpool.services.notify import RedisEventPublisher
        from carpool.services.payment import get_payment_processor

        _orchestrator = RideOrchestrator(AsyncSessionLocal, get_payment_processor(), RedisEventPublisher())
    return _orchestrator
