"""
Integration tests for the background settlement sweep.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update

from carpool.errors import InvalidTransition
from carpool.models.penalty import PenaltyCharge
from carpool.models.ride import Ride
from carpool.models.ride_request import RideRequest
from carpool.redis_client import acquire_lock, release_lock
from carpool.schemas.schemas import ClaimantRoleEnum
from carpool.services import penalty
from carpool.services.sweeper import sweep_once

from conftest import DRIVER, NOW, PASSENGERS, approved_request, posting

A, B, _ = PASSENGERS


async def started_ride(orchestrator, *passengers):
    ride = await orchestrator.post_ride(DRIVER, posting())
    requests = [await approved_request(orchestrator, ride.id, p) for p in passengers]
    code, _ = await orchestrator.generate_start_code(ride.id, DRIVER, now=NOW)
    await orchestrator.verify_start(ride.id, passengers[0], code, now=NOW)
    return ride, requests


@pytest.mark.asyncio
class TestAutoCapture:
    async def test_captures_after_grace_period(self, orchestrator, session_factory, processor, publisher):
        ride, (request,) = await started_ride(orchestrator, A)

        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(hours=23))
        assert report.captured == []

        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(hours=25))
        assert report.captured == [request.id]
        request = await orchestrator.get_request(request.id)
        assert request.status == "COMPLETED"
        assert request.payment_status == "CAPTURED"
        assert (await orchestrator.get_ride(ride.id)).status == "COMPLETED"
        assert publisher.types()[-2:] == ["request.completed", "ride.completed"]

    async def test_skips_passengers_who_already_confirmed(self, orchestrator, session_factory, processor, publisher):
        ride, (first, second) = await started_ride(orchestrator, A, B)
        code, _ = await orchestrator.generate_completion_code(ride.id, DRIVER, now=NOW)
        await orchestrator.verify_completion(ride.id, A, code, ClaimantRoleEnum.passenger, now=NOW)

        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(days=2))
        assert report.captured == [second.id]
        assert len(processor.operations("capture")) == 2

    async def test_capture_failure_is_retried_next_cycle(self, orchestrator, session_factory, processor, publisher):
        _, (request,) = await started_ride(orchestrator, A)
        later = NOW + timedelta(days=2)

        processor.fail_capture = True
        report = await sweep_once(session_factory, processor, publisher, now=later)
        assert report.capture_failures == [request.id]
        assert (await orchestrator.get_request(request.id)).status == "APPROVED"

        processor.fail_capture = False
        report = await sweep_once(session_factory, processor, publisher, now=later)
        assert report.captured == [request.id]


@pytest.mark.asyncio
class TestRefundRetry:
    async def test_failed_refund_stays_pending_until_sweep(self, orchestrator, session_factory, processor, publisher):
        ride = await orchestrator.post_ride(DRIVER, posting())
        request = await approved_request(orchestrator, ride.id, A)

        processor.fail_refund = True
        await orchestrator.cancel_by_passenger(request.id, A, now=NOW)
        async with session_factory() as db:
            row = await db.get(RideRequest, request.id)
        assert row.status == "CANCELLED_BY_PASSENGER"
        assert row.payment_status == "REFUND_PENDING"
        assert row.refund_attempts == 1

        # Backoff not elapsed yet.
        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(seconds=10))
        assert report.refunded == [] and report.refunds_pending == []

        processor.fail_refund = False
        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(minutes=5))
        assert report.refunded == [request.id]
        request = await orchestrator.get_request(request.id)
        assert request.payment_status == "REFUNDED"
        assert request.refund_reference is not None

        # Every attempt used the same key, so the PSP moves the money once.
        assert {c[2] for c in processor.operations("refund")} == {f"{request.id}:refund"}

    async def test_refunds_the_charge_when_capture_lost_the_race(
        self, orchestrator, session_factory, processor, publisher
    ):
        ride, (request,) = await started_ride(orchestrator, A)
        code, _ = await orchestrator.generate_completion_code(ride.id, DRIVER, now=NOW)

        async def driver_removes_passenger():
            processor.fail_refund = True
            await orchestrator.cancel_single_passenger(request.id, DRIVER, now=NOW)

        processor.on_capture = driver_removes_passenger
        with pytest.raises(InvalidTransition):
            await orchestrator.verify_completion(ride.id, A, code, ClaimantRoleEnum.passenger, now=NOW)

        processor.fail_refund = False
        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(hours=1))
        assert report.refunded == [request.id]
        receipt = processor.results[f"{request.id}:capture"]
        assert processor.operations("refund")[-1][1] == receipt


@pytest.mark.asyncio
class TestPenaltyRetry:
    async def test_pending_penalty_charged_by_sweep(self, orchestrator, session_factory, processor, publisher):
        for hours in (40, 20):
            ride = await orchestrator.post_ride(DRIVER, posting(departure=NOW + timedelta(hours=hours)))
            request = await approved_request(orchestrator, ride.id, A)
            processor.fail_charge = True
            result = await orchestrator.cancel_by_passenger(request.id, A, now=NOW)

        processor.fail_charge = False
        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(minutes=1))
        assert report.penalties_charged == [result.outcome.charge_id]

        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(minutes=2))
        assert report.penalties_charged == []

    async def test_penalty_without_payment_method_is_left_alone(
        self, orchestrator, session_factory, processor, publisher
    ):
        for hours in (40, 20):
            ride = await orchestrator.post_ride(
                DRIVER, posting(departure=NOW + timedelta(hours=hours), payment_token=None)
            )
            await orchestrator.cancel_ride(ride.id, DRIVER, now=NOW)

        assert await penalty.pending_charges(session_factory) == []
        report = await sweep_once(session_factory, processor, publisher, now=NOW + timedelta(minutes=1))
        assert report.penalties_charged == []
        assert processor.operations("charge") == []
        async with session_factory() as db:
            charges = (await db.execute(select(PenaltyCharge))).scalars().all()
        assert [c.status for c in charges] == ["PENDING"]


@pytest.mark.asyncio
class TestSeatDrift:
    async def test_reports_rides_whose_seat_count_drifted(
        self, orchestrator, session_factory, processor, publisher
    ):
        ride = await orchestrator.post_ride(DRIVER, posting())
        await approved_request(orchestrator, ride.id, A)
        report = await sweep_once(session_factory, processor, publisher, now=NOW)
        assert report.seat_drift == []

        async with session_factory() as db:
            await db.execute(update(Ride).where(Ride.id == ride.id).values(seats_left=3))
            await db.commit()

        report = await sweep_once(session_factory, processor, publisher, now=NOW)
        assert report.seat_drift == [ride.id]


@pytest.mark.asyncio
class TestSweeperLock:
    async def test_lock_is_set_nx_with_ttl(self):
        redis = AsyncMock()
        redis.set.return_value = True
        assert await acquire_lock(redis, "carpool:sweeper:lock", "worker-1", 55000)
        redis.set.assert_awaited_once_with("carpool:sweeper:lock", "worker-1", nx=True, px=55000)

    async def test_lock_held_elsewhere(self):
        redis = AsyncMock()
        redis.set.return_value = None
        assert not await acquire_lock(redis, "carpool:sweeper:lock", "worker-2", 55000)

    async def test_release_only_by_owner(self):
        redis = AsyncMock()
        redis.get.return_value = "worker-1"
        await release_lock(redis, "carpool:sweeper:lock", "worker-2")
        redis.delete.assert_not_awaited()
        await release_lock(redis, "carpool:sweeper:lock", "worker-1")
        redis.delete.assert_awaited_once_with("carpool:sweeper:lock")
