"""
HTTP-level tests: routing, auth, error rendering and Idempotency-Key replay.
Uses pytest-asyncio + HTTPX against the ASGI app with the orchestrator
overridden and Redis replaced by an in-memory stand-in.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from carpool.main import app
from carpool.middleware.auth import create_access_token
from carpool.services.orchestrator import get_orchestrator

from conftest import DRIVER, PASSENGERS

A, B, _ = PASSENGERS
DEPARTURE = datetime.now(timezone.utc) + timedelta(days=7)


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


def ride_payload(**overrides) -> dict:
    body = {
        "kind": "driver_posting",
        "origin": "Ashford Library",
        "origin_area": "Ashford",
        "destination": "Central Station",
        "destination_area": "Downtown",
        "departure_time": DEPARTURE.isoformat(),
        "arrival_time": (DEPARTURE + timedelta(hours=1)).isoformat(),
        "price": "30.00",
        "seats_total": 3,
        "payment_token": "tok_driver",
    }
    body.update(overrides)
    return body


@pytest.fixture
def fake_redis():
    store: dict[str, str] = {}
    redis = AsyncMock()
    redis.get.side_effect = store.get
    redis.setex.side_effect = lambda key, ttl, value: store.__setitem__(key, value)
    redis.delete.side_effect = lambda key: store.pop(key, None)
    redis.store = store
    return redis


@pytest_asyncio.fixture
async def client(orchestrator, fake_redis):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    get_redis = AsyncMock(return_value=fake_redis)
    with patch("carpool.routers.rides.get_redis", get_redis), \
            patch("carpool.middleware.idempotency.get_redis", get_redis):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
class TestRideAPI:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_post_ride_missing_auth(self, client):
        resp = await client.post("/v1/rides", json=ride_payload())
        assert resp.status_code == 401

    async def test_post_ride_bad_token(self, client):
        resp = await client.post("/v1/rides", json=ride_payload(), headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    async def test_arrival_before_departure(self, client):
        resp = await client.post(
            "/v1/rides",
            headers=auth(DRIVER),
            json=ride_payload(arrival_time=(DEPARTURE - timedelta(hours=1)).isoformat()),
        )
        assert resp.status_code == 422

    async def test_post_and_get_ride(self, client, fake_redis):
        resp = await client.post("/v1/rides", headers=auth(DRIVER), json=ride_payload())
        assert resp.status_code == 201
        ride = resp.json()
        assert ride["status"] == "OPEN"
        assert ride["seats_left"] == 3
        assert ride["driver_id"] == DRIVER

        resp = await client.get(f"/v1/rides/{ride['id']}", headers=auth(A))
        assert resp.status_code == 200
        assert resp.json()["id"] == ride["id"]
        assert f"ride:{ride['id']}:status" in fake_redis.store

    async def test_passenger_posting(self, client):
        body = ride_payload(kind="passenger_request", seats_needed=2)
        del body["seats_total"], body["payment_token"]
        resp = await client.post("/v1/rides", headers=auth(A), json=body)
        assert resp.status_code == 201
        assert resp.json()["kind"] == "passenger_request"
        assert resp.json()["seats_total"] == 2

    async def test_unknown_ride_is_404(self, client):
        resp = await client.get("/v1/rides/does-not-exist", headers=auth(A))
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFound"

    async def test_start_code_shape_is_validated(self, client):
        resp = await client.post("/v1/rides/x/verify-start", headers=auth(A), json={"code": "12a4"})
        assert resp.status_code == 422


@pytest.mark.asyncio
class TestRequestAPI:
    async def _ride(self, client) -> str:
        resp = await client.post("/v1/rides", headers=auth(DRIVER), json=ride_payload())
        return resp.json()["id"]

    async def test_idempotent_submit(self, client, processor):
        ride_id = await self._ride(client)
        headers = {**auth(A), "Idempotency-Key": "submit-1"}
        body = {"ride_id": ride_id, "payment_token": "tok_a"}

        first = await client.post("/v1/ride-requests", headers=headers, json=body)
        assert first.status_code == 201
        replay = await client.post("/v1/ride-requests", headers=headers, json=body)
        assert replay.status_code == 201
        assert replay.headers["X-Idempotency-Replay"] == "true"
        assert replay.json()["id"] == first.json()["id"]
        assert len(processor.operations("authorize")) == 1

    async def test_duplicate_without_key_is_409(self, client):
        ride_id = await self._ride(client)
        body = {"ride_id": ride_id, "payment_token": "tok_a"}
        await client.post("/v1/ride-requests", headers=auth(A), json=body)
        resp = await client.post("/v1/ride-requests", headers=auth(A), json=body)
        assert resp.status_code == 409
        assert resp.json()["error"] == "DuplicateRequest"

    async def test_passenger_cannot_approve(self, client):
        ride_id = await self._ride(client)
        request = (await client.post(
            "/v1/ride-requests", headers=auth(A), json={"ride_id": ride_id, "payment_token": "tok_a"}
        )).json()
        resp = await client.post(f"/v1/ride-requests/{request['id']}/approve", headers=auth(A))
        assert resp.status_code == 403
        assert resp.json() == {"error": "NotAuthorized", "detail": "Only the ride's driver can do this"}

    async def test_full_flow(self, client):
        ride_id = await self._ride(client)
        request = (await client.post(
            "/v1/ride-requests", headers=auth(A), json={"ride_id": ride_id, "payment_token": "tok_a"}
        )).json()
        assert request["payment_status"] == "AUTHORIZED"

        resp = await client.post(f"/v1/ride-requests/{request['id']}/approve", headers=auth(DRIVER))
        assert resp.json()["status"] == "APPROVED"

        mine = await client.get("/v1/ride-requests/mine?approved_only=true", headers=auth(A))
        assert [r["id"] for r in mine.json()] == [request["id"]]

        code = (await client.post(f"/v1/rides/{ride_id}/start-code", headers=auth(DRIVER))).json()["code"]
        resp = await client.post(f"/v1/rides/{ride_id}/verify-start", headers=auth(A), json={"code": code})
        assert resp.json()["status"] == "STARTED"

        code = (await client.post(f"/v1/rides/{ride_id}/completion-code", headers=auth(DRIVER))).json()["code"]
        resp = await client.post(
            f"/v1/rides/{ride_id}/verify-completion",
            headers=auth(A),
            json={"code": code, "claimant_role": "passenger"},
        )
        assert resp.status_code == 200
        assert resp.json()["ride_status"] == "COMPLETED"
        assert resp.json()["request"]["driver_payout"] == "27.00"
        assert resp.json()["request"]["platform_fee"] == "3.00"

    async def test_cancel_ride_without_body(self, client):
        ride_id = await self._ride(client)
        resp = await client.post(f"/v1/rides/{ride_id}/cancel", headers=auth(DRIVER))
        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"
        assert resp.json()["penalty_applied"] is False

    async def test_passenger_cancel(self, client):
        ride_id = await self._ride(client)
        request = (await client.post(
            "/v1/ride-requests", headers=auth(B), json={"ride_id": ride_id, "payment_token": "tok_b"}
        )).json()
        await client.post(f"/v1/ride-requests/{request['id']}/approve", headers=auth(DRIVER))
        resp = await client.post(
            f"/v1/ride-requests/{request['id']}/cancel",
            headers=auth(B),
            json={"cancellation_reason": "plans changed"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED_BY_PASSENGER"
        assert resp.json()["strike_count"] == 0


@pytest.mark.asyncio
class TestStrikesAPI:
    async def test_own_strikes(self, client):
        resp = await client.get(f"/v1/users/{A}/strikes", headers=auth(A))
        assert resp.status_code == 200
        assert resp.json()["strikes"] == 0

    async def test_someone_elses_strikes(self, client):
        resp = await client.get(f"/v1/users/{B}/strikes", headers=auth(A))
        assert resp.status_code == 403
