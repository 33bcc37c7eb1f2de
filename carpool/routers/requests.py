"""
Ride requests router: submit, approve, reject, withdraw and per-passenger cancellation.
"""
import logging

from fastapi import APIRouter, Depends, Header, status

from carpool.middleware.auth import Actor, get_current_actor
from carpool.middleware.idempotency import check_idempotency, store_idempotency_result
from carpool.schemas.schemas import (
    CancellationResponse,
    CancelRequest,
    RideRequestCreate,
    RideRequestResponse,
)
from carpool.services.orchestrator import RideOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/ride-requests", tags=["Ride Requests"])


def _reason(payload: CancelRequest | None) -> str | None:
    return payload.cancellation_reason if payload else None


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideRequestResponse)
async def submit_request(
    payload: RideRequestCreate,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Request a seat. Places a hold for the ride price before the request exists;
    a client retrying with the same Idempotency-Key gets the original response.
    """
    cached = await check_idempotency(idempotency_key, actor.id)
    if cached:
        logger.info("Idempotent replay of submit key=%s by=%s", idempotency_key, actor.id)
        return cached

    request = await engine.submit_request(payload.ride_id, actor.id, payload.payment_token)
    resp = RideRequestResponse.model_validate(request)

    await store_idempotency_result(idempotency_key, actor.id, 201, resp.model_dump(mode="json"))
    return resp


@router.get("/mine", response_model=list[RideRequestResponse])
async def list_my_requests(
    approved_only: bool = False,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    requests = await engine.list_passenger_requests(actor.id, approved_only=approved_only)
    return [RideRequestResponse.model_validate(r) for r in requests]


@router.post("/{request_id}/approve", response_model=RideRequestResponse)
async def approve_request(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    return RideRequestResponse.model_validate(await engine.approve_request(request_id, actor.id))


@router.post("/{request_id}/reject", response_model=RideRequestResponse)
async def reject_request(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    return RideRequestResponse.model_validate(await engine.reject_request(request_id, actor.id))


@router.post("/{request_id}/withdraw", response_model=RideRequestResponse)
async def withdraw_request(
    request_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    return RideRequestResponse.model_validate(await engine.withdraw_request(request_id, actor.id))


@router.post("/{request_id}/cancel", response_model=CancellationResponse)
async def cancel_by_passenger(
    request_id: str,
    payload: CancelRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    result = await engine.cancel_by_passenger(request_id, actor.id, _reason(payload))
    return CancellationResponse(
        id=result.id,
        status=result.status,
        strike_count=result.outcome.strike_count,
        penalty_applied=result.outcome.penalty_applied,
        penalty_amount=result.outcome.penalty_amount,
    )


@router.post("/{request_id}/cancel-by-driver", response_model=RideRequestResponse)
async def cancel_single_passenger(
    request_id: str,
    payload: CancelRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    request = await engine.cancel_single_passenger(request_id, actor.id, _reason(payload))
    return RideRequestResponse.model_validate(request)
