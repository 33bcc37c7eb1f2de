"""
Rides router: posting, detail, verification codes and whole-ride cancellation.
"""
import logging

from fastapi import APIRouter, Depends, status

from carpool.middleware.auth import Actor, get_current_actor
from carpool.redis_client import get_redis, cache_get, cache_set, ride_cache_key
from carpool.schemas.schemas import (
    CancellationResponse,
    CancelRequest,
    RidePostingCreate,
    RideRequestResponse,
    RideResponse,
    VerificationCodeResponse,
    VerifyCompletionRequest,
    VerifyCompletionResponse,
    VerifyStartRequest,
)
from carpool.services.orchestrator import RideOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideResponse)
async def post_ride(
    payload: RidePostingCreate,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    ride = await engine.post_ride(actor.id, payload)
    return RideResponse.model_validate(ride)


@router.get("/{ride_id}", response_model=RideResponse)
async def get_ride(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    redis = await get_redis()

    # Cache-aside: check Redis first; transitions drop the key when they publish.
    cache_key = ride_cache_key(ride_id)
    cached = await cache_get(redis, cache_key)
    if cached:
        return RideResponse.model_validate_json(cached)

    resp = RideResponse.model_validate(await engine.get_ride(ride_id))
    await cache_set(redis, cache_key, resp.model_dump_json(), ttl=60)
    return resp


@router.get("/{ride_id}/requests", response_model=list[RideRequestResponse])
async def list_ride_requests(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    """All requests on the ride, for its driver."""
    return [RideRequestResponse.model_validate(r) for r in await engine.list_ride_requests(ride_id, actor.id)]


@router.post("/{ride_id}/start-code", response_model=VerificationCodeResponse)
async def generate_start_code(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    code, expires_at = await engine.generate_start_code(ride_id, actor.id)
    logger.info("Start code generated ride=%s by=%s (%s)", ride_id, actor.id, actor.name)
    return VerificationCodeResponse(ride_id=ride_id, code=code, expires_at=expires_at)


@router.post("/{ride_id}/verify-start", response_model=RideResponse)
async def verify_start(
    ride_id: str,
    payload: VerifyStartRequest,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    ride = await engine.verify_start(ride_id, actor.id, payload.code)
    return RideResponse.model_validate(ride)


@router.post("/{ride_id}/completion-code", response_model=VerificationCodeResponse)
async def generate_completion_code(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    code, expires_at = await engine.generate_completion_code(ride_id, actor.id)
    return VerificationCodeResponse(ride_id=ride_id, code=code, expires_at=expires_at)


@router.post("/{ride_id}/verify-completion", response_model=VerifyCompletionResponse)
async def verify_completion(
    ride_id: str,
    payload: VerifyCompletionRequest,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    """
    Confirm one passenger's drop-off. Captures that passenger's hold; the ride
    completes once every approved passenger has been confirmed.
    """
    result = await engine.verify_completion(
        ride_id, actor.id, payload.code, payload.claimant_role, payload.request_id
    )
    return VerifyCompletionResponse(
        request=RideRequestResponse.model_validate(result.request),
        ride_status=result.ride_status,
    )


@router.post("/{ride_id}/cancel", response_model=CancellationResponse)
async def cancel_ride(
    ride_id: str,
    payload: CancelRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    result = await engine.cancel_ride(ride_id, actor.id, payload.cancellation_reason if payload else None)
    return CancellationResponse(
        id=result.id,
        status=result.status,
        strike_count=result.outcome.strike_count,
        penalty_applied=result.outcome.penalty_applied,
        penalty_amount=result.outcome.penalty_amount,
    )
