"""
Users router: GET /v1/users/{id}/strikes
"""
from fastapi import APIRouter, Depends

from carpool.errors import NotAuthorized
from carpool.middleware.auth import Actor, get_current_actor
from carpool.schemas.schemas import StrikeCountResponse
from carpool.services.orchestrator import RideOrchestrator, get_orchestrator
from carpool.services.penalty import year_month
from carpool.utils import utcnow

router = APIRouter(prefix="/v1/users", tags=["Users"])


@router.get("/{user_id}/strikes", response_model=StrikeCountResponse)
async def get_strike_count(
    user_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: RideOrchestrator = Depends(get_orchestrator),
):
    """Cancellation strikes for the current calendar month (self only)."""
    if actor.id != user_id:
        raise NotAuthorized("You can only view your own strikes")
    now = utcnow()
    strikes = await engine.get_strike_count(user_id, now)
    return StrikeCountResponse(user_id=user_id, year_month=year_month(now), strikes=strikes)
