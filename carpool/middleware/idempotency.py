import json
from typing import Optional

from fastapi import Response
from fastapi.responses import JSONResponse

from carpool.redis_client import get_redis


IDEMPOTENCY_TTL = 86400  # 24 hours


def _cache_key(actor_id: str, key: str) -> str:
    # Scoped per actor so one user's key can never replay another user's response.
    return f"idempotency:{actor_id}:{key}"


async def check_idempotency(key: Optional[str], actor_id: str) -> Optional[Response]:
    """
    Returns the stored Response if this actor already used the Idempotency-Key,
    otherwise None (proceed normally).
    """
    if not key:
        return None

    redis = await get_redis()
    cached = await redis.get(_cache_key(actor_id, key))

    if cached:
        data = json.loads(cached)
        return JSONResponse(
            content=data["body"],
            status_code=data["status_code"],
            headers={"X-Idempotency-Replay": "true"},
        )
    return None


async def store_idempotency_result(key: Optional[str], actor_id: str, status_code: int, body: dict) -> None:
    """Persist the response for the given idempotency key (24h TTL)."""
    if not key:
        return
    redis = await get_redis()
    await redis.setex(
        _cache_key(actor_id, key),
        IDEMPOTENCY_TTL,
        json.dumps({"status_code": status_code, "body": body}, default=str),
    )
