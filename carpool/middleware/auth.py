"""
Bearer-token identity.

Drivers and passengers share one token format: `sub` is the user id the
engine keys every actor check on; `name` is carried along for audit lines
only. Tokens are issued by the identity provider; `create_access_token`
exists for tooling and tests.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from carpool.config import get_settings

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    id: str
    name: str = ""


def create_access_token(data: dict, expires_minutes: int | None = None) -> str:
    """Sign a JWT with the configured secret, stamping an `exp` claim."""
    claims = dict(data)
    ttl = expires_minutes or settings.access_token_expire_minutes
    claims.setdefault("exp", datetime.now(timezone.utc) + timedelta(minutes=ttl))
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    if credentials is None:
        raise _unauthorized("Missing Bearer token")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token payload")
    return Actor(id=str(user_id), name=payload.get("name", ""))
