from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from ghl_sync.core.config import get_settings


ADMIN_ROLE = "system.admin"


@dataclass(frozen=True)
class AuthUser:
    sub: str
    roles: list[str]


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


def _bearer_token(request: Request) -> str | None:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def get_current_user(request: Request) -> AuthUser:
    """Decodes the bearer JWT. Missing or invalid tokens resolve to the anonymous guest."""
    token = _bearer_token(request)
    if token is None:
        return ANONYMOUS

    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return ANONYMOUS

    raw_roles = claims.get("roles")
    roles = [str(role) for role in raw_roles] if isinstance(raw_roles, list) else ["user"]
    user = AuthUser(sub=str(claims.get("sub") or ANONYMOUS.sub), roles=roles)
    request.state.user_id = user.sub
    return user


def require_roles(*roles: str) -> Callable[..., object]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing = [role for role in roles if role not in user.roles]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        return user

    return checker


require_admin = require_roles(ADMIN_ROLE)


async def require_authenticated(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if user.sub == ANONYMOUS.sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user
