"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The JWT only identifies the actor; the role is resolved per request.
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.identity.resolver import ActorContext, RoleResolver
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.email: Optional[str] = payload.get("email")
        self.jti: Optional[str] = payload.get("jti")
        self.payload = payload


async def decode_token(token: str, redis) -> TokenData:
    """
    Verify a raw access token and check the Redis deny-list.
    Raises JWTError for invalid, expired or revoked tokens.
    """
    payload = verify_access_token(token)
    try:
        token_data = TokenData(payload)
    except ValueError as e:
        raise JWTError("Malformed subject") from e
    if token_data.jti and await RedisCache(redis).is_token_revoked(token_data.jti):
        raise JWTError("Token has been revoked")
    return token_data


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """Extract and validate the bearer JWT from the Authorization header."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await decode_token(credentials.credentials, redis)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    result = await db.execute(select(User).where(User.id == token_data.user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


def get_resolver(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> RoleResolver:
    return RoleResolver(db, RedisCache(redis))


async def get_actor(
    current_user: User = Depends(get_current_user),
    resolver: RoleResolver = Depends(get_resolver),
) -> ActorContext:
    """The signed-in actor with their looked-up role and profile."""
    return await resolver.resolve(current_user.id)


async def actor_for_token(token: str, resolver: RoleResolver, redis) -> Optional[ActorContext]:
    """Resolved actor for a raw token; None if it is invalid or revoked or the account is inactive."""
    try:
        token_data = await decode_token(token, redis)
    except JWTError:
        return None
    user_id = await resolver.db.scalar(
        select(User.id).where(User.id == token_data.user_id, User.is_active.is_(True))
    )
    if user_id is None:
        return None
    return await resolver.resolve(user_id)


async def get_optional_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    resolver: RoleResolver = Depends(get_resolver),
    redis=Depends(get_redis),
) -> ActorContext:
    """Resolved actor if a valid token is present, anonymous otherwise. For public endpoints."""
    if not credentials:
        return ActorContext.anonymous()
    actor = await actor_for_token(credentials.credentials, resolver, redis)
    return actor or ActorContext.anonymous()


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        actor: ActorContext = Depends(get_actor),
    ) -> ActorContext:
        if actor.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return actor


# Convenience role dependencies
require_admin = RoleRequired(UserRole.ADMIN)
