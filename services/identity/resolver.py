"""
services/identity/resolver.py
Resolves an authenticated actor id to {id, role, profile}.

Role and profile are looked up independently: a missing role row means the
default `user` tier, and a failing profile lookup degrades to profile=None
instead of blocking sign-in. Results are cached per actor id, in memory for
the lifetime of the resolver and in Redis across requests.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from shared.models.models import Profile, User, UserRole, UserRoleAssignment
from shared.schemas.schemas import ProfileResponse
from shared.utils.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# Fields the first-login form must fill before bookings can be prefilled
PROFILE_REQUIRED_FIELDS = ("full_name", "birth_date", "birth_time", "birth_place")


@dataclass(frozen=True)
class ActorContext:
    id: Optional[uuid.UUID]
    role: Optional[UserRole]
    email: Optional[str] = None
    profile: Optional[dict] = field(default=None, compare=False)

    @classmethod
    def anonymous(cls) -> "ActorContext":
        return cls(id=None, role=None)

    @property
    def is_authenticated(self) -> bool:
        return self.id is not None

    @property
    def profile_complete(self) -> bool:
        if not self.profile:
            return False
        return all(self.profile.get(name) for name in PROFILE_REQUIRED_FIELDS)

    def to_cache(self) -> dict:
        return {
            "id": str(self.id),
            "role": self.role.value if self.role else None,
            "email": self.email,
            "profile": self.profile,
        }

    @classmethod
    def from_cache(cls, payload: dict) -> "ActorContext":
        return cls(
            id=uuid.UUID(payload["id"]),
            role=UserRole(payload["role"]) if payload.get("role") else UserRole.USER,
            email=payload.get("email"),
            profile=payload.get("profile"),
        )


class RoleResolver:
    def __init__(self, db: AsyncSession, cache: Optional[RedisCache] = None):
        self.db = db
        self.cache = cache
        self._resolved: dict[uuid.UUID, ActorContext] = {}

    async def resolve(self, actor_id: uuid.UUID, refresh: bool = False) -> ActorContext:
        """Return the actor's context, fetching only on a cache miss or refresh."""
        if not refresh:
            if actor_id in self._resolved:
                return self._resolved[actor_id]
            cached = await self._cache_get(actor_id)
            if cached is not None:
                self._resolved[actor_id] = cached
                return cached

        role = await self.fetch_role(actor_id)
        email = await self._fetch_email(actor_id)
        profile = await self.fetch_profile(actor_id)

        actor = ActorContext(id=actor_id, role=role, email=email, profile=profile)
        self._resolved[actor_id] = actor
        await self._cache_set(actor)
        logger.info(f"Resolved actor {actor_id} as {role.value}")
        return actor

    async def invalidate(self, actor_id: uuid.UUID) -> None:
        """Drop cached state, e.g. after sign-out or a role change."""
        self._resolved.pop(actor_id, None)
        if self.cache:
            try:
                await self.cache.forget_actor(str(actor_id))
            except RedisError as e:
                logger.warning(f"Could not invalidate cached actor {actor_id}: {e}")

    async def fetch_role(self, actor_id: uuid.UUID) -> UserRole:
        try:
            role = await self.db.scalar(
                select(UserRoleAssignment.role).where(UserRoleAssignment.user_id == actor_id)
            )
        except SQLAlchemyError as e:
            logger.error(f"Role lookup failed for {actor_id}: {e}")
            raise UpstreamUnavailable("Could not resolve user role") from e
        if role is None:
            logger.info(f"No role row for {actor_id}, using default 'user' role")
            return UserRole.USER
        return UserRole(role)

    async def fetch_profile(self, actor_id: uuid.UUID) -> Optional[dict]:
        try:
            profile = await self.db.scalar(select(Profile).where(Profile.id == actor_id))
        except SQLAlchemyError as e:
            logger.warning(f"Profile lookup failed for {actor_id}, continuing without it: {e}")
            await self.db.rollback()
            return None
        if profile is None:
            return None
        return ProfileResponse.model_validate(profile).model_dump(mode="json")

    async def _fetch_email(self, actor_id: uuid.UUID) -> Optional[str]:
        try:
            return await self.db.scalar(select(User.email).where(User.id == actor_id))
        except SQLAlchemyError as e:
            logger.warning(f"Email lookup failed for {actor_id}: {e}")
            await self.db.rollback()
            return None

    async def _cache_get(self, actor_id: uuid.UUID) -> Optional[ActorContext]:
        if not self.cache:
            return None
        try:
            payload = await self.cache.get_actor(str(actor_id))
        except RedisError as e:
            logger.warning(f"Actor cache read failed: {e}")
            return None
        return ActorContext.from_cache(payload) if payload else None

    async def _cache_set(self, actor: ActorContext) -> None:
        if not self.cache:
            return
        try:
            await self.cache.set_actor(str(actor.id), actor.to_cache())
        except RedisError as e:
            logger.warning(f"Actor cache write failed: {e}")
