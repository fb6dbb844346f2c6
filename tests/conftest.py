"""
tests/conftest.py
Shared fixtures: SQLite test database, in-memory Redis double, HTTP client,
actors for every role and a booking factory.
"""

import os

# Must be set before any app module reads settings
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_astro.db"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key"
os.environ["GOOGLE_CLIENT_ID"] = "test-google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-google-client-secret"
os.environ["GEMINI_API_KEY"] = ""
os.environ["APP_ENV"] = "test"

import uuid
from datetime import date
from typing import Optional

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from main import app
from services.booking.router import get_summary_client
from services.enrichment.summarizer import SummaryClient
from services.identity.resolver import ActorContext
from shared.models.models import (
    Booking,
    BookingStatus,
    OAuthProvider,
    Profile,
    ServiceType,
    User,
    UserRole,
    UserRoleAssignment,
)
from shared.utils.security import create_access_token


# ── Redis double ──────────────────────────────────────────────

class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the app uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.store)

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def ping(self):
        return True


# ── Database / client ─────────────────────────────────────────

@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def summary_client():
    """Summaries off by default; tests that need them override this fixture."""
    return SummaryClient()


@pytest_asyncio.fixture
async def client(db, redis, summary_client):
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_summary_client] = lambda: summary_client
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def open_session(db):
    """Extra sessions, each on its own connection, closed at teardown."""
    sessions = []

    def _open():
        session = AsyncSessionLocal()
        sessions.append(session)
        return session

    yield _open
    for session in sessions:
        await session.close()


# ── Actors ────────────────────────────────────────────────────

async def _make_account(db, email: str, name: str, role: Optional[UserRole]) -> User:
    user = User(
        oauth_provider=OAuthProvider.GOOGLE,
        oauth_id=f"google-{uuid.uuid4().hex}",
        email=email,
        name=name,
    )
    db.add(user)
    await db.flush()
    db.add(Profile(id=user.id, full_name=name))
    if role is not None:
        db.add(UserRoleAssignment(user_id=user.id, role=role))
    await db.commit()
    return user


@pytest_asyncio.fixture
async def user(db) -> User:
    """Plain account with no role row: resolves to `user`."""
    return await _make_account(db, "asha@example.com", "Asha Verma", None)


@pytest_asyncio.fixture
async def other_user(db) -> User:
    return await _make_account(db, "ravi@example.com", "Ravi Kumar", UserRole.USER)


@pytest_asyncio.fixture
async def astrologer(db) -> User:
    return await _make_account(db, "jyoti@example.com", "Jyoti Sharma", UserRole.ASTROLOGER)


@pytest_asyncio.fixture
async def astrologer_two(db) -> User:
    return await _make_account(db, "kiran@example.com", "Kiran Rao", UserRole.ASTROLOGER)


@pytest_asyncio.fixture
async def priest(db) -> User:
    return await _make_account(db, "pandit.shastri@example.com", "Shastri Ji", UserRole.PRIEST)


@pytest_asyncio.fixture
async def priest_two(db) -> User:
    return await _make_account(db, "pandit.mishra@example.com", "Mishra Ji", UserRole.PRIEST)


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await _make_account(db, "admin@example.com", "Admin", UserRole.ADMIN)


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user_id=str(user.id), email=user.email)
    return {"Authorization": f"Bearer {token}"}


def actor_of(user: User, role: UserRole) -> ActorContext:
    return ActorContext(id=user.id, role=role, email=user.email)


# ── Bookings ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def make_booking(db):
    async def _make(
        service_type: ServiceType = ServiceType.CONSULTATION,
        requester: Optional[User] = None,
        assigned_to: Optional[User] = None,
        status: BookingStatus = BookingStatus.PENDING,
        **fields,
    ) -> Booking:
        defaults = {
            "name": "Asha Verma",
            "email": "asha@example.com",
            "phone": "9876543210",
            "dob": date(1990, 5, 17),
            "birth_time": "7:05 AM",
            "birth_state": "Maharashtra",
            "description": "Facing repeated delays in a job change since last year.",
            "preferred_slot": "Evening",
        }
        if service_type == ServiceType.CONSULTATION:
            defaults["problem_category"] = "Career"
        else:
            defaults["pooja_type"] = "Satyanarayan Puja"
        defaults.update(fields)

        booking = Booking(
            service_type=service_type,
            requester_id=requester.id if requester else None,
            assigned_to=assigned_to.id if assigned_to else None,
            status=status,
            **defaults,
        )
        db.add(booking)
        await db.commit()
        return booking

    return _make
