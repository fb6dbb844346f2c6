"""
services/booking/store.py
Booking persistence and change broadcast.

All writes go through here. Store failures surface as UpstreamUnavailable;
committed changes are published as {event_type, row} on the booking
events channel so live listings can merge them.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import Booking, BookingStatus
from shared.schemas.schemas import BookingChangeEvent, BookingRecord
from shared.utils.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class BookingEventBus:
    """Publishes committed booking changes over Redis pub/sub."""

    def __init__(self, redis, channel: Optional[str] = None):
        self.redis = redis
        self.channel = channel or settings.BOOKING_EVENTS_CHANNEL

    async def publish(self, event_type: str, booking) -> None:
        event = BookingChangeEvent(
            event_type=event_type,
            row=BookingRecord.model_validate(booking),
        )
        try:
            await self.redis.publish(self.channel, event.model_dump_json())
        except RedisError as e:
            # The write is already committed; live views catch up on next load.
            logger.warning(f"Could not publish {event_type} for booking {event.row.id}: {e}")


class BookingStore:
    def __init__(self, db: AsyncSession, events: Optional[BookingEventBus] = None):
        self.db = db
        self.events = events

    @asynccontextmanager
    async def _guard(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(f"Booking store failed during {action}: {e}")
            await self.db.rollback()
            raise UpstreamUnavailable("Booking store is unavailable") from e

    async def get(self, booking_id: uuid.UUID) -> Optional[Booking]:
        """Fresh read; overwrites whatever the session already holds."""
        async with self._guard("get"):
            result = await self.db.execute(
                select(Booking)
                .where(Booking.id == booking_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def insert(self, booking: Booking) -> None:
        async with self._guard("insert"):
            self.db.add(booking)
            await self.db.flush()

    async def claim(
        self,
        booking_id: uuid.UUID,
        actor_id: uuid.UUID,
        status: BookingStatus,
        **values,
    ) -> bool:
        """
        Assign the booking to actor_id only if it is unassigned or already
        theirs. Returns False when someone else holds it.
        """
        async with self._guard("claim"):
            result = await self.db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    or_(Booking.assigned_to.is_(None), Booking.assigned_to == actor_id),
                )
                .values(assigned_to=actor_id, status=status, **values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def update(self, booking_id: uuid.UUID, **values) -> bool:
        async with self._guard("update"):
            result = await self.db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def set_summary(self, booking_id: uuid.UUID, actor_id: uuid.UUID, summary: str) -> bool:
        """Write ai_summary only while actor_id still holds the booking."""
        async with self._guard("set_summary"):
            result = await self.db.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.assigned_to == actor_id)
                .values(ai_summary=summary)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def rollback(self) -> None:
        await self.db.rollback()

    async def commit(self, booking_id: uuid.UUID, event_type: str = "update") -> Booking:
        """Commit pending writes, re-read the row and broadcast it."""
        async with self._guard("commit"):
            await self.db.commit()
        booking = await self.get(booking_id)
        if booking is None:
            raise UpstreamUnavailable("Booking vanished after commit")
        if self.events:
            await self.events.publish(event_type, booking)
        return booking
