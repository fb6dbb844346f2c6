"""
services/booking/queries.py
Role-shaped booking listings.

First line of data minimisation: rows outside the actor's slice are never
fetched. Field-level redaction (policy.redact) is applied on top.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional, assert_never

from sqlalchemy import and_, or_, select, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Booking, UserRole
from shared.utils.errors import UpstreamUnavailable
from services.booking.policy import service_type_for

logger = logging.getLogger(__name__)


@dataclass
class BookingListing:
    bookings: list = field(default_factory=list)
    error: Optional[UpstreamUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _role_or_none(role) -> Optional[UserRole]:
    if role is None:
        return None
    try:
        return UserRole(role)
    except ValueError:
        return None


def listing_criteria(actor_id: Optional[uuid.UUID], role):
    """SQL filter for the actor's slice, or None when they may list nothing."""
    role = _role_or_none(role)
    if role is None or actor_id is None:
        return None
    if role is UserRole.ADMIN:
        return true()
    if role is UserRole.USER:
        return Booking.requester_id == actor_id
    if role is UserRole.ASTROLOGER or role is UserRole.PRIEST:
        return and_(
            Booking.service_type == service_type_for(role),
            or_(Booking.assigned_to == actor_id, Booking.assigned_to.is_(None)),
        )
    assert_never(role)


def listing_includes(actor_id: Optional[uuid.UUID], role, booking) -> bool:
    """In-memory twin of listing_criteria, for filtering change events."""
    role = _role_or_none(role)
    if role is None or actor_id is None:
        return False
    if role is UserRole.ADMIN:
        return True
    if role is UserRole.USER:
        return booking.requester_id == actor_id
    if role is UserRole.ASTROLOGER or role is UserRole.PRIEST:
        return booking.service_type == service_type_for(role) and (
            booking.assigned_to is None or booking.assigned_to == actor_id
        )
    assert_never(role)


async def list_for(db: AsyncSession, actor_id: Optional[uuid.UUID], role) -> BookingListing:
    """
    Newest first. Unknown or missing roles get an empty listing, not an error.
    A store failure degrades to an empty listing with `error` set.
    """
    criteria = listing_criteria(actor_id, role)
    if criteria is None:
        return BookingListing()

    try:
        result = await db.execute(
            select(Booking).where(criteria).order_by(Booking.created_at.desc())
        )
        bookings = list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.warning(f"Booking listing failed for {actor_id} ({role}): {e}")
        return BookingListing(error=UpstreamUnavailable("Could not load bookings"))

    return BookingListing(bookings=bookings)
