"""
services/booking/policy.py
Who may claim a booking and who may see its sensitive fields.

Pure functions over an actor (anything with `id` and `role`) and a booking
(ORM row or BookingRecord). Every role is matched explicitly.
"""

from typing import Optional, assert_never

from shared.models.models import ServiceType, UserRole
from shared.schemas.schemas import BookingRecord, BookingView

# Hidden from everyone but admins, the requester and the assigned provider.
SENSITIVE_FIELDS = (
    "name",
    "email",
    "phone",
    "dob",
    "birth_time",
    "birth_state",
    "description",
    "ai_summary",
    "cancellation_reason",
)


def provider_role_for(service_type: ServiceType) -> UserRole:
    """The provider role that fulfils a service type."""
    service_type = ServiceType(service_type)
    if service_type is ServiceType.CONSULTATION:
        return UserRole.ASTROLOGER
    if service_type is ServiceType.POOJA:
        return UserRole.PRIEST
    assert_never(service_type)


def service_type_for(role: UserRole) -> Optional[ServiceType]:
    """The service type a role provides, or None for non-providers."""
    role = UserRole(role)
    if role is UserRole.ASTROLOGER:
        return ServiceType.CONSULTATION
    if role is UserRole.PRIEST:
        return ServiceType.POOJA
    if role is UserRole.USER or role is UserRole.ADMIN:
        return None
    assert_never(role)


def is_provider(role: Optional[UserRole]) -> bool:
    return role is not None and service_type_for(role) is not None


def can_claim(actor, booking) -> bool:
    """
    Admin: always. Astrologer/priest: only their service type, and only while
    the booking is unassigned or already theirs. User: never.
    """
    if actor is None or actor.role is None:
        return False
    role = UserRole(actor.role)
    if role is UserRole.ADMIN:
        return True
    if role is UserRole.USER:
        return False
    if role is UserRole.ASTROLOGER or role is UserRole.PRIEST:
        return (
            booking.service_type == service_type_for(role)
            and (booking.assigned_to is None or booking.assigned_to == actor.id)
        )
    assert_never(role)


def can_view_full_details(actor, booking) -> bool:
    """
    Admin: always. User: only as the requester.
    Astrologer/priest: only once assigned to a booking of their service type.
    """
    if actor is None or actor.role is None or actor.id is None:
        return False
    role = UserRole(actor.role)
    if role is UserRole.ADMIN:
        return True
    if role is UserRole.USER:
        return booking.requester_id is not None and booking.requester_id == actor.id
    if role is UserRole.ASTROLOGER or role is UserRole.PRIEST:
        return (
            booking.service_type == service_type_for(role)
            and booking.assigned_to is not None
            and booking.assigned_to == actor.id
        )
    assert_never(role)


def redact(booking, actor) -> BookingView:
    """Render a booking for one viewer, nulling sensitive fields they may not see."""
    record = booking if isinstance(booking, BookingRecord) else BookingRecord.model_validate(booking)
    visible = can_view_full_details(actor, record)
    data = record.model_dump()
    if not visible:
        for field in SENSITIVE_FIELDS:
            data[field] = None
    return BookingView(**data, detail_visible=visible)
