"""
services/booking/lifecycle.py
Booking status machine and transition authority.

    pending ──► assigned | confirmed ──► accepted | rejected ──► completed
        └──────────────── any pre-terminal ──► cancelled

Admins may set any status directly. Everyone else goes through
authorize_transition().
"""

from typing import assert_never

from shared.models.models import BookingStatus, UserRole
from shared.utils.errors import PermissionDenied, ValidationFailed
from services.booking.policy import can_claim

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

# Non-admin whitelist: current status -> reachable statuses
TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.ASSIGNED,
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.ASSIGNED: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.ACCEPTED,
        BookingStatus.REJECTED,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.ACCEPTED,
        BookingStatus.REJECTED,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.ACCEPTED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.REJECTED: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def is_terminal(status: BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def is_allowed(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(target) in TRANSITIONS[BookingStatus(current)]


def is_requester(actor, booking) -> bool:
    return actor.id is not None and booking.requester_id == actor.id


def authorize_transition(actor, booking, target: BookingStatus) -> None:
    """
    Raise PermissionDenied if the actor may not move this booking to `target`,
    ValidationFailed if the move is not a legal transition.
    Same-status requests never reach here; callers treat them as no-ops.
    """
    if actor is None or actor.role is None:
        raise PermissionDenied("Authentication required")

    target = BookingStatus(target)
    current = BookingStatus(booking.status)
    role = UserRole(actor.role)

    if role is UserRole.ADMIN:
        return

    if target is BookingStatus.CANCELLED:
        if not is_requester(actor, booking):
            raise PermissionDenied("Only the requester or an admin can cancel a booking")
    elif role is UserRole.USER:
        raise PermissionDenied("Only astrologer, priest, or admin can update booking status")
    elif role is UserRole.ASTROLOGER or role is UserRole.PRIEST:
        if not can_claim(actor, booking):
            raise PermissionDenied("You are not allowed to update this booking")
    else:
        assert_never(role)

    if not is_allowed(current, target):
        raise ValidationFailed(f"Cannot move booking from '{current.value}' to '{target.value}'")
