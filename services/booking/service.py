"""
services/booking/service.py
Booking operations: create, claim, status changes, reassignment, cancellation.

Every mutation re-reads the row, checks policy and lifecycle, writes through
BookingStore (conditional update for anything that assigns a provider),
appends an audit entry and commits. Raises BookingError subclasses.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingAuditLog,
    BookingStatus,
    FamilyProfile,
    ServiceType,
    User,
    UserRole,
)
from shared.schemas.schemas import BookingCreateRequest
from shared.utils.errors import (
    AlreadyAssigned,
    EnrichmentFailed,
    NotFound,
    PermissionDenied,
    UpstreamUnavailable,
    ValidationFailed,
)
from services.booking import queries
from services.booking.lifecycle import authorize_transition, is_allowed, is_requester, is_terminal
from services.booking.policy import can_claim, is_provider, provider_role_for, service_type_for
from services.booking.store import BookingEventBus, BookingStore
from services.enrichment.summarizer import SummaryClient, source_text
from services.identity.resolver import ActorContext, RoleResolver

logger = logging.getLogger(__name__)


@dataclass
class AssignmentOutcome:
    booking: Booking
    summary_generated: bool = False
    enrichment_error: Optional[str] = None


class BookingService:
    def __init__(
        self,
        db: AsyncSession,
        events: Optional[BookingEventBus] = None,
        summarizer: Optional[SummaryClient] = None,
        resolver: Optional[RoleResolver] = None,
    ):
        self.db = db
        self.store = BookingStore(db, events)
        self.summarizer = summarizer
        self.resolver = resolver or RoleResolver(db)

    # ── Helpers ───────────────────────────────────────────────

    def _log_status_change(
        self,
        booking_id: uuid.UUID,
        from_status: Optional[BookingStatus],
        to_status: BookingStatus,
        actor: ActorContext,
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Append an immutable audit entry; committed with the change itself."""
        self.db.add(BookingAuditLog(
            booking_id=booking_id,
            from_status=BookingStatus(from_status).value if from_status else None,
            to_status=BookingStatus(to_status).value,
            changed_by_id=actor.id,
            reason=reason,
            audit_metadata=metadata,
        ))

    async def _get_or_404(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.store.get(booking_id)
        if booking is None:
            raise NotFound()
        return booking

    # ── Create ────────────────────────────────────────────────

    async def create_booking(self, data: BookingCreateRequest, actor: ActorContext) -> Booking:
        """Anonymous or signed-in submission. Always starts pending and unassigned."""
        fields = data.model_dump(exclude={"family_profile_id"})
        fields["service_type"] = ServiceType(fields["service_type"])

        if data.family_profile_id:
            if not actor.is_authenticated:
                raise NotFound("Family profile not found")
            try:
                family = await self.db.scalar(
                    select(FamilyProfile).where(
                        FamilyProfile.id == data.family_profile_id,
                        FamilyProfile.user_id == actor.id,
                    )
                )
            except SQLAlchemyError as e:
                raise UpstreamUnavailable("Could not load family profile") from e
            if family is None:
                raise NotFound("Family profile not found")
            prefill = {
                "name": family.full_name,
                "dob": family.birth_date,
                "birth_time": family.birth_time,
                "birth_state": family.birth_place,
            }
            for key, value in prefill.items():
                if not fields.get(key):
                    fields[key] = value

        if not fields.get("email") and actor.email:
            fields["email"] = actor.email

        booking = Booking(
            **fields,
            family_profile_id=data.family_profile_id,
            requester_id=actor.id,
            status=BookingStatus.PENDING,
            assigned_to=None,
        )
        await self.store.insert(booking)
        self._log_status_change(booking.id, None, BookingStatus.PENDING, actor)
        booking = await self.store.commit(booking.id, event_type="insert")
        logger.info(f"Booking {booking.id} created ({booking.service_type.value}) by {actor.id or 'anonymous'}")
        return booking

    # ── Read ──────────────────────────────────────────────────

    async def get_booking(self, booking_id: uuid.UUID, actor: ActorContext) -> Booking:
        """A single booking, only if it is in the actor's listing."""
        booking = await self._get_or_404(booking_id)
        if not queries.listing_includes(actor.id, actor.role, booking):
            raise NotFound()
        return booking

    async def list_for(self, actor: ActorContext) -> queries.BookingListing:
        return await queries.list_for(self.db, actor.id, actor.role)

    # ── Claim ─────────────────────────────────────────────────

    async def confirm_and_assign(self, booking_id: uuid.UUID, actor: ActorContext) -> AssignmentOutcome:
        """
        Claim an unassigned booking of the provider's own service type and
        mark it confirmed. Exactly one of several concurrent claimers wins;
        the rest get AlreadyAssigned. A summary is attempted afterwards and
        its failure only shows up in the outcome flags.
        """
        if not is_provider(actor.role):
            raise PermissionDenied("Only astrologers and priests can confirm bookings")

        booking = await self.store.get(booking_id)
        if booking is None or booking.service_type != service_type_for(actor.role):
            raise NotFound("Booking not found for your service type")
        if booking.assigned_to is not None and booking.assigned_to != actor.id:
            raise AlreadyAssigned()

        current = BookingStatus(booking.status)
        if is_terminal(current) or (
            current is not BookingStatus.CONFIRMED and not is_allowed(current, BookingStatus.CONFIRMED)
        ):
            raise ValidationFailed(f"Cannot confirm a booking that is '{current.value}'")

        if not await self.store.claim(booking_id, actor.id, BookingStatus.CONFIRMED):
            await self.store.rollback()
            logger.info(f"Claim on booking {booking_id} lost by {actor.id}")
            raise AlreadyAssigned()

        self._log_status_change(
            booking_id, current, BookingStatus.CONFIRMED, actor,
            metadata={"assigned_to": str(actor.id)},
        )
        booking = await self.store.commit(booking_id)
        logger.info(f"Booking {booking_id} claimed by {actor.role.value} {actor.id}")

        return await self._enrich(booking, actor)

    async def _enrich(self, booking: Booking, actor: ActorContext) -> AssignmentOutcome:
        if self.summarizer is None:
            return AssignmentOutcome(booking=booking)

        booking_id = booking.id
        try:
            summary = await self.summarizer.summarize(source_text(booking), booking.service_type)
            if summary is None:
                return AssignmentOutcome(booking=booking)
            if not await self.store.set_summary(booking_id, actor.id, summary):
                raise EnrichmentFailed("Booking changed hands before the summary was saved")
            booking = await self.store.commit(booking_id)
        except (EnrichmentFailed, UpstreamUnavailable) as e:
            logger.warning(f"Summary for booking {booking_id} not saved: {e.message}")
            return await self._unenriched(booking_id, e.message)
        except Exception as e:
            # The claim is already committed; enrichment never undoes it
            logger.error(f"Summary for booking {booking_id} failed unexpectedly: {e}", exc_info=True)
            return await self._unenriched(booking_id, "Summary generation failed")

        return AssignmentOutcome(booking=booking, summary_generated=True)

    async def _unenriched(self, booking_id: uuid.UUID, error: str) -> AssignmentOutcome:
        await self.store.rollback()
        booking = await self._get_or_404(booking_id)
        return AssignmentOutcome(booking=booking, enrichment_error=error)

    # ── Status ────────────────────────────────────────────────

    async def update_status(
        self,
        booking_id: uuid.UUID,
        new_status: BookingStatus,
        actor: ActorContext,
    ) -> Booking:
        """
        Providers may act on unassigned bookings of their service type, which
        claims them in the same conditional write. Admins may set any status.
        """
        if actor.role not in (UserRole.ASTROLOGER, UserRole.PRIEST, UserRole.ADMIN):
            raise PermissionDenied("Only astrologer, priest, or admin can update booking status")

        booking = await self._get_or_404(booking_id)
        if is_provider(actor.role) and not can_claim(actor, booking):
            raise PermissionDenied("You are not allowed to update this booking")

        target = BookingStatus(new_status)
        current = BookingStatus(booking.status)
        if target is current:
            return booking

        authorize_transition(actor, booking, target)

        metadata = None
        if is_provider(actor.role):
            if not await self.store.claim(booking_id, actor.id, target):
                await self.store.rollback()
                raise AlreadyAssigned()
            if booking.assigned_to is None:
                metadata = {"assigned_to": str(actor.id)}
        else:
            values = {"status": target}
            # Back to pending reopens the booking for claiming
            if target is BookingStatus.PENDING and booking.assigned_to is not None:
                values["assigned_to"] = None
                metadata = {"previous_assignee": str(booking.assigned_to)}
            await self.store.update(booking_id, **values)

        self._log_status_change(booking_id, current, target, actor, metadata=metadata)
        booking = await self.store.commit(booking_id)
        logger.info(f"Booking {booking_id}: {current.value} -> {target.value} by {actor.id}")
        return booking

    # ── Admin reassignment ────────────────────────────────────

    async def reassign(
        self,
        booking_id: uuid.UUID,
        assignee_id: uuid.UUID,
        actor: ActorContext,
        ip_address: Optional[str] = None,
    ) -> Booking:
        """Admin override of the assignee. The assignee must provide this service type."""
        if actor.role is not UserRole.ADMIN:
            raise PermissionDenied("Only admins can reassign bookings")

        booking = await self._get_or_404(booking_id)
        current = BookingStatus(booking.status)
        if is_terminal(current):
            raise ValidationFailed(f"Cannot reassign a booking that is '{current.value}'")

        try:
            exists = await self.db.scalar(select(User.id).where(User.id == assignee_id))
        except SQLAlchemyError as e:
            raise UpstreamUnavailable("Could not load assignee") from e
        if exists is None:
            raise NotFound("Assignee not found")

        required = provider_role_for(booking.service_type)
        assignee_role = await self.resolver.fetch_role(assignee_id)
        if assignee_role is not required:
            raise ValidationFailed(
                f"A {booking.service_type.value} booking can only be assigned to a {required.value}"
            )

        target = BookingStatus.ASSIGNED if current is BookingStatus.PENDING else current
        await self.store.update(booking_id, assigned_to=assignee_id, status=target)

        previous = str(booking.assigned_to) if booking.assigned_to else None
        self._log_status_change(
            booking_id, current, target, actor,
            reason="Reassigned by admin",
            metadata={"assigned_to": str(assignee_id), "previous_assignee": previous},
        )
        self.db.add(AdminAuditLog(
            admin_id=actor.id,
            action="REASSIGN_BOOKING",
            entity_type="booking",
            entity_id=str(booking_id),
            payload={"from": previous, "to": str(assignee_id)},
            ip_address=ip_address,
        ))
        booking = await self.store.commit(booking_id)
        logger.info(f"Booking {booking_id} reassigned {previous} -> {assignee_id} by admin {actor.id}")
        return booking

    # ── Cancel ────────────────────────────────────────────────

    async def cancel(
        self,
        booking_id: uuid.UUID,
        actor: ActorContext,
        reason: Optional[str] = None,
    ) -> Booking:
        """Requester or admin cancels any booking that is not yet closed."""
        if not actor.is_authenticated:
            raise PermissionDenied("Sign in to cancel a booking")

        booking = await self._get_or_404(booking_id)
        current = BookingStatus(booking.status)
        if current is BookingStatus.CANCELLED:
            if actor.role is UserRole.ADMIN or is_requester(actor, booking):
                return booking
        authorize_transition(actor, booking, BookingStatus.CANCELLED)
        if is_terminal(current):
            raise ValidationFailed(f"Booking in '{current.value}' state cannot be cancelled")

        await self.store.update(booking_id, status=BookingStatus.CANCELLED, cancellation_reason=reason)
        self._log_status_change(booking_id, current, BookingStatus.CANCELLED, actor, reason)
        booking = await self.store.commit(booking_id)
        logger.info(f"Booking {booking_id} cancelled by {actor.id}")
        return booking
