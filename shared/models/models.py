"""
shared/models/models.py
All SQLAlchemy ORM models for the Astro Booking Platform.
UUID primary keys throughout; portable column types (PostgreSQL and SQLite).
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "user"
    ASTROLOGER = "astrologer"
    PRIEST = "priest"
    ADMIN = "admin"


class ServiceType(str, PyEnum):
    CONSULTATION = "consultation"
    POOJA = "pooja"


class BookingStatus(str, PyEnum):
    PENDING = "pending"        # Initial, unclaimed
    ASSIGNED = "assigned"
    CONFIRMED = "confirmed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"    # Terminal
    CANCELLED = "cancelled"    # Terminal


class OAuthProvider(str, PyEnum):
    GOOGLE = "google"


class FamilyRelation(str, PyEnum):
    SPOUSE = "Spouse"
    CHILD = "Child"
    PARENT = "Parent"
    SIBLING = "Sibling"
    OTHER = "Other"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Identity record created on first OAuth sign-in. Carries no role."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    oauth_provider: Mapped[OAuthProvider] = mapped_column(
        Enum(OAuthProvider), nullable=False, default=OAuthProvider.GOOGLE
    )
    oauth_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    profile: Mapped[Optional["Profile"]] = relationship(back_populates="user", uselist=False)
    role_assignment: Mapped[Optional["UserRoleAssignment"]] = relationship(
        back_populates="user", uselist=False
    )
    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(back_populates="user")
    family_profiles: Mapped[List["FamilyProfile"]] = relationship(back_populates="user")

    __table_args__ = (
        UniqueConstraint("oauth_provider", "oauth_id", name="uq_oauth_provider_id"),
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Profile(TimestampMixin, Base):
    """
    Display/profile data for an account. Fetched independently of the role,
    so a missing or broken profile never blocks sign-in.
    """
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    zodiac_sign: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    # Own natal details, same shape as a family profile
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    birth_time: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    birth_place: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship(back_populates="profile")


class UserRoleAssignment(TimestampMixin, Base):
    """At most one role row per user. No row means the default `user` tier."""
    __tablename__ = "user_roles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), nullable=False, default=UserRole.USER)

    user: Mapped["User"] = relationship(back_populates="role_assignment")

    __table_args__ = (Index("ix_user_roles_role", "role"),)


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user: Mapped["User"] = relationship(back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class FamilyProfile(TimestampMixin, Base):
    """Natal details a user keeps for a dependent. Visible to its owner only."""
    __tablename__ = "family_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    relation: Mapped[Optional[FamilyRelation]] = mapped_column(Enum(FamilyRelation), nullable=True)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    birth_time: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # "7:05 AM"
    birth_place: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    user: Mapped["User"] = relationship(back_populates="family_profiles")

    __table_args__ = (Index("ix_family_profiles_user_id", "user_id"),)


class Booking(TimestampMixin, Base):
    """
    A consultation or pooja request.
    Status transitions: pending → assigned | confirmed → accepted | rejected
    → completed, or cancelled from any pre-terminal state.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    service_type: Mapped[ServiceType] = mapped_column(Enum(ServiceType), nullable=False)
    requester_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )  # Null for anonymous submissions
    family_profile_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("family_profiles.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    # Contact
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Categorical
    problem_category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    dependent_category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    pooja_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    preferred_slot: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Natal
    dob: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    birth_time: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    birth_state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(back_populates="booking")

    __table_args__ = (
        Index("ix_bookings_requester_id", "requester_id"),
        Index("ix_bookings_service_assigned", "service_type", "assigned_to"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_created_at", "created_at"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status and assignment changes."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")

    __table_args__ = (Index("ix_booking_audit_booking_id", "booking_id"),)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
