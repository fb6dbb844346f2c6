"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from shared.models.models import (
    BookingStatus,
    FamilyRelation,
    ServiceType,
    UserRole,
)

BIRTH_TIME_PATTERN = r"^(1[0-2]|[1-9]):[0-5]\d (AM|PM)$"


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ErrorDetail(BaseSchema):
    code: str
    message: str


class OperationResult(BaseSchema):
    """Uniform envelope for every booking operation."""
    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorDetail] = None
    summary_generated: Optional[bool] = None
    enrichment_error: Optional[str] = None


# ── Auth ──────────────────────────────────────────────────────

class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class ProfileResponse(BaseSchema):
    id: uuid.UUID
    full_name: Optional[str]
    phone: Optional[str]
    zodiac_sign: Optional[str] = None
    birth_date: Optional[date] = None
    birth_time: Optional[str] = None
    birth_place: Optional[str] = None
    is_verified: bool


class ProfileUpdateRequest(BaseSchema):
    full_name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = Field(None, pattern=r"^\d{10}$")
    zodiac_sign: Optional[str] = Field(None, max_length=20)
    birth_date: Optional[date] = None
    birth_time: Optional[str] = Field(None, pattern=BIRTH_TIME_PATTERN)
    birth_place: Optional[str] = Field(None, max_length=100)


class ActorResponse(BaseSchema):
    id: uuid.UUID
    email: Optional[str] = None
    role: UserRole
    profile: Optional[ProfileResponse] = None
    profile_complete: bool = False


class AuthCallbackResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    actor: ActorResponse


# ── Family Profiles ───────────────────────────────────────────

class FamilyProfileCreate(BaseSchema):
    full_name: str = Field(..., min_length=1, max_length=255)
    relation: Optional[FamilyRelation] = None
    birth_date: Optional[date] = None
    birth_time: Optional[str] = Field(None, pattern=BIRTH_TIME_PATTERN)
    birth_place: Optional[str] = Field(None, max_length=100)


class FamilyProfileUpdate(BaseSchema):
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    relation: Optional[FamilyRelation] = None
    birth_date: Optional[date] = None
    birth_time: Optional[str] = Field(None, pattern=BIRTH_TIME_PATTERN)
    birth_place: Optional[str] = Field(None, max_length=100)


class FamilyProfileResponse(FamilyProfileCreate):
    id: uuid.UUID
    user_id: uuid.UUID
    created_at: datetime
    updated_at: datetime


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    service_type: ServiceType
    family_profile_id: Optional[uuid.UUID] = None
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=r"^\d{10}$")
    problem_category: Optional[str] = Field(None, max_length=50)
    dependent_category: Optional[str] = Field(None, max_length=50)
    pooja_type: Optional[str] = Field(None, max_length=100)
    preferred_slot: Optional[str] = Field(None, max_length=50)
    dob: Optional[date] = None
    birth_time: Optional[str] = Field(None, pattern=BIRTH_TIME_PATTERN)
    birth_state: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def check_service_fields(self) -> "BookingCreateRequest":
        if self.service_type == ServiceType.CONSULTATION and not self.problem_category:
            raise ValueError("problem_category is required for a consultation")
        if self.service_type == ServiceType.POOJA and not self.pooja_type:
            raise ValueError("pooja_type is required for a pooja")
        if not self.name and not self.family_profile_id:
            raise ValueError("name is required unless booking for a family profile")
        return self


class BookingRecord(BaseSchema):
    """Full booking row. Used internally and for change events; never sent unredacted."""
    id: uuid.UUID
    service_type: ServiceType
    requester_id: Optional[uuid.UUID] = None
    family_profile_id: Optional[uuid.UUID] = None
    status: BookingStatus
    assigned_to: Optional[uuid.UUID] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    problem_category: Optional[str] = None
    dependent_category: Optional[str] = None
    pooja_type: Optional[str] = None
    preferred_slot: Optional[str] = None
    dob: Optional[date] = None
    birth_time: Optional[str] = None
    birth_state: Optional[str] = None
    description: Optional[str] = None
    ai_summary: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BookingView(BookingRecord):
    """A booking as one viewer may see it."""
    detail_visible: bool = False


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus


class BookingAssignRequest(BaseSchema):
    assignee_id: uuid.UUID


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class BookingChangeEvent(BaseSchema):
    event_type: str = Field(..., pattern="^(insert|update|delete)$")
    row: BookingRecord


# ── Admin ─────────────────────────────────────────────────────

class AdminUserResponse(BaseSchema):
    id: uuid.UUID
    email: str
    full_name: Optional[str]
    is_verified: bool
    role: UserRole
    created_at: datetime


class RoleUpdateRequest(BaseSchema):
    role: UserRole


class VerifyUserRequest(BaseSchema):
    is_verified: bool = True


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True
