"""
services/user/router.py
The caller's own profile and the family profiles they book on behalf of.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.identity.resolver import ActorContext, RoleResolver
from shared.middleware.auth import get_actor, get_current_user, get_resolver
from shared.models.models import FamilyProfile, Profile, User
from shared.schemas.schemas import (
    ActorResponse,
    FamilyProfileCreate,
    FamilyProfileResponse,
    FamilyProfileUpdate,
    MessageResponse,
    ProfileUpdateRequest,
)

router = APIRouter(prefix="/users", tags=["Users"])


async def _get_family_profile_or_404(
    db: AsyncSession,
    profile_id: UUID,
    owner: User,
) -> FamilyProfile:
    """Foreign ids look exactly like missing ones."""
    family = await db.scalar(
        select(FamilyProfile).where(
            FamilyProfile.id == profile_id,
            FamilyProfile.user_id == owner.id,
        )
    )
    if not family:
        raise HTTPException(status_code=404, detail="Family profile not found")
    return family


@router.get("/me", response_model=ActorResponse)
async def get_me(actor: ActorContext = Depends(get_actor)):
    """Return the currently authenticated actor with role and profile."""
    return ActorResponse.model_validate(actor)


@router.put("/me", response_model=ActorResponse)
async def update_me(
    data: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    resolver: RoleResolver = Depends(get_resolver),
):
    """
    Update profile fields (full_name, phone, zodiac sign and natal details).
    Only non-None fields in the request body are updated.
    """
    updates = data.model_dump(exclude_none=True)
    if updates:
        profile = await db.scalar(select(Profile).where(Profile.id == current_user.id))
        if not profile:
            profile = Profile(id=current_user.id)
            db.add(profile)
        for field, value in updates.items():
            setattr(profile, field, value)
        await db.commit()
        await resolver.invalidate(current_user.id)

    actor = await resolver.resolve(current_user.id, refresh=True)
    return ActorResponse.model_validate(actor)


# ── Family Profiles ───────────────────────────────────────────

@router.get("/me/family-profiles", response_model=list[FamilyProfileResponse])
async def list_family_profiles(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(FamilyProfile)
        .where(FamilyProfile.user_id == current_user.id)
        .order_by(FamilyProfile.created_at.desc())
    )
    return [FamilyProfileResponse.model_validate(f) for f in result.scalars()]


@router.post(
    "/me/family-profiles",
    response_model=FamilyProfileResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_family_profile(
    data: FamilyProfileCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Save natal details for a family member; usable as a booking prefill."""
    family = FamilyProfile(user_id=current_user.id, **data.model_dump())
    db.add(family)
    await db.commit()
    await db.refresh(family)
    return FamilyProfileResponse.model_validate(family)


@router.put("/me/family-profiles/{profile_id}", response_model=FamilyProfileResponse)
async def update_family_profile(
    profile_id: UUID,
    data: FamilyProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    family = await _get_family_profile_or_404(db, profile_id, current_user)
    for field, value in data.model_dump(exclude_unset=True).items():
        if field == "full_name" and value is None:
            continue
        setattr(family, field, value)

    await db.commit()
    await db.refresh(family)
    return FamilyProfileResponse.model_validate(family)


@router.delete("/me/family-profiles/{profile_id}", response_model=MessageResponse)
async def delete_family_profile(
    profile_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings made for this profile keep their copied details."""
    family = await _get_family_profile_or_404(db, profile_id, current_user)
    await db.delete(family)
    await db.commit()
    return MessageResponse(message="Family profile deleted")
