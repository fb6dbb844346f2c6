"""
services/admin/router.py
Admin-only endpoints: user directory, role assignment, verification,
and the immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.lifecycle import TERMINAL_STATUSES
from services.booking.policy import service_type_for
from services.identity.resolver import ActorContext, RoleResolver
from shared.middleware.auth import get_resolver, require_admin
from shared.models.models import (
    AdminAuditLog,
    Booking,
    Profile,
    User,
    UserRole,
    UserRoleAssignment,
)
from shared.schemas.schemas import (
    AdminUserResponse,
    MessageResponse,
    RoleUpdateRequest,
    VerifyUserRequest,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: ActorContext,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)


async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ── User Directory ─────────────────────────────────────────────────────────────

@router.get("/users", response_model=list[AdminUserResponse])
async def list_users(
    role: UserRole = Query(None, description="Only users resolving to this role"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: ActorContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Accounts merged with their profile and role. No role row reads as `user`."""
    query = (
        select(User, Profile, UserRoleAssignment.role)
        .outerjoin(Profile, Profile.id == User.id)
        .outerjoin(UserRoleAssignment, UserRoleAssignment.user_id == User.id)
        .order_by(User.created_at.desc())
    )
    if role is not None:
        role = UserRole(role)
        if role is UserRole.USER:
            query = query.where(or_(
                UserRoleAssignment.role.is_(None),
                UserRoleAssignment.role == UserRole.USER,
            ))
        else:
            query = query.where(UserRoleAssignment.role == role)

    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return [
        AdminUserResponse(
            id=user.id,
            email=user.email,
            full_name=(profile.full_name if profile else None) or user.name,
            is_verified=bool(profile and profile.is_verified),
            role=assigned or UserRole.USER,
            created_at=user.created_at,
        )
        for user, profile, assigned in result.all()
    ]


# ── Role Assignment ────────────────────────────────────────────────────────────

@router.put("/users/{user_id}/role", response_model=MessageResponse)
async def set_user_role(
    user_id: UUID,
    data: RoleUpdateRequest,
    request: Request,
    current_user: ActorContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    resolver: RoleResolver = Depends(get_resolver),
):
    """
    Upsert the user's role row. Refused while the user still holds open
    bookings their new role could not serve.
    """
    new_role = UserRole(data.role)
    if user_id == current_user.id and new_role is not UserRole.ADMIN:
        raise HTTPException(status_code=400, detail="Admins cannot demote themselves")

    await _get_user_or_404(db, user_id)
    assignment = await db.scalar(
        select(UserRoleAssignment).where(UserRoleAssignment.user_id == user_id)
    )
    old_role = UserRole(assignment.role) if assignment else UserRole.USER
    if old_role is new_role:
        return MessageResponse(message=f"Role is already {new_role.value}")

    open_bookings = select(func.count()).select_from(Booking).where(
        Booking.assigned_to == user_id,
        Booking.status.not_in(list(TERMINAL_STATUSES)),
    )
    new_service = service_type_for(new_role)
    if new_service is not None:
        open_bookings = open_bookings.where(Booking.service_type != new_service)
    held = await db.scalar(open_bookings)
    if held:
        raise HTTPException(
            status_code=409,
            detail=f"User holds {held} open booking(s); reassign them first",
        )

    if assignment:
        assignment.role = new_role
    else:
        db.add(UserRoleAssignment(user_id=user_id, role=new_role))

    await _log(db, current_user, "SET_ROLE", "User", str(user_id),
               {"from": old_role.value, "to": new_role.value}, request)
    await db.commit()
    await resolver.invalidate(user_id)
    return MessageResponse(message=f"Role changed to {new_role.value}")


# ── Verification ───────────────────────────────────────────────────────────────

@router.post("/users/{user_id}/verify", response_model=MessageResponse)
async def verify_user(
    user_id: UUID,
    data: VerifyUserRequest,
    request: Request,
    current_user: ActorContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    resolver: RoleResolver = Depends(get_resolver),
):
    """Set or clear the verified badge on a user's profile."""
    user = await _get_user_or_404(db, user_id)
    profile = await db.scalar(select(Profile).where(Profile.id == user_id))
    if not profile:
        profile = Profile(id=user_id, full_name=user.name)
        db.add(profile)

    profile.is_verified = data.is_verified
    await _log(db, current_user, "VERIFY_USER" if data.is_verified else "UNVERIFY_USER",
               "User", str(user_id), {"is_verified": data.is_verified}, request)
    await db.commit()
    await resolver.invalidate(user_id)
    return MessageResponse(message="User verified" if data.is_verified else "Verification removed")


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: str = Query(None, description="Filter by action type e.g. SET_ROLE"),
    entity_type: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: ActorContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log: append-only, never editable."""
    query = (
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .order_by(AdminAuditLog.created_at.desc())
    )
    count_query = select(func.count()).select_from(AdminAuditLog)
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
        count_query = count_query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)
        count_query = count_query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(count_query)
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            {
                "id": str(log.id),
                "admin_name": admin.name,
                "admin_email": admin.email,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "payload": log.payload,
                "ip_address": log.ip_address,
                "created_at": log.created_at.isoformat(),
            }
            for log, admin in result.all()
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
