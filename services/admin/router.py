"""
services/admin/router.py
Admin console: platform dashboard, user moderation and the audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import log_admin_action
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    Booking,
    PayoutRequest,
    PayoutStatus,
    RefreshToken,
    StudentWallet,
    TeacherProfile,
    TeacherWallet,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    UserRole,
    VerificationRequest,
    VerificationStatus,
)
from shared.schemas.schemas import AdminUserStatusRequest, UserResponse
from shared.utils.responses import page_meta, success

router = APIRouter(prefix="/admin", tags=["Admin"])


async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    user = await db.scalar(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ── Dashboard ─────────────────────────────────────────────────

@router.get("/dashboard")
async def dashboard(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide counts. All queries run against the primary DB."""
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    users_by_role = dict((await db.execute(
        select(User.role, func.count(User.id)).where(User.deleted_at.is_(None)).group_by(User.role)
    )).all())
    bookings_by_status = dict((await db.execute(
        select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
    )).all())

    pending_verifications = await db.scalar(
        select(func.count(VerificationRequest.id)).where(
            VerificationRequest.status.in_([VerificationStatus.PENDING, VerificationStatus.LIVE_VIDEO]),
            VerificationRequest.submitted_at.is_not(None),
        )
    )
    verified_teachers = await db.scalar(
        select(func.count(TeacherProfile.id)).where(TeacherProfile.verified == True)  # noqa: E712
    )
    pending_payouts = (await db.execute(
        select(func.count(PayoutRequest.id), func.coalesce(func.sum(PayoutRequest.amount), 0))
        .where(PayoutRequest.status == PayoutStatus.PENDING)
    )).one()

    student_balance = await db.scalar(select(func.coalesce(func.sum(StudentWallet.balance), 0)))
    teacher_balance = await db.scalar(select(func.coalesce(func.sum(TeacherWallet.balance), 0)))
    total_withdrawn = await db.scalar(select(func.coalesce(func.sum(TeacherWallet.total_withdrawn), 0)))

    topups_today = await db.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.transaction_type == TransactionType.CREDIT,
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.created_at >= today_start,
        )
    )
    bookings_today = await db.scalar(
        select(func.count(Booking.id)).where(Booking.created_at >= today_start)
    )

    return success({
        "users": {
            "total": sum(users_by_role.values()),
            **{role.value: users_by_role.get(role, 0) for role in UserRole},
        },
        "bookings": {
            "total": sum(bookings_by_status.values()),
            "created_today": bookings_today or 0,
            **{s.value: c for s, c in bookings_by_status.items()},
        },
        "verification": {
            "pending": pending_verifications or 0,
            "verified_teachers": verified_teachers or 0,
        },
        "payouts": {
            "pending_count": pending_payouts[0] or 0,
            "pending_amount": pending_payouts[1] or 0,
        },
        "wallets": {
            "student_balance": student_balance or 0,
            "teacher_balance": teacher_balance or 0,
            "total_withdrawn": total_withdrawn or 0,
            "topups_today": topups_today or 0,
        },
    })


# ── User Moderation ───────────────────────────────────────────

@router.get("/users")
async def list_users(
    role: Optional[UserRole] = Query(None),
    is_active: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=100, description="Name, email or phone"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(User).where(User.deleted_at.is_(None))
    if role:
        query = query.where(User.role == role)
    if is_active is not None:
        query = query.where(User.is_active == is_active)
    if search:
        like = f"%{search}%"
        query = query.where(or_(User.name.ilike(like), User.email.ilike(like), User.phone.ilike(like)))

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(User.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return success(
        [UserResponse.model_validate(u) for u in result.scalars().all()],
        meta=page_meta(total, page, page_size),
    )


@router.get("/users/{user_id}")
async def get_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user_or_404(db, user_id)
    data = UserResponse.model_validate(user).model_dump()
    data["last_login_at"] = user.last_login_at
    data["booking_count"] = await db.scalar(
        select(func.count(Booking.id)).where(or_(Booking.student_id == user.id, Booking.teacher_id == user.id))
    ) or 0
    return success(data)


@router.post("/users/{user_id}/suspend")
async def suspend_user(
    user_id: UUID,
    request: Request,
    data: Optional[AdminUserStatusRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a user account and revoke its refresh tokens. Admins cannot be suspended."""
    user = await _get_user_or_404(db, user_id)
    if user.is_admin:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if not user.is_active:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.is_active = False
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user.id, RefreshToken.is_revoked == False)  # noqa: E712
        .values(is_revoked=True)
    )
    log_admin_action(db, current_user, "suspend_user", "user", user.id,
                     notes=data.reason if data else None, request=request)
    await db.flush()
    return success(UserResponse.model_validate(user), "User suspended")


@router.post("/users/{user_id}/activate")
async def activate_user(
    user_id: UUID,
    request: Request,
    data: Optional[AdminUserStatusRequest] = None,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Re-activate a suspended user account."""
    user = await _get_user_or_404(db, user_id)
    if user.is_active:
        raise HTTPException(status_code=409, detail="User is already active")

    user.is_active = True
    log_admin_action(db, current_user, "activate_user", "user", user.id,
                     notes=data.reason if data else None, request=request)
    await db.flush()
    return success(UserResponse.model_validate(user), "User activated")


# ── Audit Log ─────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action e.g. approve_verification"),
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    admin_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log: append-only, never editable."""
    query = select(AdminAuditLog, User).outerjoin(User, User.id == AdminAuditLog.admin_id)
    if action:
        query = query.where(AdminAuditLog.action == action.lower())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)
    if entity_id:
        query = query.where(AdminAuditLog.entity_id == entity_id)
    if admin_id:
        query = query.where(AdminAuditLog.admin_id == admin_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(AdminAuditLog.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return success([
        {
            "id": log.id,
            "admin_name": admin.name if admin else "System",
            "admin_email": admin.email if admin else None,
            "action": log.action,
            "entity_type": log.entity_type,
            "entity_id": log.entity_id,
            "notes": log.notes,
            "payload": log.payload,
            "ip_address": log.ip_address,
            "created_at": log.created_at,
        }
        for log, admin in result.all()
    ], meta=page_meta(total, page, page_size))
