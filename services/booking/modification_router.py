"""
services/booking/modification_router.py
Reschedule and rebook requests on a booking.

Registered before the participant booking router so that
/bookings/modifications is not read as a booking id.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.booking import modifications, service
from shared.middleware.auth import get_current_user, require_booker, require_teacher
from shared.models.models import BookingModification, ModificationStatus, ModificationType, User
from shared.schemas.schemas import (
    ModificationAnswerRequest,
    RebookModificationRequest,
    RescheduleModificationRequest,
)
from shared.utils.responses import paginate, success

router = APIRouter(prefix="/bookings", tags=["Booking Modifications"])


async def _requested_booking(db: AsyncSession, booking_id: UUID, user: User):
    booking = await service.get_booking_or_404(db, booking_id)
    if not await modifications.can_request(db, user, booking):
        raise HTTPException(status_code=403, detail="Only the student or their guardian can change this booking")
    return booking


async def _answerable(db: AsyncSession, modification_id: UUID, teacher: User) -> BookingModification:
    modification = await modifications.get_modification_or_404(db, modification_id)
    if modification.teacher_id != teacher.id:
        raise HTTPException(status_code=403, detail="This request is addressed to another teacher")
    return modification


async def _respond(db: AsyncSession, modification: BookingModification, message: Optional[str] = None, **extra) -> dict:
    await db.flush()
    return success((await modifications.enrich(db, [modification]))[0], message, **extra)


# ── Requests ──────────────────────────────────────────────────

@router.get("/modifications")
async def list_modifications(
    status_filter: Optional[ModificationStatus] = Query(None, alias="status"),
    modification_type: Optional[ModificationType] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Requests the caller raised (children's for guardians) or must answer (teachers)."""
    query = select(BookingModification)
    visible = await modifications.visibility_filter(db, current_user)
    if visible is not None:
        query = query.where(visible)
    if status_filter:
        query = query.where(BookingModification.status == status_filter)
    if modification_type:
        query = query.where(BookingModification.modification_type == modification_type)

    query = query.order_by(BookingModification.created_at.desc())
    rows, meta = await paginate(db, query, page, page_size)
    return success(await modifications.enrich(db, rows), meta=meta)


@router.get("/{booking_id}/modifications")
async def booking_modifications(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await service.get_booking_or_404(db, booking_id)
    if not await service.can_view(db, current_user, booking):
        raise HTTPException(status_code=403, detail="Access denied")
    result = await db.execute(
        select(BookingModification)
        .where(BookingModification.booking_id == booking.id)
        .order_by(BookingModification.created_at.desc())
    )
    pending = await modifications.pending_request_for(db, booking.id)
    return success(
        await modifications.enrich(db, list(result.scalars().all())),
        has_pending_request=pending is not None,
    )


@router.post("/{booking_id}/modifications/reschedule", status_code=status.HTTP_201_CREATED)
async def request_reschedule(
    booking_id: UUID,
    data: RescheduleModificationRequest,
    current_user: User = Depends(require_booker),
    db: AsyncSession = Depends(get_db),
):
    """Ask the booking's teacher to move the session to another date and time."""
    booking = await _requested_booking(db, booking_id, current_user)
    modification = await modifications.create_request(
        db, booking, ModificationType.RESCHEDULE, data, current_user
    )
    return await _respond(db, modification, "Reschedule request sent")


@router.post("/{booking_id}/modifications/rebook", status_code=status.HTTP_201_CREATED)
async def request_rebook(
    booking_id: UUID,
    data: RebookModificationRequest,
    current_user: User = Depends(require_booker),
    db: AsyncSession = Depends(get_db),
):
    """
    Ask to move the session to another teacher and/or subject.
    The teacher who would take the session answers; any price difference
    is charged or refunded on approval.
    """
    booking = await _requested_booking(db, booking_id, current_user)
    modification = await modifications.create_request(
        db, booking, ModificationType.REBOOK, data, current_user
    )
    return await _respond(db, modification, "Rebook request sent")


@router.post("/modifications/{modification_id}/cancel")
async def cancel_modification(
    modification_id: UUID,
    current_user: User = Depends(require_booker),
    db: AsyncSession = Depends(get_db),
):
    modification = await modifications.get_modification_or_404(db, modification_id)
    booking = await service.get_booking_or_404(db, modification.booking_id)
    if not await modifications.can_request(db, current_user, booking):
        raise HTTPException(status_code=403, detail="Access denied")
    await modifications.cancel(db, modification, current_user)
    return await _respond(db, modification, "Request withdrawn")


# ── Teacher Answers ───────────────────────────────────────────

@router.post("/modifications/{modification_id}/approve")
async def approve_modification(
    modification_id: UUID,
    data: ModificationAnswerRequest,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    modification = await _answerable(db, modification_id, current_user)
    booking = await modifications.approve(db, modification, current_user, data.teacher_notes)
    await db.flush()
    await RedisCache(redis).delete(service.STATS_CACHE_KEY)
    return await _respond(
        db, modification, "Request approved",
        booking=(await service.enrich(db, [booking]))[0],
    )


@router.post("/modifications/{modification_id}/reject")
async def reject_modification(
    modification_id: UUID,
    data: ModificationAnswerRequest,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    modification = await _answerable(db, modification_id, current_user)
    await modifications.reject(db, modification, current_user, data.teacher_notes)
    return await _respond(db, modification, "Request rejected")
