"""
services/booking/admin_router.py
Admin booking console: listing, stats, status changes, teacher
reassignment, rescheduling and deletion.

Every mutation writes a BookingHistory row and an AdminAuditLog entry.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.admin.audit import log_admin_action
from services.booking import service
from services.notification.service import notify_users
from shared.middleware.auth import require_admin
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingHistory,
    BookingModification,
    BookingNote,
    BookingNoteType,
    BookingStatus,
    TeacherProfile,
    TeacherSubject,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingStatusUpdateRequest,
    BulkStatusUpdateRequest,
    ReassignTeacherRequest,
    RescheduleRequest,
)
from shared.utils.responses import FieldValidationError, paginate, success

router = APIRouter(prefix="/admin/bookings", tags=["Admin Bookings"])

_STATUS_EVENTS = {
    BookingStatus.APPROVED: ("booking.approved", "Booking approved", "Booking {number} has been approved."),
    BookingStatus.CANCELLED: ("booking.cancelled", "Booking cancelled", "Booking {number} has been cancelled."),
}


async def _invalidate_stats(redis) -> None:
    await RedisCache(redis).delete(service.STATS_CACHE_KEY)


def _require_active(booking: Booking, action: str):
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot {action} a booking with status '{booking.status.value}'",
        )


async def _change_status(
    db: AsyncSession,
    booking: Booking,
    data: BookingStatusUpdateRequest,
    admin: User,
    history_notes: Optional[str] = None,
) -> BookingStatus:
    new_status = BookingStatus(data.status)
    previous = await service.apply_status_change(
        db, booking, new_status, admin, notes=data.notes, history_notes=history_notes
    )
    if data.notes:
        service.add_note(db, booking, BookingNoteType.ADMIN_NOTE, data.notes, admin)

    if data.notify_parties and new_status in _STATUS_EVENTS:
        event, title, body = _STATUS_EVENTS[new_status]
        await service.notify_parties(db, booking, event, title, body.format(number=booking.booking_number))
    return previous


# ── Listing & Stats ───────────────────────────────────────────

@router.get("")
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    scope: Optional[str] = Query(None, pattern=r"^(upcoming|pending|past|all)$"),
    teacher_id: Optional[UUID] = None,
    student_id: Optional[UUID] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking)
    if status_filter:
        query = query.where(Booking.status == status_filter)
    scoped = service.scope_filter(scope)
    if scoped is not None:
        query = query.where(scoped)
    if teacher_id:
        query = query.where(Booking.teacher_id == teacher_id)
    if student_id:
        query = query.where(Booking.student_id == student_id)
    if date_from:
        query = query.where(Booking.booking_date >= date_from)
    if date_to:
        query = query.where(Booking.booking_date <= date_to)
    if search:
        matching_users = select(User.id).where(
            or_(User.name.ilike(f"%{search}%"), User.email.ilike(f"%{search}%"))
        )
        query = query.where(
            or_(
                Booking.booking_number.ilike(f"%{search}%"),
                Booking.student_id.in_(matching_users),
                Booking.teacher_id.in_(matching_users),
            )
        )

    query = query.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
    rows, meta = await paginate(db, query, page, page_size)
    return success(await service.enrich(db, rows), meta=meta)


@router.get("/stats")
async def booking_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    stats = await RedisCache(redis).remember(
        service.STATS_CACHE_KEY, settings.REDIS_STATS_TTL, lambda: service.booking_stats(db)
    )
    return success(stats)


@router.get("/{booking_id}")
async def show_booking(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Booking with its full history and notes."""
    booking = await service.get_booking_or_404(db, booking_id)
    history = (await db.execute(
        select(BookingHistory)
        .where(BookingHistory.booking_id == booking.id)
        .order_by(BookingHistory.created_at.desc())
    )).scalars().all()
    notes = (await db.execute(
        select(BookingNote)
        .where(BookingNote.booking_id == booking.id)
        .order_by(BookingNote.created_at.desc())
    )).scalars().all()

    return success({
        "booking": (await service.enrich(db, [booking]))[0],
        "history": [
            {
                "id": h.id,
                "action": h.action,
                "previous_status": h.previous_status,
                "new_status": h.new_status,
                "performed_by_id": h.performed_by_id,
                "notes": h.notes,
                "metadata": h.history_metadata,
                "created_at": h.created_at,
            }
            for h in history
        ],
        "notes": [
            {
                "id": n.id,
                "note_type": n.note_type.value,
                "content": n.content,
                "created_by_id": n.created_by_id,
                "created_at": n.created_at,
            }
            for n in notes
        ],
    })


# ── Status ────────────────────────────────────────────────────

@router.patch("/{booking_id}/status")
async def update_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Set any status. Approval stamps approver; cancel/reject stamps canceller
    and refunds the student; completion credits the teacher.
    """
    booking = await service.get_booking_or_404(db, booking_id)
    new_status = BookingStatus(data.status)
    if booking.status == new_status:
        raise FieldValidationError({"status": [f"Booking is already {new_status.value}."]})

    previous = await _change_status(db, booking, data, current_user)
    log_admin_action(
        db, current_user, "booking.status_changed", "booking", booking.id,
        notes=data.notes,
        payload={"from": previous.value, "to": new_status.value},
        request=request,
    )
    await db.flush()
    await _invalidate_stats(redis)
    return success((await service.enrich(db, [booking]))[0], "Booking status updated")


@router.post("/bulk-status")
async def bulk_update_status(
    data: BulkStatusUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    new_status = BookingStatus(data.status)
    bookings = (await db.execute(select(Booking).where(Booking.id.in_(data.booking_ids)))).scalars().all()
    found = {b.id for b in bookings}

    updated, unchanged, blocked = [], [], []
    for booking in bookings:
        if booking.status == new_status:
            unchanged.append(booking.id)
            continue
        reason = service.status_change_blocker(booking, new_status)
        if reason:
            blocked.append({"id": booking.id, "reason": reason})
            continue
        old = booking.status
        await _change_status(
            db, booking, data, current_user,
            history_notes=f"Bulk status change from {old.value} to {new_status.value}",
        )
        updated.append(booking.id)

    log_admin_action(
        db, current_user, "booking.bulk_status_changed", "booking", None,
        notes=data.notes,
        payload={"to": new_status.value, "booking_ids": [str(i) for i in updated]},
        request=request,
    )
    await db.flush()
    await _invalidate_stats(redis)
    return success(
        {
            "updated": len(updated),
            "unchanged": unchanged,
            "blocked": blocked,
            "not_found": [i for i in data.booking_ids if i not in found],
        },
        f"{len(updated)} booking(s) updated",
    )


# ── Reassignment ──────────────────────────────────────────────

async def _available_teachers(db: AsyncSession, booking: Booking) -> list[dict]:
    """Verified teachers of the booking's subject who are free for its slot."""
    result = await db.execute(
        select(User, TeacherProfile)
        .join(TeacherProfile, TeacherProfile.user_id == User.id)
        .join(TeacherSubject, TeacherSubject.teacher_id == User.id)
        .where(
            TeacherSubject.subject_id == booking.subject_id,
            User.id != booking.teacher_id,
            User.role == UserRole.TEACHER,
            User.is_active == True,  # noqa: E712
            User.deleted_at.is_(None),
            TeacherProfile.verified == True,  # noqa: E712
        )
        .order_by(User.name)
    )
    teachers = []
    for user, profile in result.all():
        if await service.is_slot_free(db, user.id, booking.booking_date, booking.start_time, booking.end_time):
            teachers.append({
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "hourly_rate": profile.hourly_rate,
                "experience_years": profile.experience_years,
            })
    return teachers


@router.get("/{booking_id}/available-teachers")
async def available_teachers(
    booking_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    booking = await service.get_booking_or_404(db, booking_id)
    return success(await _available_teachers(db, booking))


@router.post("/{booking_id}/reassign")
async def reassign_teacher(
    booking_id: UUID,
    data: ReassignTeacherRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    booking = await service.get_booking_or_404(db, booking_id)
    _require_active(booking, "reassign")
    if data.new_teacher_id == booking.teacher_id:
        raise FieldValidationError({"new_teacher_id": ["This teacher is already assigned to the booking."]})

    available = {t["id"] for t in await _available_teachers(db, booking)}
    if data.new_teacher_id not in available:
        raise FieldValidationError({"new_teacher_id": ["The selected teacher is not available for this booking."]})

    old_teacher_id = booking.teacher_id
    new_teacher = await db.get(User, data.new_teacher_id)
    old_teacher = await db.get(User, old_teacher_id)
    booking.teacher_id = new_teacher.id

    note = data.admin_note or f"Teacher reassigned from {old_teacher.name if old_teacher else old_teacher_id} to {new_teacher.name}"
    service.log_history(
        db, booking, "teacher_reassigned", current_user,
        previous_status=booking.status, new_status=booking.status,
        notes=note,
        metadata={"old_teacher_id": str(old_teacher_id), "new_teacher_id": str(new_teacher.id)},
    )
    service.add_note(db, booking, BookingNoteType.REASSIGNMENT_NOTE, note, current_user)
    log_admin_action(
        db, current_user, "booking.teacher_reassigned", "booking", booking.id,
        notes=data.admin_note,
        payload={"old_teacher_id": str(old_teacher_id), "new_teacher_id": str(new_teacher.id)},
        request=request,
    )

    if data.notify_parties:
        when = f"{booking.booking_date.isoformat()} at {booking.start_time.strftime('%H:%M')}"
        await notify_users(
            db, [old_teacher_id], event="booking.teacher_removed",
            title="Booking reassigned",
            message=f"Booking {booking.booking_number} on {when} has been reassigned to another teacher.",
            data={"booking_number": booking.booking_number}, audience="teacher",
        )
        await notify_users(
            db, [new_teacher.id], event="booking.teacher_assigned",
            title="New booking assigned",
            message=f"You have been assigned booking {booking.booking_number} on {when}.",
            data={"booking_number": booking.booking_number}, audience="teacher",
        )
        await notify_users(
            db, [booking.student_id], event="booking.teacher_changed",
            title="Your teacher has changed",
            message=f"{new_teacher.name} will now teach your session {booking.booking_number} on {when}.",
            data={"booking_number": booking.booking_number, "teacher_name": new_teacher.name},
            audience="student",
        )

    await db.flush()
    await _invalidate_stats(redis)
    return success((await service.enrich(db, [booking]))[0], "Teacher reassigned")


# ── Rescheduling ──────────────────────────────────────────────

@router.get("/{booking_id}/available-slots")
async def available_slots(
    booking_id: UUID,
    day: date = Query(..., alias="date"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Free slots for the booking's teacher and duration; the booking's own slot counts as free."""
    booking = await service.get_booking_or_404(db, booking_id)
    if day <= date.today():
        return success([])
    return success(await service.available_slots(
        db, booking.teacher_id, day, booking.duration_minutes, exclude_booking_id=booking.id
    ))


@router.post("/{booking_id}/reschedule")
async def reschedule_booking(
    booking_id: UUID,
    data: RescheduleRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    booking = await service.get_booking_or_404(db, booking_id)
    _require_active(booking, "reschedule")

    start = service.parse_hhmm(data.new_time)
    try:
        end = service.end_time_for(start, booking.duration_minutes)
    except ValueError as e:
        raise FieldValidationError({"new_time": [str(e)]})
    if not await service.is_slot_free(
        db, booking.teacher_id, data.new_date, start, end, exclude_booking_id=booking.id
    ):
        raise FieldValidationError({"new_time": ["The selected time slot is not available."]})

    old = {"date": booking.booking_date.isoformat(), "start_time": booking.start_time.strftime("%H:%M")}
    booking.booking_date = data.new_date
    booking.start_time = start
    booking.end_time = end
    new = {"date": data.new_date.isoformat(), "start_time": data.new_time}

    note = f"Rescheduled from {old['date']} {old['start_time']} to {new['date']} {new['start_time']}"
    if data.reason:
        note = f"{note}. Reason: {data.reason}"
    service.log_history(
        db, booking, "rescheduled", current_user,
        previous_status=booking.status, new_status=booking.status,
        notes=note, metadata={"old": old, "new": new},
    )
    service.add_note(db, booking, BookingNoteType.RESCHEDULE_NOTE, note, current_user)
    log_admin_action(
        db, current_user, "booking.rescheduled", "booking", booking.id,
        notes=data.reason, payload={"old": old, "new": new}, request=request,
    )

    if data.notify_parties:
        await service.notify_parties(
            db, booking, "booking.rescheduled",
            "Booking rescheduled",
            f"Booking {booking.booking_number} has been moved to {new['date']} at {new['start_time']}.",
        )

    await db.flush()
    await _invalidate_stats(redis)
    return success((await service.enrich(db, [booking]))[0], "Booking rescheduled")


# ── Deletion ──────────────────────────────────────────────────

@router.delete("/{booking_id}")
async def delete_booking(
    booking_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Hard delete with notes, history and change requests. Ledger rows keep their amounts but lose the link."""
    booking = await service.get_booking_or_404(db, booking_id)
    number = booking.booking_number

    await db.execute(delete(BookingNote).where(BookingNote.booking_id == booking.id))
    await db.execute(delete(BookingHistory).where(BookingHistory.booking_id == booking.id))
    await db.execute(delete(BookingModification).where(BookingModification.booking_id == booking.id))
    log_admin_action(
        db, current_user, "booking.deleted", "booking", booking.id,
        payload={"booking_number": number, "status": booking.status.value}, request=request,
    )
    await db.delete(booking)
    await db.flush()
    await _invalidate_stats(redis)
    return success(None, f"Booking {number} deleted")
