"""
services/booking/router.py
Participant booking endpoints.

States: pending → approved | rejected → upcoming → completed | missed
        (cancelled from pending, approved or upcoming)
No transition happens on its own; every change is a teacher, student,
guardian or admin action.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking import service
from services.wallet import ledger
from shared.middleware.auth import get_current_user, require_booker, require_teacher
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingNoteType,
    BookingStatus,
    StudentProfile,
    Subject,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingApproveRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingRejectRequest,
)
from shared.utils.responses import FieldValidationError, paginate, success

router = APIRouter(prefix="/bookings", tags=["Bookings"])


async def _own_booking(db: AsyncSession, booking_id: UUID, teacher: User) -> Booking:
    booking = await service.get_booking_or_404(db, booking_id)
    if booking.teacher_id != teacher.id:
        raise HTTPException(status_code=403, detail="This booking is assigned to another teacher")
    return booking


def _require_status(booking: Booking, allowed: tuple, action: str):
    if booking.status not in allowed:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot {action} a booking with status '{booking.status.value}'",
        )


async def _respond(db: AsyncSession, booking: Booking, message: Optional[str] = None) -> dict:
    await db.flush()
    return success((await service.enrich(db, [booking]))[0], message)


# ── Create ────────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_booker),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a session with a verified teacher.
    1. Resolve the student (a guardian books on behalf of a linked child)
    2. Check subject, availability window and overlaps
    3. Charge the student's wallet (hourly_rate × duration)
    4. Create the booking as pending and notify the teacher
    """
    if current_user.role == UserRole.GUARDIAN:
        if not data.student_id:
            raise FieldValidationError({"student_id": ["Select which child this booking is for."]})
        linked = await db.scalar(
            select(StudentProfile.id).where(
                StudentProfile.user_id == data.student_id,
                StudentProfile.guardian_id == current_user.id,
            )
        )
        if not linked:
            raise FieldValidationError({"student_id": ["This student is not linked to your account."]})
        student_id = data.student_id
    else:
        student_id = current_user.id

    teacher, profile = await service.bookable_teacher(db, data.teacher_id)

    subject = await db.get(Subject, data.subject_id)
    if not subject or not subject.is_active:
        raise FieldValidationError({"subject_id": ["The selected subject is invalid."]})
    if not await service.teaches(db, teacher.id, subject.id):
        raise FieldValidationError({"subject_id": ["This teacher does not teach the selected subject."]})

    start = service.parse_hhmm(data.start_time)
    try:
        end = service.end_time_for(start, data.duration_minutes)
    except ValueError as e:
        raise FieldValidationError({"duration_minutes": [str(e)]})
    if not await service.is_slot_free(db, teacher.id, data.booking_date, start, end):
        raise FieldValidationError({"start_time": ["The selected time slot is not available."]})

    amount = service.price_for(profile, data.duration_minutes)

    booking = Booking(
        booking_number=await service.generate_booking_number(db),
        student_id=student_id,
        teacher_id=teacher.id,
        subject_id=subject.id,
        booking_date=data.booking_date,
        start_time=start,
        end_time=end,
        duration_minutes=data.duration_minutes,
        status=BookingStatus.PENDING,
        notes=data.notes,
        amount=amount,
        currency=settings.DEFAULT_CURRENCY,
        created_by_id=current_user.id,
    )
    db.add(booking)
    await db.flush()

    if amount > 0:
        wallet = await ledger.get_student_wallet(db, student_id)
        try:
            ledger.deduct_funds(
                db, wallet, amount, f"Payment for booking {booking.booking_number}",
                booking_id=booking.id, teacher_id=teacher.id,
            )
        except ledger.InsufficientBalanceError as e:
            raise FieldValidationError({"amount": [str(e)]})

    service.log_history(db, booking, "created", current_user, new_status=BookingStatus.PENDING,
                        notes="Booking created")
    await service.notify_parties(
        db, booking, "booking.created",
        "New booking request",
        f"{subject.name} on {booking.booking_date.isoformat()} at {data.start_time} ({booking.booking_number})",
        include_student=False,
    )
    return await _respond(db, booking, "Booking created")


# ── Read ──────────────────────────────────────────────────────

@router.get("")
async def list_bookings(
    scope: Optional[str] = Query(None, pattern=r"^(upcoming|pending|past|all)$"),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings the caller takes part in (children's bookings for guardians)."""
    query = select(Booking)
    visible = await service.visibility_filter(db, current_user)
    if visible is not None:
        query = query.where(visible)
    scoped = service.scope_filter(scope)
    if scoped is not None:
        query = query.where(scoped)
    if status_filter:
        query = query.where(Booking.status == status_filter)

    query = query.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
    rows, meta = await paginate(db, query, page, page_size)
    return success(await service.enrich(db, rows), meta=meta)


@router.get("/teachers/{teacher_id}/slots")
async def teacher_slots(
    teacher_id: UUID,
    day: date = Query(..., alias="date"),
    duration_minutes: int = Query(60, ge=30, le=240, multiple_of=30),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Free start times for a teacher on a given date."""
    await service.bookable_teacher(db, teacher_id)
    if day <= date.today():
        return success([])
    return success(await service.available_slots(db, teacher_id, day, duration_minutes))


@router.get("/{booking_id}")
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await service.get_booking_or_404(db, booking_id)
    if not await service.can_view(db, current_user, booking):
        raise HTTPException(status_code=403, detail="Access denied")
    return await _respond(db, booking)


# ── Teacher Actions ───────────────────────────────────────────

@router.post("/{booking_id}/approve")
async def approve_booking(
    booking_id: UUID,
    data: BookingApproveRequest,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    booking = await _own_booking(db, booking_id, current_user)
    _require_status(booking, (BookingStatus.PENDING,), "approve")

    if data.meeting_link:
        booking.meeting_link = str(data.meeting_link)
    await service.apply_status_change(db, booking, BookingStatus.APPROVED, current_user)
    await service.notify_parties(
        db, booking, "booking.approved",
        "Booking approved",
        f"Your booking {booking.booking_number} has been approved.",
        include_teacher=False,
    )
    return await _respond(db, booking, "Booking approved")


@router.post("/{booking_id}/reject")
async def reject_booking(
    booking_id: UUID,
    data: BookingRejectRequest,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    booking = await _own_booking(db, booking_id, current_user)
    _require_status(booking, (BookingStatus.PENDING,), "reject")

    await service.apply_status_change(db, booking, BookingStatus.REJECTED, current_user, notes=data.reason)
    await service.notify_parties(
        db, booking, "booking.rejected",
        "Booking declined",
        f"Your booking {booking.booking_number} was declined. Your payment has been refunded to your wallet.",
        include_teacher=False,
    )
    return await _respond(db, booking, "Booking rejected")


@router.post("/{booking_id}/complete")
async def complete_booking(
    booking_id: UUID,
    current_user: User = Depends(require_teacher),
    db: AsyncSession = Depends(get_db),
):
    """Mark a held session as done; credits the teacher's earnings net of commission."""
    booking = await _own_booking(db, booking_id, current_user)
    _require_status(booking, (BookingStatus.APPROVED, BookingStatus.UPCOMING), "complete")

    await service.apply_status_change(db, booking, BookingStatus.COMPLETED, current_user)
    await service.notify_parties(
        db, booking, "booking.completed",
        "Session completed",
        f"Your session {booking.booking_number} has been marked as completed.",
        include_teacher=False,
    )
    return await _respond(db, booking, "Booking completed")


# ── Cancellation ──────────────────────────────────────────────

@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Either participant (or the student's guardian) may cancel an active booking; the student is refunded."""
    booking = await service.get_booking_or_404(db, booking_id)
    if current_user.role == UserRole.SUPER_ADMIN or not await service.can_view(db, current_user, booking):
        raise HTTPException(status_code=403, detail="Access denied")
    _require_status(booking, ACTIVE_BOOKING_STATUSES, "cancel")

    await service.apply_status_change(db, booking, BookingStatus.CANCELLED, current_user, notes=data.reason)
    service.add_note(db, booking, BookingNoteType.CANCELLATION_NOTE, data.reason, current_user)

    cancelled_by_teacher = current_user.id == booking.teacher_id
    await service.notify_parties(
        db, booking, "booking.cancelled",
        "Booking cancelled",
        f"Booking {booking.booking_number} was cancelled: {data.reason}",
        include_teacher=not cancelled_by_teacher,
        include_student=cancelled_by_teacher,
    )
    return await _respond(db, booking, "Booking cancelled")
