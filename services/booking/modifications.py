"""
services/booking/modifications.py
Reschedule and rebook requests.

A student (or the student's guardian) asks to move an active booking to another
time, or to another teacher or subject. The teacher who would teach the moved
session answers it:

    pending → approved | rejected | cancelled | expired

Only one pending request per booking. Approval moves the booking and settles
the price difference on the student's wallet.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking import service
from services.notification.service import as_aware, notify_users
from services.wallet import ledger
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingModification,
    BookingNoteType,
    ModificationStatus,
    ModificationType,
    Subject,
    User,
    UserRole,
)
from shared.schemas.schemas import BookingModificationResponse, RebookModificationRequest, RescheduleModificationRequest
from shared.utils.responses import FieldValidationError

logger = logging.getLogger(__name__)

LABELS = {ModificationType.RESCHEDULE: "Reschedule", ModificationType.REBOOK: "Rebook"}


# ── Lookup ────────────────────────────────────────────────────

async def get_modification_or_404(db: AsyncSession, modification_id: UUID) -> BookingModification:
    modification = await db.get(BookingModification, modification_id)
    if not modification:
        raise HTTPException(status_code=404, detail="Modification request not found")
    return modification


async def pending_request_for(db: AsyncSession, booking_id: UUID) -> Optional[BookingModification]:
    return (await db.execute(
        select(BookingModification).where(
            BookingModification.booking_id == booking_id,
            BookingModification.status == ModificationStatus.PENDING,
        )
    )).scalars().first()


async def can_request(db: AsyncSession, user: User, booking: Booking) -> bool:
    """Only the student, or a guardian of the student, asks for changes."""
    if user.role == UserRole.STUDENT:
        return booking.student_id == user.id
    if user.role == UserRole.GUARDIAN:
        return booking.student_id in await service.child_ids_of(db, user.id)
    return False


async def visibility_filter(db: AsyncSession, user: User):
    if user.role == UserRole.SUPER_ADMIN:
        return None
    if user.role == UserRole.TEACHER:
        return or_(
            BookingModification.teacher_id == user.id,
            BookingModification.original_teacher_id == user.id,
        )
    if user.role == UserRole.GUARDIAN:
        return BookingModification.student_id.in_(await service.child_ids_of(db, user.id) or [user.id])
    return BookingModification.student_id == user.id


def is_expired(modification: BookingModification, now: Optional[datetime] = None) -> bool:
    return as_aware(modification.expires_at) <= (now or datetime.now(timezone.utc))


def _require_answerable(modification: BookingModification) -> None:
    if modification.status != ModificationStatus.PENDING:
        raise HTTPException(
            status_code=409,
            detail=f"This request is already {modification.status.value}",
        )
    if is_expired(modification):
        raise HTTPException(status_code=409, detail="This request has expired")


def _when(day, start) -> str:
    return f"{day.isoformat()} at {start.strftime('%H:%M')}"


def _data(booking: Booking, modification: BookingModification) -> dict:
    return {
        "booking_number": booking.booking_number,
        "modification_id": str(modification.id),
        "modification_type": modification.modification_type.value,
        "new_booking_date": modification.new_booking_date.isoformat(),
        "new_start_time": modification.new_start_time.strftime("%H:%M"),
    }


# ── Request ───────────────────────────────────────────────────

async def create_request(
    db: AsyncSession,
    booking: Booking,
    kind: ModificationType,
    data: RescheduleModificationRequest | RebookModificationRequest,
    requester: User,
) -> BookingModification:
    """
    Validate the requested slot against the target teacher's calendar and
    record a pending request for that teacher to answer.
    """
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot change a booking with status '{booking.status.value}'",
        )
    if await pending_request_for(db, booking.id):
        raise HTTPException(status_code=409, detail="A modification request is already pending for this booking")

    teacher_id, subject_id = booking.teacher_id, booking.subject_id
    if kind == ModificationType.REBOOK:
        teacher_id = data.new_teacher_id or booking.teacher_id
        subject_id = data.new_subject_id or booking.subject_id
        if teacher_id == booking.teacher_id and subject_id == booking.subject_id:
            raise FieldValidationError({"new_teacher_id": ["Choose a different teacher or subject to rebook."]})

    _, profile = await service.bookable_teacher(db, teacher_id)
    if subject_id != booking.subject_id:
        subject = await db.get(Subject, subject_id)
        if not subject or not subject.is_active:
            raise FieldValidationError({"new_subject_id": ["The selected subject is invalid."]})
    if not await service.teaches(db, teacher_id, subject_id):
        raise FieldValidationError({"new_subject_id": ["This teacher does not teach the selected subject."]})

    duration = data.new_duration_minutes or booking.duration_minutes
    start = service.parse_hhmm(data.new_start_time)
    try:
        end = service.end_time_for(start, duration)
    except ValueError as e:
        raise FieldValidationError({"new_duration_minutes": [str(e)]})

    unchanged = (
        teacher_id == booking.teacher_id
        and data.new_booking_date == booking.booking_date
        and start == booking.start_time
        and duration == booking.duration_minutes
    )
    if unchanged:
        raise FieldValidationError({"new_booking_date": ["The requested time is the same as the current booking."]})
    if not await service.is_slot_free(
        db, teacher_id, data.new_booking_date, start, end, exclude_booking_id=booking.id
    ):
        raise FieldValidationError({"new_start_time": ["The selected time slot is not available."]})

    difference = service.price_for(profile, duration) - ledger.money(booking.amount or 0)
    if difference > 0:
        wallet = await ledger.get_student_wallet(db, booking.student_id)
        if not ledger.has_sufficient_balance(wallet, difference):
            raise FieldValidationError({"amount": ["Insufficient wallet balance for the price difference"]})

    days = (
        settings.BOOKING_RESCHEDULE_EXPIRY_DAYS
        if kind == ModificationType.RESCHEDULE
        else settings.BOOKING_REBOOK_EXPIRY_DAYS
    )
    modification = BookingModification(
        booking_id=booking.id,
        modification_type=kind,
        status=ModificationStatus.PENDING,
        requested_by_id=requester.id,
        student_id=booking.student_id,
        teacher_id=teacher_id,
        original_teacher_id=booking.teacher_id,
        original_subject_id=booking.subject_id,
        original_booking_date=booking.booking_date,
        original_start_time=booking.start_time,
        original_end_time=booking.end_time,
        original_duration_minutes=booking.duration_minutes,
        new_teacher_id=teacher_id,
        new_subject_id=subject_id,
        new_booking_date=data.new_booking_date,
        new_start_time=start,
        new_end_time=end,
        new_duration_minutes=duration,
        reason=data.reason,
        price_difference=difference,
        expires_at=datetime.now(timezone.utc) + timedelta(days=days),
    )
    db.add(modification)
    await db.flush()

    label = LABELS[kind]
    service.log_history(
        db, booking, "modification_requested", requester,
        previous_status=booking.status, new_status=booking.status,
        notes=f"{label} to {_when(data.new_booking_date, start)} requested: {data.reason}",
        metadata={"modification_id": str(modification.id), "type": kind.value},
    )

    await notify_users(
        db, [teacher_id], event=f"booking.{kind.value}_requested",
        title=f"New {label.lower()} request",
        message=f"Booking {booking.booking_number} is requested for {_when(data.new_booking_date, start)}: {data.reason}",
        data=_data(booking, modification), audience="teacher",
    )
    if teacher_id != booking.teacher_id:
        await notify_users(
            db, [booking.teacher_id], event="booking.rebook_requested_elsewhere",
            title="Booking rebook request",
            message=f"The student of booking {booking.booking_number} has asked to rebook with another teacher.",
            data=_data(booking, modification), audience="teacher",
        )

    logger.info(f"{label} request {modification.id} raised for booking {booking.booking_number}")
    return modification


# ── Answer ────────────────────────────────────────────────────

async def _settle_price(db: AsyncSession, booking: Booking, modification: BookingModification) -> None:
    difference = ledger.money(modification.price_difference or 0)
    if difference == 0:
        return
    wallet = await ledger.get_student_wallet(db, booking.student_id)
    if difference > 0:
        try:
            ledger.deduct_funds(
                db, wallet, difference, f"Price difference for booking {booking.booking_number}",
                booking_id=booking.id, teacher_id=modification.new_teacher_id,
            )
        except ledger.InsufficientBalanceError:
            raise HTTPException(
                status_code=409, detail="The student's wallet no longer covers the price difference"
            )
    else:
        ledger.add_refund(
            db, wallet, -difference, f"Price difference refund for booking {booking.booking_number}",
            booking_id=booking.id,
        )
    booking.amount = ledger.money(Decimal(booking.amount or 0) + difference)


async def approve(
    db: AsyncSession, modification: BookingModification, teacher: User, notes: Optional[str] = None
) -> Booking:
    """Apply the requested slot (and teacher/subject) to the booking."""
    _require_answerable(modification)
    booking = await service.get_booking_or_404(db, modification.booking_id)
    if booking.status not in ACTIVE_BOOKING_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot change a booking with status '{booking.status.value}'",
        )
    if not await service.is_slot_free(
        db, modification.new_teacher_id, modification.new_booking_date,
        modification.new_start_time, modification.new_end_time, exclude_booking_id=booking.id,
    ):
        raise HTTPException(status_code=409, detail="The requested time slot is no longer available")

    await _settle_price(db, booking, modification)

    old = {
        "teacher_id": str(booking.teacher_id),
        "subject_id": str(booking.subject_id),
        "date": booking.booking_date.isoformat(),
        "start_time": booking.start_time.strftime("%H:%M"),
        "duration_minutes": booking.duration_minutes,
    }
    previous_teacher_id = booking.teacher_id
    booking.teacher_id = modification.new_teacher_id
    booking.subject_id = modification.new_subject_id
    booking.booking_date = modification.new_booking_date
    booking.start_time = modification.new_start_time
    booking.end_time = modification.new_end_time
    booking.duration_minutes = modification.new_duration_minutes
    if booking.teacher_id != previous_teacher_id:
        booking.meeting_link = None
    new = {
        "teacher_id": str(booking.teacher_id),
        "subject_id": str(booking.subject_id),
        "date": booking.booking_date.isoformat(),
        "start_time": booking.start_time.strftime("%H:%M"),
        "duration_minutes": booking.duration_minutes,
    }

    modification.status = ModificationStatus.APPROVED
    modification.teacher_notes = notes
    modification.responded_at = datetime.now(timezone.utc)
    modification.responded_by_id = teacher.id

    rescheduled = modification.modification_type == ModificationType.RESCHEDULE
    note = (
        f"{'Rescheduled' if rescheduled else 'Rebooked'} from {old['date']} {old['start_time']} "
        f"to {new['date']} {new['start_time']} at the student's request. Reason: {modification.reason}"
    )
    service.log_history(
        db, booking, "rescheduled" if rescheduled else "rebooked", teacher,
        previous_status=booking.status, new_status=booking.status,
        notes=note,
        metadata={"modification_id": str(modification.id), "old": old, "new": new},
    )
    service.add_note(
        db, booking,
        BookingNoteType.RESCHEDULE_NOTE if rescheduled else BookingNoteType.REASSIGNMENT_NOTE,
        note, teacher,
    )

    await notify_users(
        db, [booking.student_id], event="booking.modification_approved",
        title=f"{LABELS[modification.modification_type]} approved",
        message=f"Booking {booking.booking_number} now takes place on {_when(booking.booking_date, booking.start_time)}.",
        data=_data(booking, modification), audience="student",
    )
    if booking.teacher_id != previous_teacher_id:
        await notify_users(
            db, [previous_teacher_id], event="booking.teacher_removed",
            title="Booking rebooked",
            message=f"Booking {booking.booking_number} has been rebooked with another teacher.",
            data={"booking_number": booking.booking_number}, audience="teacher",
        )
    return booking


async def reject(
    db: AsyncSession, modification: BookingModification, teacher: User, notes: Optional[str] = None
) -> None:
    _require_answerable(modification)
    booking = await service.get_booking_or_404(db, modification.booking_id)

    modification.status = ModificationStatus.REJECTED
    modification.teacher_notes = notes
    modification.responded_at = datetime.now(timezone.utc)
    modification.responded_by_id = teacher.id

    label = LABELS[modification.modification_type]
    service.log_history(
        db, booking, "modification_rejected", teacher,
        previous_status=booking.status, new_status=booking.status,
        notes=notes or f"{label} request declined",
        metadata={"modification_id": str(modification.id)},
    )
    await notify_users(
        db, [booking.student_id], event="booking.modification_rejected",
        title=f"{label} declined",
        message=f"Your {label.lower()} request for booking {booking.booking_number} was declined."
                + (f" {notes}" if notes else ""),
        data=_data(booking, modification), audience="student",
    )


async def cancel(db: AsyncSession, modification: BookingModification, user: User) -> None:
    """Withdraw a pending request; the booking stays as it is."""
    if modification.status != ModificationStatus.PENDING:
        raise HTTPException(
            status_code=409,
            detail=f"This request is already {modification.status.value}",
        )
    booking = await service.get_booking_or_404(db, modification.booking_id)
    modification.status = ModificationStatus.CANCELLED
    modification.responded_at = datetime.now(timezone.utc)

    label = LABELS[modification.modification_type]
    service.log_history(
        db, booking, "modification_cancelled", user,
        previous_status=booking.status, new_status=booking.status,
        notes=f"{label} request withdrawn",
        metadata={"modification_id": str(modification.id)},
    )
    await notify_users(
        db, [modification.teacher_id], event="booking.modification_cancelled",
        title=f"{label} request withdrawn",
        message=f"The {label.lower()} request for booking {booking.booking_number} was withdrawn.",
        data=_data(booking, modification), audience="teacher",
    )


async def expire_stale(db: AsyncSession) -> int:
    """Mark pending requests past their expiry as expired and tell the student. Returns number expired."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(BookingModification, Booking)
        .join(Booking, Booking.id == BookingModification.booking_id)
        .where(
            BookingModification.status == ModificationStatus.PENDING,
            BookingModification.expires_at <= now,
        )
    )
    expired = 0
    for modification, booking in result.all():
        modification.status = ModificationStatus.EXPIRED
        label = LABELS[modification.modification_type]
        service.log_history(
            db, booking, "modification_expired", None,
            previous_status=booking.status, new_status=booking.status,
            notes=f"{label} request expired without an answer",
            metadata={"modification_id": str(modification.id)},
        )
        await notify_users(
            db, [booking.student_id], event="booking.modification_expired",
            title=f"{label} request expired",
            message=f"Your {label.lower()} request for booking {booking.booking_number} expired without an answer.",
            data=_data(booking, modification), audience="student",
        )
        expired += 1
    return expired


# ── Presentation ──────────────────────────────────────────────

async def enrich(db: AsyncSession, modifications: list[BookingModification]) -> list[BookingModificationResponse]:
    if not modifications:
        return []
    booking_ids = {m.booking_id for m in modifications}
    numbers = dict((await db.execute(
        select(Booking.id, Booking.booking_number).where(Booking.id.in_(booking_ids))
    )).all())
    out = []
    for modification in modifications:
        item = BookingModificationResponse.model_validate(modification)
        item.booking_number = numbers.get(modification.booking_id)
        out.append(item)
    return out
