"""
services/booking/service.py
Booking rules shared by the participant and admin routers:
numbering, slot computation, status side effects, history and stats.
"""

import logging
import random
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.service import notify_users
from services.wallet import ledger
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingHistory,
    BookingNote,
    BookingNoteType,
    BookingStatus,
    StudentProfile,
    Subject,
    TeacherAvailability,
    TeacherProfile,
    TeacherSubject,
    User,
    UserRole,
)
from shared.schemas.schemas import BookingResponse

logger = logging.getLogger(__name__)

STATS_CACHE_KEY = "admin:booking_stats"


# ── Lookup ────────────────────────────────────────────────────

async def get_booking_or_404(db: AsyncSession, booking_id: UUID) -> Booking:
    booking = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


async def generate_booking_number(db: AsyncSession) -> str:
    """BK-<yymmdd><NNN>, e.g. BK-261019123. Retries on collision."""
    prefix = "BK-" + datetime.now(timezone.utc).strftime("%y%m%d")
    for _ in range(20):
        candidate = f"{prefix}{random.randint(0, 999):03d}"
        taken = await db.scalar(select(func.count(Booking.id)).where(Booking.booking_number == candidate))
        if not taken:
            return candidate
    return f"{prefix}{random.randint(1000, 9999)}"


async def child_ids_of(db: AsyncSession, guardian_id: UUID) -> list[UUID]:
    result = await db.execute(
        select(StudentProfile.user_id).where(StudentProfile.guardian_id == guardian_id)
    )
    return list(result.scalars().all())


async def visibility_filter(db: AsyncSession, user: User):
    """WHERE clause restricting bookings to those the user takes part in."""
    if user.role == UserRole.SUPER_ADMIN:
        return None
    if user.role == UserRole.TEACHER:
        return Booking.teacher_id == user.id
    if user.role == UserRole.GUARDIAN:
        return Booking.student_id.in_(await child_ids_of(db, user.id) or [user.id])
    return Booking.student_id == user.id


async def can_view(db: AsyncSession, user: User, booking: Booking) -> bool:
    if user.role == UserRole.SUPER_ADMIN:
        return True
    if user.id in (booking.student_id, booking.teacher_id):
        return True
    if user.role == UserRole.GUARDIAN:
        return booking.student_id in await child_ids_of(db, user.id)
    return False


def scope_filter(scope: Optional[str]):
    today = date.today()
    if scope == "upcoming":
        return and_(Booking.status == BookingStatus.UPCOMING, Booking.booking_date >= today)
    if scope == "pending":
        return Booking.status == BookingStatus.PENDING
    if scope == "past":
        return or_(
            Booking.booking_date < today,
            Booking.status.in_([BookingStatus.COMPLETED, BookingStatus.MISSED, BookingStatus.CANCELLED, BookingStatus.REJECTED]),
        )
    return None


# ── Time & Slots ──────────────────────────────────────────────

def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def _to_time(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def end_time_for(start: time, duration_minutes: int) -> time:
    """End of a session starting at `start`. Sessions may not run past midnight."""
    end = _minutes(start) + duration_minutes
    if end > 24 * 60 - 1:
        raise ValueError("Session must end before midnight")
    return _to_time(end)


def format_12h(t: time) -> str:
    hour = t.hour % 12 or 12
    return f"{hour}:{t.minute:02d} {'AM' if t.hour < 12 else 'PM'}"


async def _windows(db: AsyncSession, teacher_id: UUID, day: date) -> list[TeacherAvailability]:
    result = await db.execute(
        select(TeacherAvailability)
        .where(
            TeacherAvailability.teacher_id == teacher_id,
            TeacherAvailability.day_of_week == day.weekday(),
            TeacherAvailability.is_available == True,  # noqa: E712
        )
        .order_by(TeacherAvailability.start_time)
    )
    return list(result.scalars().all())


async def _busy_ranges(
    db: AsyncSession, teacher_id: UUID, day: date, exclude_booking_id: Optional[UUID] = None
) -> list[tuple[int, int]]:
    query = select(Booking.start_time, Booking.end_time).where(
        Booking.teacher_id == teacher_id,
        Booking.booking_date == day,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    )
    if exclude_booking_id:
        query = query.where(Booking.id != exclude_booking_id)
    return [(_minutes(s), _minutes(e)) for s, e in (await db.execute(query)).all()]


def _overlaps(start: int, end: int, busy: Iterable[tuple[int, int]]) -> bool:
    return any(start < b_end and end > b_start for b_start, b_end in busy)


async def available_slots(
    db: AsyncSession,
    teacher_id: UUID,
    day: date,
    duration_minutes: int,
    exclude_booking_id: Optional[UUID] = None,
) -> list[dict]:
    """
    Walk each availability window for the weekday in BOOKING_SLOT_STEP_MINUTES
    steps, keeping slots of `duration_minutes` that do not overlap an active booking.
    """
    step = settings.BOOKING_SLOT_STEP_MINUTES
    busy = await _busy_ranges(db, teacher_id, day, exclude_booking_id)
    slots: list[dict] = []
    seen: set[int] = set()

    for window in await _windows(db, teacher_id, day):
        cursor = _minutes(window.start_time)
        window_end = _minutes(window.end_time)
        while cursor + duration_minutes <= window_end:
            end = cursor + duration_minutes
            if cursor not in seen and not _overlaps(cursor, end, busy):
                start_t, end_t = _to_time(cursor), _to_time(end)
                slots.append({
                    "value": start_t.strftime("%H:%M"),
                    "label": f"{format_12h(start_t)} - {format_12h(end_t)}",
                    "start_time": start_t.strftime("%H:%M"),
                    "end_time": end_t.strftime("%H:%M"),
                })
                seen.add(cursor)
            cursor += step

    return slots


async def is_slot_free(
    db: AsyncSession,
    teacher_id: UUID,
    day: date,
    start: time,
    end: time,
    exclude_booking_id: Optional[UUID] = None,
) -> bool:
    """True when [start, end) sits inside an availability window and overlaps no active booking."""
    s, e = _minutes(start), _minutes(end)
    inside = any(
        _minutes(w.start_time) <= s and e <= _minutes(w.end_time)
        for w in await _windows(db, teacher_id, day)
    )
    if not inside:
        return False
    return not _overlaps(s, e, await _busy_ranges(db, teacher_id, day, exclude_booking_id))


async def bookable_teacher(db: AsyncSession, teacher_id: UUID) -> tuple[User, TeacherProfile]:
    """Active, verified teacher with a profile, or 404/422."""
    row = (await db.execute(
        select(User, TeacherProfile)
        .join(TeacherProfile, TeacherProfile.user_id == User.id)
        .where(
            User.id == teacher_id,
            User.role == UserRole.TEACHER,
            User.deleted_at.is_(None),
        )
    )).first()
    if not row:
        raise HTTPException(status_code=404, detail="Teacher not found")
    teacher, profile = row
    if not teacher.is_active or not profile.verified:
        raise HTTPException(status_code=422, detail="Teacher is not accepting bookings")
    return teacher, profile


async def teaches(db: AsyncSession, teacher_id: UUID, subject_id: UUID) -> bool:
    count = await db.scalar(
        select(func.count(TeacherSubject.id)).where(
            TeacherSubject.teacher_id == teacher_id, TeacherSubject.subject_id == subject_id
        )
    )
    return bool(count)


def price_for(profile: TeacherProfile, duration_minutes: int) -> Decimal:
    return ledger.money(Decimal(profile.hourly_rate or 0) * duration_minutes / 60)


# ── History & Notes ───────────────────────────────────────────

def log_history(
    db: AsyncSession,
    booking: Booking,
    action: str,
    performed_by: Optional[User],
    previous_status: Optional[BookingStatus] = None,
    new_status: Optional[BookingStatus] = None,
    notes: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> BookingHistory:
    entry = BookingHistory(
        booking_id=booking.id,
        action=action,
        previous_status=previous_status.value if previous_status else None,
        new_status=new_status.value if new_status else None,
        performed_by_id=performed_by.id if performed_by else None,
        notes=notes,
        history_metadata=metadata,
    )
    db.add(entry)
    return entry


def add_note(
    db: AsyncSession, booking: Booking, note_type: BookingNoteType, content: str, author: Optional[User]
) -> BookingNote:
    note = BookingNote(
        booking_id=booking.id,
        note_type=note_type,
        content=content,
        created_by_id=author.id if author else None,
    )
    db.add(note)
    return note


# ── Money ─────────────────────────────────────────────────────

async def refund_booking(db: AsyncSession, booking: Booking) -> None:
    if booking.is_refunded or not booking.amount or Decimal(booking.amount) <= 0:
        return
    wallet = await ledger.get_student_wallet(db, booking.student_id)
    ledger.add_refund(db, wallet, booking.amount, f"Refund for booking {booking.booking_number}", booking_id=booking.id)
    booking.is_refunded = True


async def pay_teacher(db: AsyncSession, booking: Booking) -> None:
    if booking.is_teacher_paid or not booking.amount or Decimal(booking.amount) <= 0:
        return
    share = Decimal("1") - Decimal(str(settings.PLATFORM_COMMISSION_PERCENT)) / 100
    earnings = ledger.money(Decimal(booking.amount) * share)
    if earnings <= 0:
        return
    wallet = await ledger.get_teacher_wallet(db, booking.teacher_id)
    ledger.add_earnings(
        db, wallet, earnings, f"Session payment for booking {booking.booking_number}",
        booking_id=booking.id, student_id=booking.student_id,
    )
    booking.is_teacher_paid = True


def status_change_blocker(booking: Booking, new_status: BookingStatus) -> Optional[str]:
    """Why `new_status` would pay for the same session twice, or None when the move is safe."""
    if new_status in (BookingStatus.CANCELLED, BookingStatus.REJECTED) and booking.is_teacher_paid:
        return (
            f"Booking {booking.booking_number} has already been paid out to the teacher "
            f"and cannot be {new_status.value}"
        )
    if new_status == BookingStatus.COMPLETED and booking.is_refunded:
        return f"Booking {booking.booking_number} was refunded to the student and cannot be completed"
    return None


# ── Status Changes ────────────────────────────────────────────

async def apply_status_change(
    db: AsyncSession,
    booking: Booking,
    new_status: BookingStatus,
    actor: User,
    notes: Optional[str] = None,
    history_notes: Optional[str] = None,
) -> BookingStatus:
    """
    Move a booking to `new_status` with its side effects and a history entry.
    Returns the previous status.
    """
    blocker = status_change_blocker(booking, new_status)
    if blocker:
        raise HTTPException(status_code=409, detail=blocker)

    previous = booking.status
    now = datetime.now(timezone.utc)
    booking.status = new_status

    if new_status == BookingStatus.APPROVED:
        booking.approved_by_id = actor.id
        booking.approved_at = now
    elif new_status in (BookingStatus.CANCELLED, BookingStatus.REJECTED):
        booking.cancelled_by_id = actor.id
        booking.cancelled_at = now
        if notes:
            booking.cancellation_reason = notes
        await refund_booking(db, booking)
    elif new_status == BookingStatus.COMPLETED:
        booking.completed_at = booking.completed_at or now
        await pay_teacher(db, booking)

    log_history(
        db, booking, "status", actor,
        previous_status=previous,
        new_status=new_status,
        notes=history_notes or notes or f"Status changed from {previous.value} to {new_status.value}",
    )
    return previous


async def notify_parties(
    db: AsyncSession,
    booking: Booking,
    event: str,
    title: str,
    message: str,
    include_teacher: bool = True,
    include_student: bool = True,
) -> None:
    data = {
        "booking_number": booking.booking_number,
        "booking_date": booking.booking_date.isoformat(),
        "start_time": booking.start_time.strftime("%H:%M"),
        "status": booking.status.value,
    }
    if include_student:
        await notify_users(db, [booking.student_id], event=event, title=title, message=message,
                           data=data, audience="student")
    if include_teacher:
        await notify_users(db, [booking.teacher_id], event=event, title=title, message=message,
                           data=data, audience="teacher")


# ── Presentation ──────────────────────────────────────────────

async def enrich(db: AsyncSession, bookings: list[Booking]) -> list[BookingResponse]:
    """Attach student, teacher and subject names in two queries."""
    if not bookings:
        return []
    user_ids = {b.student_id for b in bookings} | {b.teacher_id for b in bookings}
    subject_ids = {b.subject_id for b in bookings}
    names = dict((await db.execute(select(User.id, User.name).where(User.id.in_(user_ids)))).all())
    subjects = dict((await db.execute(select(Subject.id, Subject.name).where(Subject.id.in_(subject_ids)))).all())

    out = []
    for booking in bookings:
        item = BookingResponse.model_validate(booking)
        item.student_name = names.get(booking.student_id)
        item.teacher_name = names.get(booking.teacher_id)
        item.subject_name = subjects.get(booking.subject_id)
        out.append(item)
    return out


async def booking_stats(db: AsyncSession) -> dict:
    result = await db.execute(select(Booking.status, func.count()).group_by(Booking.status))
    by_status = {s: c for s, c in result.all()}

    today = date.today()
    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)

    async def _count_from(start: date, end: date) -> int:
        return await db.scalar(
            select(func.count(Booking.id)).where(Booking.booking_date >= start, Booking.booking_date <= end)
        ) or 0

    return {
        "total": sum(by_status.values()),
        "pending": by_status.get(BookingStatus.PENDING, 0),
        "upcoming": by_status.get(BookingStatus.UPCOMING, 0),
        "completed": by_status.get(BookingStatus.COMPLETED, 0),
        "cancelled": by_status.get(BookingStatus.CANCELLED, 0),
        "missed": by_status.get(BookingStatus.MISSED, 0),
        "today": await _count_from(today, today),
        "this_week": await _count_from(week_start, week_start + timedelta(days=6)),
        "this_month": await _count_from(month_start, (month_start + timedelta(days=32)).replace(day=1) - timedelta(days=1)),
    }
