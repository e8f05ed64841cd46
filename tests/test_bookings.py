"""
tests/test_bookings.py
Tests for the booking lifecycle: creation, slots, approval, completion and cancellation.
"""

from decimal import Decimal
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from shared.models.models import (
    BookingHistory,
    NotificationRecipient,
    StudentWallet,
    Subject,
    TeacherWallet,
    User,
)
from tests.conftest import auth_headers, booking_day


async def create_booking(client: AsyncClient, booker: User, teacher: User, subject: Subject, **overrides):
    payload = {
        "teacher_id": str(teacher.id),
        "subject_id": str(subject.id),
        "booking_date": booking_day().isoformat(),
        "start_time": "10:00",
        "duration_minutes": 60,
        "notes": "Quadratic equations revision",
    }
    payload.update(overrides)
    return await client.post("/bookings", json=payload, headers=auth_headers(booker))


async def _student_balance(db, student: User) -> Decimal:
    wallet = (await db.execute(
        select(StudentWallet).where(StudentWallet.user_id == student.id).execution_options(populate_existing=True)
    )).scalar_one()
    return Decimal(wallet.balance)


# ── Create ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_student_creates_pending_booking(client: AsyncClient, db, student, teacher, subject):
    """A new booking is pending, priced at hourly_rate × duration and charged to the wallet."""
    response = await create_booking(client, student, teacher, subject, duration_minutes=90)
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Booking created"

    booking = body["data"]
    assert booking["status"] == "pending"
    assert booking["booking_number"].startswith("BK-")
    assert booking["end_time"] == "11:30:00"
    assert Decimal(booking["amount"]) == Decimal("7500.00")
    assert booking["teacher_name"] == "Tunde Teacher"
    assert booking["subject_name"] == "Mathematics"

    assert await _student_balance(db, student) == Decimal("42500.00")


@pytest.mark.asyncio
async def test_booking_notifies_teacher(client: AsyncClient, db, student, teacher, subject):
    await create_booking(client, student, teacher, subject)
    rows = (await db.execute(
        select(NotificationRecipient).where(NotificationRecipient.user_id == teacher.id)
    )).scalars().all()
    assert rows


@pytest.mark.asyncio
async def test_booking_date_must_be_in_future(client: AsyncClient, student, teacher, subject):
    response = await create_booking(client, student, teacher, subject, booking_date=booking_day(0).isoformat())
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert "booking_date" in body["errors"]


@pytest.mark.asyncio
async def test_booking_duration_must_be_half_hour_steps(client: AsyncClient, student, teacher, subject):
    response = await create_booking(client, student, teacher, subject, duration_minutes=45)
    assert response.status_code == 422
    assert "duration_minutes" in response.json()["errors"]


@pytest.mark.asyncio
async def test_booking_outside_availability_rejected(client: AsyncClient, student, teacher, subject):
    response = await create_booking(client, student, teacher, subject, start_time="17:30", duration_minutes=60)
    assert response.status_code == 422
    assert "start_time" in response.json()["errors"]


@pytest.mark.asyncio
async def test_overlapping_booking_rejected(client: AsyncClient, student, teacher, subject):
    first = await create_booking(client, student, teacher, subject, start_time="10:00")
    assert first.status_code == 201
    second = await create_booking(client, student, teacher, subject, start_time="10:30")
    assert second.status_code == 422
    assert "start_time" in second.json()["errors"]


@pytest.mark.asyncio
async def test_unverified_teacher_not_bookable(client: AsyncClient, student, unverified_teacher, subject):
    response = await create_booking(client, student, unverified_teacher, subject)
    assert response.status_code == 422
    assert response.json()["detail"] == "Teacher is not accepting bookings"


@pytest.mark.asyncio
async def test_insufficient_funds_rejected(client: AsyncClient, db, other_student, teacher, subject):
    response = await create_booking(client, other_student, teacher, subject)
    assert response.status_code == 422
    assert "amount" in response.json()["errors"]

    listing = await client.get("/bookings", headers=auth_headers(other_student))
    assert listing.json()["data"] == []


@pytest.mark.asyncio
async def test_teacher_cannot_create_booking(client: AsyncClient, teacher, second_teacher, subject):
    response = await create_booking(client, teacher, second_teacher, subject)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_guardian_books_for_linked_child(client: AsyncClient, db, guardian, student, teacher, subject):
    """The child's wallet pays for a guardian booking."""
    response = await create_booking(client, guardian, teacher, subject, student_id=str(student.id))
    assert response.status_code == 201
    assert response.json()["data"]["student_id"] == str(student.id)
    assert await _student_balance(db, student) == Decimal("45000.00")


@pytest.mark.asyncio
async def test_guardian_must_pick_linked_child(client: AsyncClient, guardian, other_student, teacher, subject):
    missing = await create_booking(client, guardian, teacher, subject)
    assert missing.status_code == 422
    assert "student_id" in missing.json()["errors"]

    unlinked = await create_booking(client, guardian, teacher, subject, student_id=str(other_student.id))
    assert unlinked.status_code == 422
    assert "student_id" in unlinked.json()["errors"]


# ── Slots & Visibility ────────────────────────────────────────

@pytest.mark.asyncio
async def test_slots_exclude_booked_time(client: AsyncClient, student, teacher, subject):
    await create_booking(client, student, teacher, subject, start_time="10:00")
    response = await client.get(
        f"/bookings/teachers/{teacher.id}/slots",
        params={"date": booking_day().isoformat(), "duration_minutes": 60},
        headers=auth_headers(student),
    )
    assert response.status_code == 200
    starts = [slot["value"] for slot in response.json()["data"]]
    assert "08:00" in starts
    assert "09:30" not in starts
    assert "10:00" not in starts
    assert "10:30" not in starts
    assert "11:00" in starts
    assert starts[-1] == "17:00"


@pytest.mark.asyncio
async def test_other_student_cannot_view_booking(client: AsyncClient, student, other_student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    response = await client.get(f"/bookings/{booking['id']}", headers=auth_headers(other_student))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_guardian_sees_child_bookings(client: AsyncClient, guardian, student, teacher, subject):
    await create_booking(client, student, teacher, subject)
    response = await client.get("/bookings", headers=auth_headers(guardian))
    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 1
    assert body["meta"]["total"] == 1


@pytest.mark.asyncio
async def test_unknown_booking_returns_404(client: AsyncClient, student):
    response = await client.get(
        "/bookings/00000000-0000-0000-0000-000000000000", headers=auth_headers(student)
    )
    assert response.status_code == 404
    assert response.json()["success"] is False


# ── Teacher Actions ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_teacher_approves_booking(client: AsyncClient, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    response = await client.post(
        f"/bookings/{booking['id']}/approve",
        json={"meeting_link": "https://meet.example.com/abc"},
        headers=auth_headers(teacher),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "approved"
    assert data["meeting_link"] == "https://meet.example.com/abc"
    assert data["approved_at"] is not None


@pytest.mark.asyncio
async def test_other_teacher_cannot_approve(client: AsyncClient, student, teacher, second_teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    response = await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(second_teacher))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_approve_twice_conflicts(client: AsyncClient, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(teacher))
    response = await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(teacher))
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reject_refunds_student(client: AsyncClient, db, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    response = await client.post(
        f"/bookings/{booking['id']}/reject", json={"reason": "Fully booked that week"}, headers=auth_headers(teacher)
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "rejected"
    assert await _student_balance(db, student) == Decimal("50000.00")


@pytest.mark.asyncio
async def test_complete_pays_teacher_net_of_commission(client: AsyncClient, db, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(teacher))

    response = await client.post(f"/bookings/{booking['id']}/complete", headers=auth_headers(teacher))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "completed"

    wallet = (await db.execute(
        select(TeacherWallet).where(TeacherWallet.user_id == teacher.id).execution_options(populate_existing=True)
    )).scalar_one()
    assert Decimal(wallet.balance) == Decimal("4500.00")
    assert Decimal(wallet.total_earned) == Decimal("4500.00")


@pytest.mark.asyncio
async def test_pending_booking_cannot_be_completed(client: AsyncClient, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    response = await client.post(f"/bookings/{booking['id']}/complete", headers=auth_headers(teacher))
    assert response.status_code == 409


# ── Cancellation ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_student_cancels_and_is_refunded_once(client: AsyncClient, db, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]

    response = await client.post(
        f"/bookings/{booking['id']}/cancel", json={"reason": "Exam moved"}, headers=auth_headers(student)
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancellation_reason"] == "Exam moved"
    assert await _student_balance(db, student) == Decimal("50000.00")

    again = await client.post(
        f"/bookings/{booking['id']}/cancel", json={"reason": "Exam moved"}, headers=auth_headers(student)
    )
    assert again.status_code == 409
    assert await _student_balance(db, student) == Decimal("50000.00")


@pytest.mark.asyncio
async def test_cancel_requires_reason(client: AsyncClient, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    response = await client.post(f"/bookings/{booking['id']}/cancel", json={"reason": ""}, headers=auth_headers(student))
    assert response.status_code == 422
    assert "reason" in response.json()["errors"]


@pytest.mark.asyncio
async def test_cancelled_slot_becomes_free(client: AsyncClient, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    await client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "Travel"}, headers=auth_headers(student))

    rebook = await create_booking(client, student, teacher, subject, start_time="10:00")
    assert rebook.status_code == 201


@pytest.mark.asyncio
async def test_status_changes_are_recorded(client: AsyncClient, db, student, teacher, subject):
    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(teacher))

    entries = (await db.execute(
        select(BookingHistory).where(BookingHistory.booking_id == UUID(booking["id"]))
    )).scalars().all()
    assert {e.action for e in entries} == {"created", "status"}
    approved = next(e for e in entries if e.action == "status")
    assert (approved.previous_status, approved.new_status) == ("pending", "approved")
