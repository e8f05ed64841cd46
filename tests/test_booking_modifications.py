"""
tests/test_booking_modifications.py
Tests for reschedule and rebook requests: raising, answering, withdrawing,
expiry and the wallet settlement of price differences.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from services.booking import modifications
from services.booking.service import STATS_CACHE_KEY
from shared.models.models import (
    BookingHistory,
    BookingModification,
    BookingNote,
    BookingNoteType,
    ModificationStatus,
    StudentWallet,
    Subject,
    TeacherProfile,
    Transaction,
    TransactionType,
    User,
)
from tests.conftest import auth_headers, booking_day
from tests.test_bookings import create_booking


@pytest.fixture
async def booking(client, student, teacher, subject) -> dict:
    response = await create_booking(client, student, teacher, subject, start_time="10:00")
    assert response.status_code == 201
    return response.json()["data"]


async def request_reschedule(client: AsyncClient, user: User, booking_id: str, **overrides):
    payload = {
        "new_booking_date": booking_day(4).isoformat(),
        "new_start_time": "14:00",
        "reason": "School trip on the original day",
    }
    payload.update(overrides)
    return await client.post(
        f"/bookings/{booking_id}/modifications/reschedule", json=payload, headers=auth_headers(user)
    )


async def request_rebook(client: AsyncClient, user: User, booking_id: str, **overrides):
    payload = {
        "new_booking_date": booking_day(4).isoformat(),
        "new_start_time": "11:00",
        "reason": "Would like a teacher closer to my syllabus",
    }
    payload.update(overrides)
    return await client.post(
        f"/bookings/{booking_id}/modifications/rebook", json=payload, headers=auth_headers(user)
    )


async def answer(client: AsyncClient, teacher: User, modification_id: str, action: str, **body):
    return await client.post(
        f"/bookings/modifications/{modification_id}/{action}", json=body, headers=auth_headers(teacher)
    )


async def _student_balance(db, student: User) -> Decimal:
    wallet = (await db.execute(
        select(StudentWallet).where(StudentWallet.user_id == student.id).execution_options(populate_existing=True)
    )).scalar_one()
    return Decimal(wallet.balance)


async def _set_hourly_rate(db, teacher: User, rate: str) -> None:
    profile = (await db.execute(select(TeacherProfile).where(TeacherProfile.user_id == teacher.id))).scalar_one()
    profile.hourly_rate = Decimal(rate)
    await db.commit()


async def _titles(client: AsyncClient, user: User) -> set[str]:
    inbox = await client.get("/api/notifications", headers=auth_headers(user))
    return {n["title"] for n in inbox.json()["data"]}


# ── Reschedule ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_student_requests_reschedule(client: AsyncClient, student, teacher, booking):
    response = await request_reschedule(client, student, booking["id"])
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Reschedule request sent"

    request = body["data"]
    assert request["status"] == "pending"
    assert request["modification_type"] == "reschedule"
    assert request["teacher_id"] == str(teacher.id)
    assert request["booking_number"] == booking["booking_number"]
    assert request["new_end_time"] == "15:00:00"
    assert Decimal(request["price_difference"]) == Decimal("0.00")

    unchanged = await client.get(f"/bookings/{booking['id']}", headers=auth_headers(student))
    assert unchanged.json()["data"]["booking_date"] == booking_day(3).isoformat()
    assert "New reschedule request" in await _titles(client, teacher)


@pytest.mark.asyncio
async def test_teacher_approves_reschedule(client: AsyncClient, db, student, teacher, booking, fake_redis):
    """Approval moves the booking, frees the old slot and leaves a note and history entry."""
    request = (await request_reschedule(client, student, booking["id"])).json()["data"]
    fake_redis.store[STATS_CACHE_KEY] = "{}"

    response = await answer(client, teacher, request["id"], "approve", teacher_notes="See you then")
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "approved"
    assert body["data"]["teacher_notes"] == "See you then"
    assert body["booking"]["booking_date"] == booking_day(4).isoformat()
    assert body["booking"]["start_time"] == "14:00:00"
    assert body["booking"]["status"] == "pending"
    assert STATS_CACHE_KEY not in fake_redis.store

    slots = await client.get(
        f"/bookings/teachers/{teacher.id}/slots",
        params={"date": booking_day(3).isoformat()},
        headers=auth_headers(student),
    )
    assert "10:00" in [s["value"] for s in slots.json()["data"]]

    actions = (await db.execute(
        select(BookingHistory.action).where(BookingHistory.booking_id == UUID(booking["id"]))
    )).scalars().all()
    assert "modification_requested" in actions
    assert "rescheduled" in actions
    notes = (await db.execute(
        select(BookingNote).where(BookingNote.booking_id == UUID(booking["id"]))
    )).scalars().all()
    assert [n.note_type for n in notes] == [BookingNoteType.RESCHEDULE_NOTE]
    assert "Reschedule approved" in await _titles(client, student)


@pytest.mark.asyncio
async def test_guardian_requests_for_child(client: AsyncClient, guardian, student, booking):
    response = await request_reschedule(client, guardian, booking["id"])
    assert response.status_code == 201
    assert response.json()["data"]["requested_by_id"] == str(guardian.id)
    assert response.json()["data"]["student_id"] == str(student.id)


@pytest.mark.asyncio
async def test_only_the_student_side_can_request(client: AsyncClient, teacher, other_student, booking):
    assert (await request_reschedule(client, teacher, booking["id"])).status_code == 403
    assert (await request_reschedule(client, other_student, booking["id"])).status_code == 403


@pytest.mark.asyncio
async def test_one_pending_request_per_booking(client: AsyncClient, student, booking):
    await request_reschedule(client, student, booking["id"])
    second = await request_reschedule(client, student, booking["id"], new_start_time="16:00")
    assert second.status_code == 409
    assert "already pending" in second.json()["message"]


@pytest.mark.asyncio
async def test_reschedule_into_taken_slot_rejected(client: AsyncClient, student, teacher, subject, booking):
    await create_booking(client, student, teacher, subject, booking_date=booking_day(4).isoformat(), start_time="14:00")
    response = await request_reschedule(client, student, booking["id"])
    assert response.status_code == 422
    assert "new_start_time" in response.json()["errors"]


@pytest.mark.asyncio
async def test_reschedule_to_same_time_rejected(client: AsyncClient, student, booking):
    response = await request_reschedule(
        client, student, booking["id"], new_booking_date=booking_day(3).isoformat(), new_start_time="10:00"
    )
    assert response.status_code == 422
    assert "new_booking_date" in response.json()["errors"]


@pytest.mark.asyncio
async def test_reschedule_date_must_be_in_future(client: AsyncClient, student, booking):
    response = await request_reschedule(client, student, booking["id"], new_booking_date=booking_day(0).isoformat())
    assert response.status_code == 422
    assert "new_booking_date" in response.json()["errors"]


@pytest.mark.asyncio
async def test_cancelled_booking_cannot_be_changed(client: AsyncClient, student, booking):
    await client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "Travel"}, headers=auth_headers(student))
    response = await request_reschedule(client, student, booking["id"])
    assert response.status_code == 409


# ── Answers ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_other_teacher_cannot_answer(client: AsyncClient, student, second_teacher, booking):
    request = (await request_reschedule(client, student, booking["id"])).json()["data"]
    assert (await answer(client, second_teacher, request["id"], "approve")).status_code == 403
    assert (await answer(client, second_teacher, request["id"], "reject")).status_code == 403


@pytest.mark.asyncio
async def test_reject_keeps_booking(client: AsyncClient, student, teacher, booking):
    request = (await request_reschedule(client, student, booking["id"])).json()["data"]

    response = await answer(client, teacher, request["id"], "reject", teacher_notes="I am away that week")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "rejected"

    current = (await client.get(f"/bookings/{booking['id']}", headers=auth_headers(student))).json()["data"]
    assert current["booking_date"] == booking_day(3).isoformat()
    assert current["start_time"] == "10:00:00"
    assert "Reschedule declined" in await _titles(client, student)

    again = await answer(client, teacher, request["id"], "approve")
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_student_withdraws_request(client: AsyncClient, student, teacher, booking):
    request = (await request_reschedule(client, student, booking["id"])).json()["data"]

    response = await client.post(
        f"/bookings/modifications/{request['id']}/cancel", headers=auth_headers(student)
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"
    assert (await answer(client, teacher, request["id"], "approve")).status_code == 409

    fresh = await request_reschedule(client, student, booking["id"], new_start_time="16:00")
    assert fresh.status_code == 201


@pytest.mark.asyncio
async def test_slot_taken_before_approval_conflicts(client: AsyncClient, student, guardian, teacher, subject, booking):
    request = (await request_reschedule(client, student, booking["id"])).json()["data"]
    taken = await create_booking(
        client, guardian, teacher, subject,
        booking_date=booking_day(4).isoformat(), start_time="14:00", student_id=str(student.id),
    )
    assert taken.status_code == 201

    response = await answer(client, teacher, request["id"], "approve")
    assert response.status_code == 409
    assert "no longer available" in response.json()["message"]


# ── Expiry ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_expired_request_cannot_be_answered(client: AsyncClient, db, student, teacher, booking):
    request = (await request_reschedule(client, student, booking["id"])).json()["data"]
    stored = await db.get(BookingModification, UUID(request["id"]))
    stored.expires_at = datetime.now(timezone.utc) - timedelta(hours=1)
    await db.commit()

    response = await answer(client, teacher, request["id"], "approve")
    assert response.status_code == 409
    assert "expired" in response.json()["message"]

    assert await modifications.expire_stale(db) == 1
    await db.commit()
    assert stored.status == ModificationStatus.EXPIRED
    assert "Reschedule request expired" in await _titles(client, student)

    fresh = await request_reschedule(client, student, booking["id"], new_start_time="16:00")
    assert fresh.status_code == 201


@pytest.mark.asyncio
async def test_expire_stale_skips_live_requests(client: AsyncClient, db, student, booking):
    await request_reschedule(client, student, booking["id"])
    assert await modifications.expire_stale(db) == 0


# ── Rebook & Price Difference ─────────────────────────────────

@pytest.mark.asyncio
async def test_rebook_with_pricier_teacher_charges_difference(
    client: AsyncClient, db, student, teacher, second_teacher, booking
):
    await _set_hourly_rate(db, second_teacher, "7500.00")
    response = await request_rebook(client, student, booking["id"], new_teacher_id=str(second_teacher.id))
    assert response.status_code == 201
    request = response.json()["data"]
    assert request["teacher_id"] == str(second_teacher.id)
    assert request["original_teacher_id"] == str(teacher.id)
    assert Decimal(request["price_difference"]) == Decimal("2500.00")
    assert "Booking rebook request" in await _titles(client, teacher)

    # Only the teacher who would take the session answers
    assert (await answer(client, teacher, request["id"], "approve")).status_code == 403

    approved = await answer(client, second_teacher, request["id"], "approve")
    assert approved.status_code == 200
    moved = approved.json()["booking"]
    assert moved["teacher_id"] == str(second_teacher.id)
    assert Decimal(moved["amount"]) == Decimal("7500.00")
    assert moved["meeting_link"] is None

    assert await _student_balance(db, student) == Decimal("42500.00")
    debits = (await db.execute(
        select(Transaction).where(
            Transaction.booking_id == UUID(booking["id"]),
            Transaction.transaction_type == TransactionType.DEBIT,
        )
    )).scalars().all()
    assert sorted(Decimal(t.amount) for t in debits) == [Decimal("2500.00"), Decimal("5000.00")]
    assert "Booking rebooked" in await _titles(client, teacher)


@pytest.mark.asyncio
async def test_shorter_session_refunds_difference(client: AsyncClient, db, student, teacher, booking):
    """A later cancellation refunds only what is still held."""
    request = (await request_reschedule(client, student, booking["id"], new_duration_minutes=30)).json()["data"]
    assert Decimal(request["price_difference"]) == Decimal("-2500.00")

    approved = await answer(client, teacher, request["id"], "approve")
    assert Decimal(approved.json()["booking"]["amount"]) == Decimal("2500.00")
    assert await _student_balance(db, student) == Decimal("47500.00")

    await client.post(f"/bookings/{booking['id']}/cancel", json={"reason": "Travel"}, headers=auth_headers(student))
    assert await _student_balance(db, student) == Decimal("50000.00")


@pytest.mark.asyncio
async def test_rebook_needs_a_different_teacher_or_subject(client: AsyncClient, student, booking):
    response = await request_rebook(client, student, booking["id"])
    assert response.status_code == 422
    assert "new_teacher_id" in response.json()["errors"]


@pytest.mark.asyncio
async def test_rebook_subject_must_be_taught(client: AsyncClient, db, student, booking):
    physics = Subject(name="Physics", slug="physics")
    db.add(physics)
    await db.commit()

    response = await request_rebook(client, student, booking["id"], new_subject_id=str(physics.id))
    assert response.status_code == 422
    assert "new_subject_id" in response.json()["errors"]


@pytest.mark.asyncio
async def test_rebook_to_unverified_teacher_rejected(client: AsyncClient, student, unverified_teacher, booking):
    response = await request_rebook(client, student, booking["id"], new_teacher_id=str(unverified_teacher.id))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_price_difference_needs_funds(client: AsyncClient, db, student, second_teacher, booking):
    await _set_hourly_rate(db, second_teacher, "100000.00")
    response = await request_rebook(client, student, booking["id"], new_teacher_id=str(second_teacher.id))
    assert response.status_code == 422
    assert "amount" in response.json()["errors"]


# ── Listing ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_requests_are_listed_per_party(client: AsyncClient, student, teacher, second_teacher, booking):
    await request_reschedule(client, student, booking["id"])

    mine = await client.get("/bookings/modifications", headers=auth_headers(student))
    assert mine.status_code == 200
    assert mine.json()["meta"]["total"] == 1

    to_answer = await client.get("/bookings/modifications", params={"status": "pending"}, headers=auth_headers(teacher))
    assert to_answer.json()["meta"]["total"] == 1
    unrelated = await client.get("/bookings/modifications", headers=auth_headers(second_teacher))
    assert unrelated.json()["meta"]["total"] == 0

    on_booking = await client.get(f"/bookings/{booking['id']}/modifications", headers=auth_headers(teacher))
    assert on_booking.json()["has_pending_request"] is True
    assert len(on_booking.json()["data"]) == 1
