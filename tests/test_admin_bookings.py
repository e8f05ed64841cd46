"""
tests/test_admin_bookings.py
Tests for the admin booking console: status changes, bulk updates,
teacher reassignment and rescheduling.
"""

from decimal import Decimal
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from services.booking.service import STATS_CACHE_KEY
from shared.models.models import AdminAuditLog, StudentWallet, TeacherWallet, Transaction, TransactionType
from tests.conftest import auth_headers, booking_day
from tests.test_bookings import create_booking


@pytest.fixture
async def booking(client, student, teacher, subject) -> dict:
    response = await create_booking(client, student, teacher, subject, start_time="10:00")
    assert response.status_code == 201
    return response.json()["data"]


@pytest.mark.asyncio
async def test_admin_console_requires_admin(client: AsyncClient, student, booking):
    response = await client.get("/admin/bookings", headers=auth_headers(student))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_lists_and_searches_bookings(client: AsyncClient, admin, booking):
    response = await client.get("/admin/bookings", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["meta"]["total"] == 1

    by_name = await client.get("/admin/bookings", params={"search": "Ada"}, headers=auth_headers(admin))
    assert [b["id"] for b in by_name.json()["data"]] == [booking["id"]]

    no_match = await client.get("/admin/bookings", params={"search": "nobody"}, headers=auth_headers(admin))
    assert no_match.json()["data"] == []


@pytest.mark.asyncio
async def test_stats_are_cached_and_invalidated(client: AsyncClient, admin, booking, fake_redis):
    response = await client.get("/admin/bookings/stats", headers=auth_headers(admin))
    assert response.status_code == 200
    stats = response.json()["data"]
    assert stats["total"] == 1
    assert stats["pending"] == 1
    assert fake_redis.store

    await client.patch(
        f"/admin/bookings/{booking['id']}/status",
        json={"status": "cancelled", "notes": "Teacher unavailable"},
        headers=auth_headers(admin),
    )
    refreshed = await client.get("/admin/bookings/stats", headers=auth_headers(admin))
    assert refreshed.json()["data"]["cancelled"] == 1
    assert refreshed.json()["data"]["pending"] == 0


@pytest.mark.asyncio
async def test_reassign_and_reschedule_invalidate_stats(
    client: AsyncClient, admin, second_teacher, booking, fake_redis
):
    await client.get("/admin/bookings/stats", headers=auth_headers(admin))
    assert STATS_CACHE_KEY in fake_redis.store

    await client.post(
        f"/admin/bookings/{booking['id']}/reassign",
        json={"new_teacher_id": str(second_teacher.id)},
        headers=auth_headers(admin),
    )
    assert STATS_CACHE_KEY not in fake_redis.store

    await client.get("/admin/bookings/stats", headers=auth_headers(admin))
    moved = await client.post(
        f"/admin/bookings/{booking['id']}/reschedule",
        json={"new_date": booking_day(4).isoformat(), "new_time": "15:00"},
        headers=auth_headers(admin),
    )
    assert moved.status_code == 200
    assert STATS_CACHE_KEY not in fake_redis.store


@pytest.mark.asyncio
async def test_show_booking_includes_history_and_notes(client: AsyncClient, admin, booking):
    await client.patch(
        f"/admin/bookings/{booking['id']}/status",
        json={"status": "approved", "notes": "Confirmed by phone"},
        headers=auth_headers(admin),
    )
    response = await client.get(f"/admin/bookings/{booking['id']}", headers=auth_headers(admin))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["booking"]["status"] == "approved"
    assert {h["action"] for h in data["history"]} == {"created", "status"}
    assert data["notes"][0]["content"] == "Confirmed by phone"
    assert data["notes"][0]["note_type"] == "admin_note"


# ── Status ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_same_status_is_rejected(client: AsyncClient, admin, booking):
    response = await client.patch(
        f"/admin/bookings/{booking['id']}/status", json={"status": "pending"}, headers=auth_headers(admin)
    )
    assert response.status_code == 422
    assert "status" in response.json()["errors"]


@pytest.mark.asyncio
async def test_admin_cancel_refunds_and_audits(client: AsyncClient, db, admin, student, booking):
    response = await client.patch(
        f"/admin/bookings/{booking['id']}/status",
        json={"status": "cancelled", "notes": "Duplicate booking"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"

    wallet = (await db.execute(
        select(StudentWallet).where(StudentWallet.user_id == student.id).execution_options(populate_existing=True)
    )).scalar_one()
    assert Decimal(wallet.balance) == Decimal("50000.00")

    audit = (await db.execute(
        select(AdminAuditLog).where(AdminAuditLog.action == "booking.status_changed")
    )).scalar_one()
    assert audit.admin_id == admin.id
    assert audit.payload == {"from": "pending", "to": "cancelled"}


@pytest.mark.asyncio
async def test_admin_completion_pays_teacher(client: AsyncClient, db, admin, teacher, booking):
    response = await client.patch(
        f"/admin/bookings/{booking['id']}/status", json={"status": "completed"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    wallet = (await db.execute(
        select(TeacherWallet).where(TeacherWallet.user_id == teacher.id).execution_options(populate_existing=True)
    )).scalar_one()
    assert Decimal(wallet.balance) == Decimal("4500.00")


@pytest.mark.asyncio
async def test_bulk_status_update(client: AsyncClient, admin, student, teacher, subject, booking):
    second = (await create_booking(client, student, teacher, subject, start_time="14:00")).json()["data"]
    missing = "00000000-0000-0000-0000-000000000000"

    await client.patch(
        f"/admin/bookings/{second['id']}/status", json={"status": "approved"}, headers=auth_headers(admin)
    )
    response = await client.post(
        "/admin/bookings/bulk-status",
        json={"booking_ids": [booking["id"], second["id"], missing], "status": "approved"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["updated"] == 1
    assert data["unchanged"] == [second["id"]]
    assert data["not_found"] == [missing]


# ── Ledger Consistency ────────────────────────────────────────

async def _set_status(client: AsyncClient, admin, booking_id: str, new_status: str):
    return await client.patch(
        f"/admin/bookings/{booking_id}/status", json={"status": new_status}, headers=auth_headers(admin)
    )


async def _balances(db, student, teacher) -> tuple[Decimal, Decimal]:
    student_wallet = (await db.execute(
        select(StudentWallet).where(StudentWallet.user_id == student.id).execution_options(populate_existing=True)
    )).scalar_one()
    teacher_wallet = (await db.execute(
        select(TeacherWallet).where(TeacherWallet.user_id == teacher.id).execution_options(populate_existing=True)
    )).scalar_one()
    return Decimal(student_wallet.balance), Decimal(teacher_wallet.total_earned)


async def _booking_transactions(db, booking_id: str, txn_type: TransactionType) -> list[Transaction]:
    return (await db.execute(
        select(Transaction).where(Transaction.booking_id == UUID(booking_id), Transaction.transaction_type == txn_type)
    )).scalars().all()


@pytest.mark.asyncio
async def test_repeated_completion_pays_teacher_once(client: AsyncClient, db, admin, student, teacher, booking):
    for new_status in ("completed", "approved", "completed"):
        assert (await _set_status(client, admin, booking["id"], new_status)).status_code == 200

    student_balance, earned = await _balances(db, student, teacher)
    assert earned == Decimal("4500.00")
    assert student_balance == Decimal("45000.00")
    assert len(await _booking_transactions(db, booking["id"], TransactionType.SESSION_PAYMENT)) == 1


@pytest.mark.asyncio
async def test_paid_booking_cannot_be_cancelled(client: AsyncClient, db, admin, student, teacher, booking):
    await _set_status(client, admin, booking["id"], "completed")

    for new_status in ("cancelled", "rejected"):
        response = await _set_status(client, admin, booking["id"], new_status)
        assert response.status_code == 409
        assert "already been paid out" in response.json()["message"]

    student_balance, earned = await _balances(db, student, teacher)
    assert student_balance == Decimal("45000.00")
    assert earned == Decimal("4500.00")

    shown = await client.get(f"/admin/bookings/{booking['id']}", headers=auth_headers(admin))
    assert shown.json()["data"]["booking"]["status"] == "completed"
    assert shown.json()["data"]["booking"]["is_teacher_paid"] is True


@pytest.mark.asyncio
async def test_refunded_booking_cannot_be_completed(client: AsyncClient, db, admin, student, teacher, booking):
    await _set_status(client, admin, booking["id"], "cancelled")
    await _set_status(client, admin, booking["id"], "approved")

    response = await _set_status(client, admin, booking["id"], "completed")
    assert response.status_code == 409

    teacher_complete = await client.post(f"/bookings/{booking['id']}/complete", headers=auth_headers(teacher))
    assert teacher_complete.status_code == 409

    student_balance, earned = await _balances(db, student, teacher)
    assert student_balance == Decimal("50000.00")
    assert earned == Decimal("0.00")


@pytest.mark.asyncio
async def test_cancel_then_reject_refunds_once(client: AsyncClient, db, admin, student, teacher, booking):
    for new_status in ("cancelled", "approved", "rejected"):
        assert (await _set_status(client, admin, booking["id"], new_status)).status_code == 200

    student_balance, _ = await _balances(db, student, teacher)
    assert student_balance == Decimal("50000.00")
    assert len(await _booking_transactions(db, booking["id"], TransactionType.REFUND)) == 1


@pytest.mark.asyncio
async def test_bulk_status_skips_paid_bookings(client: AsyncClient, db, admin, student, teacher, subject, booking):
    second = (await create_booking(client, student, teacher, subject, start_time="14:00")).json()["data"]
    await _set_status(client, admin, booking["id"], "completed")

    response = await client.post(
        "/admin/bookings/bulk-status",
        json={"booking_ids": [booking["id"], second["id"]], "status": "cancelled"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["updated"] == 1
    assert [b["id"] for b in data["blocked"]] == [booking["id"]]

    student_balance, earned = await _balances(db, student, teacher)
    assert student_balance == Decimal("45000.00")
    assert earned == Decimal("4500.00")


# ── Reassignment ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_available_teachers_lists_free_teachers(client: AsyncClient, admin, second_teacher, booking):
    response = await client.get(f"/admin/bookings/{booking['id']}/available-teachers", headers=auth_headers(admin))
    assert response.status_code == 200
    assert [t["id"] for t in response.json()["data"]] == [str(second_teacher.id)]


@pytest.mark.asyncio
async def test_reassign_to_available_teacher(client: AsyncClient, admin, second_teacher, booking):
    response = await client.post(
        f"/admin/bookings/{booking['id']}/reassign",
        json={"new_teacher_id": str(second_teacher.id)},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["teacher_id"] == str(second_teacher.id)
    assert data["teacher_name"] == "Kemi Teacher"


@pytest.mark.asyncio
async def test_reassign_to_same_teacher_rejected(client: AsyncClient, admin, teacher, booking):
    response = await client.post(
        f"/admin/bookings/{booking['id']}/reassign",
        json={"new_teacher_id": str(teacher.id)},
        headers=auth_headers(admin),
    )
    assert response.status_code == 422
    assert "new_teacher_id" in response.json()["errors"]


@pytest.mark.asyncio
async def test_reassign_to_busy_teacher_rejected(
    client: AsyncClient, admin, student, second_teacher, subject, booking
):
    clash = await create_booking(client, student, second_teacher, subject, start_time="10:30")
    assert clash.status_code == 201

    response = await client.post(
        f"/admin/bookings/{booking['id']}/reassign",
        json={"new_teacher_id": str(second_teacher.id)},
        headers=auth_headers(admin),
    )
    assert response.status_code == 422
    assert "new_teacher_id" in response.json()["errors"]


# ── Rescheduling ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_moves_booking(client: AsyncClient, admin, booking):
    new_date = booking_day(4).isoformat()
    response = await client.post(
        f"/admin/bookings/{booking['id']}/reschedule",
        json={"new_date": new_date, "new_time": "15:00", "reason": "Student request"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["booking_date"] == new_date
    assert data["start_time"] == "15:00:00"
    assert data["end_time"] == "16:00:00"


@pytest.mark.asyncio
async def test_reschedule_within_own_slot_allowed(client: AsyncClient, admin, booking):
    """The booking's current slot does not block moving it by half an hour."""
    response = await client.post(
        f"/admin/bookings/{booking['id']}/reschedule",
        json={"new_date": booking["booking_date"], "new_time": "10:30"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_reschedule_into_taken_slot_rejected(client: AsyncClient, admin, student, teacher, subject, booking):
    await create_booking(client, student, teacher, subject, start_time="14:00")
    response = await client.post(
        f"/admin/bookings/{booking['id']}/reschedule",
        json={"new_date": booking["booking_date"], "new_time": "14:30"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 422
    assert "new_time" in response.json()["errors"]


@pytest.mark.asyncio
async def test_cancelled_booking_cannot_be_rescheduled(client: AsyncClient, admin, booking):
    await client.patch(
        f"/admin/bookings/{booking['id']}/status", json={"status": "cancelled"}, headers=auth_headers(admin)
    )
    response = await client.post(
        f"/admin/bookings/{booking['id']}/reschedule",
        json={"new_date": booking_day(5).isoformat(), "new_time": "09:00"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_admin_available_slots_treat_own_slot_as_free(client: AsyncClient, admin, booking):
    response = await client.get(
        f"/admin/bookings/{booking['id']}/available-slots",
        params={"date": booking["booking_date"]},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    assert "10:00" in [slot["value"] for slot in response.json()["data"]]


@pytest.mark.asyncio
async def test_delete_booking(client: AsyncClient, admin, booking):
    response = await client.delete(f"/admin/bookings/{booking['id']}", headers=auth_headers(admin))
    assert response.status_code == 200
    missing = await client.get(f"/admin/bookings/{booking['id']}", headers=auth_headers(admin))
    assert missing.status_code == 404
