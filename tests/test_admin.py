"""
tests/test_admin.py
Tests for admin-only endpoints: dashboard, user moderation and the audit log.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from shared.models.models import RefreshToken
from tests.conftest import PASSWORD, auth_headers
from tests.test_bookings import create_booking


# ── Access Control ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_non_admin_is_forbidden(client: AsyncClient, student, teacher, guardian):
    for user in (student, teacher, guardian):
        response = await client.get("/admin/dashboard", headers=auth_headers(user))
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_anonymous_is_unauthorised(client: AsyncClient):
    response = await client.get("/admin/users")
    assert response.status_code == 401


# ── Dashboard ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dashboard_counts(client: AsyncClient, admin, student, teacher, subject):
    await create_booking(client, student, teacher, subject)

    response = await client.get("/admin/dashboard", headers=auth_headers(admin))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["users"]["student"] == 1
    assert data["users"]["teacher"] == 1
    assert data["users"]["super-admin"] == 1
    assert data["bookings"]["total"] == 1
    assert data["bookings"]["pending"] == 1
    assert data["verification"]["verified_teachers"] == 1


# ── User Moderation ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_users_filters(client: AsyncClient, admin, student, other_student, teacher):
    students = await client.get("/admin/users", params={"role": "student"}, headers=auth_headers(admin))
    assert students.json()["meta"]["total"] == 2

    found = await client.get("/admin/users", params={"search": "tunde"}, headers=auth_headers(admin))
    assert [u["email"] for u in found.json()["data"]] == ["tunde@example.com"]


@pytest.mark.asyncio
async def test_get_user_includes_booking_count(client: AsyncClient, admin, student, teacher, subject):
    await create_booking(client, student, teacher, subject)
    response = await client.get(f"/admin/users/{teacher.id}", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["data"]["booking_count"] == 1


@pytest.mark.asyncio
async def test_suspend_revokes_sessions(client: AsyncClient, db, admin, student):
    login = await client.post("/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
    refresh_token = login.json()["data"]["refresh_token"]

    response = await client.post(
        f"/admin/users/{student.id}/suspend", json={"reason": "Chargeback dispute"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert response.json()["data"]["is_active"] is False

    tokens = (await db.execute(
        select(RefreshToken).where(RefreshToken.user_id == student.id).execution_options(populate_existing=True)
    )).scalars().all()
    assert tokens and all(t.is_revoked for t in tokens)

    refreshed = await client.post("/auth/refresh", json={"refresh_token": refresh_token})
    assert refreshed.status_code == 401

    again = await client.post(f"/admin/users/{student.id}/suspend", headers=auth_headers(admin))
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_cannot_suspend_admin(client: AsyncClient, admin):
    response = await client.post(f"/admin/users/{admin.id}/suspend", headers=auth_headers(admin))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_activate_user(client: AsyncClient, admin, student):
    already = await client.post(f"/admin/users/{student.id}/activate", headers=auth_headers(admin))
    assert already.status_code == 409

    await client.post(f"/admin/users/{student.id}/suspend", headers=auth_headers(admin))
    response = await client.post(f"/admin/users/{student.id}/activate", headers=auth_headers(admin))
    assert response.status_code == 200
    assert response.json()["data"]["is_active"] is True


@pytest.mark.asyncio
async def test_unknown_user_not_found(client: AsyncClient, admin):
    response = await client.get("/admin/users/00000000-0000-0000-0000-000000000000", headers=auth_headers(admin))
    assert response.status_code == 404


# ── Audit Log ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_audit_log_records_moderation(client: AsyncClient, admin, student):
    await client.post(
        f"/admin/users/{student.id}/suspend", json={"reason": "Spam"}, headers=auth_headers(admin)
    )
    await client.post(f"/admin/users/{student.id}/activate", headers=auth_headers(admin))

    response = await client.get("/admin/audit-logs", headers=auth_headers(admin))
    assert response.status_code == 200
    assert {log["action"] for log in response.json()["data"]} == {"suspend_user", "activate_user"}

    suspended = await client.get(
        "/admin/audit-logs", params={"action": "SUSPEND_USER"}, headers=auth_headers(admin)
    )
    entry = suspended.json()["data"][0]
    assert entry["admin_name"] == "Sam Admin"
    assert entry["entity_id"] == str(student.id)
    assert entry["notes"] == "Spam"
