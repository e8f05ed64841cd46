"""
tests/test_notifications.py
Tests for the in-app inbox and the admin notification console:
composing, scheduling, templates and event triggers.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from services.notification import service
from tests.conftest import auth_headers


async def compose(client: AsyncClient, admin, **overrides):
    payload = {
        "title": "Exam season",
        "message": "Book revision sessions early.",
        "recipients": {"roles": ["student"]},
        "send_now": True,
    }
    payload.update(overrides)
    return await client.post("/admin/notifications", json=payload, headers=auth_headers(admin))


# ── Inbox ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_inbox_lists_delivered_notifications(client: AsyncClient, admin, student):
    await compose(client, admin)
    response = await client.get("/api/notifications", headers=auth_headers(student))
    assert response.status_code == 200
    body = response.json()
    assert body["unread_count"] == 1
    assert body["meta"]["total"] == 1
    item = body["data"][0]
    assert item["title"] == "Exam season"
    assert item["status"] == "delivered"
    assert item["read_at"] is None


@pytest.mark.asyncio
async def test_mark_read_and_unread_count(client: AsyncClient, admin, student):
    await compose(client, admin)
    await compose(client, admin, title="Holiday schedule")

    count = await client.get("/api/notifications/unread-count", headers=auth_headers(student))
    assert count.json()["data"]["unread_count"] == 2

    first = (await client.get("/api/notifications", headers=auth_headers(student))).json()["data"][0]
    read = await client.post(f"/api/notifications/{first['id']}/read", headers=auth_headers(student))
    assert read.status_code == 200
    assert read.json()["data"]["status"] == "read"
    assert read.json()["data"]["read_at"] is not None

    unread = await client.get("/api/notifications", params={"unread_only": True}, headers=auth_headers(student))
    assert len(unread.json()["data"]) == 1

    all_read = await client.post("/api/notifications/read-all", headers=auth_headers(student))
    assert all_read.json()["data"]["updated"] == 1
    count = await client.get("/api/notifications/unread-count", headers=auth_headers(student))
    assert count.json()["data"]["unread_count"] == 0


@pytest.mark.asyncio
async def test_cannot_touch_someone_elses_notification(client: AsyncClient, admin, student, other_student):
    await compose(client, admin, recipients={"user_ids": [str(student.id)]})
    item = (await client.get("/api/notifications", headers=auth_headers(student))).json()["data"][0]

    response = await client.post(f"/api/notifications/{item['id']}/read", headers=auth_headers(other_student))
    assert response.status_code == 404
    response = await client.delete(f"/api/notifications/{item['id']}", headers=auth_headers(other_student))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_removes_from_inbox(client: AsyncClient, admin, student):
    await compose(client, admin)
    item = (await client.get("/api/notifications", headers=auth_headers(student))).json()["data"][0]
    response = await client.delete(f"/api/notifications/{item['id']}", headers=auth_headers(student))
    assert response.status_code == 200
    inbox = await client.get("/api/notifications", headers=auth_headers(student))
    assert inbox.json()["data"] == []


# ── Admin Console ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_compose_requires_audience(client: AsyncClient, admin):
    response = await compose(client, admin, recipients={})
    assert response.status_code == 422
    assert "recipients" in response.json()["errors"]


@pytest.mark.asyncio
async def test_compose_with_no_matching_users(client: AsyncClient, admin):
    response = await compose(client, admin, recipients={"roles": ["guardian"]})
    assert response.status_code == 422
    assert "recipients" in response.json()["errors"]


@pytest.mark.asyncio
async def test_compose_rejects_unknown_channel(client: AsyncClient, admin, student):
    response = await compose(client, admin, channels=["fax"])
    assert response.status_code == 422
    assert "channels" in response.json()["errors"]


@pytest.mark.asyncio
async def test_send_now_delivers_in_app_and_queues_external(
    client: AsyncClient, admin, student, other_student, queued_deliveries
):
    response = await compose(client, admin, channels=["in-app", "email"])
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "sent"
    assert data["stats"]["total"] == 4
    assert data["stats"]["delivered"] == 2
    assert data["stats"]["pending"] == 2
    assert len(queued_deliveries) == 2


@pytest.mark.asyncio
async def test_draft_then_send(client: AsyncClient, admin, student):
    draft = await compose(client, admin, send_now=False)
    assert draft.json()["data"]["status"] == "draft"
    notification_id = draft.json()["data"]["id"]

    inbox = await client.get("/api/notifications", headers=auth_headers(student))
    assert inbox.json()["data"] == []

    sent = await client.post(f"/admin/notifications/{notification_id}/send", headers=auth_headers(admin))
    assert sent.status_code == 200
    assert sent.json()["data"]["status"] == "sent"

    again = await client.post(f"/admin/notifications/{notification_id}/send", headers=auth_headers(admin))
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_future_notification_is_scheduled(client: AsyncClient, db, admin, student):
    later = (datetime.now(timezone.utc) + timedelta(hours=3)).isoformat()
    response = await compose(client, admin, send_now=False, scheduled_at=later)
    assert response.json()["data"]["status"] == "scheduled"

    inbox = await client.get("/api/notifications", headers=auth_headers(student))
    assert inbox.json()["data"] == []

    # Nothing is due yet
    assert await service.send_scheduled_notifications(db) == 0


@pytest.mark.asyncio
async def test_show_notification_lists_recipients(client: AsyncClient, admin, student):
    created = (await compose(client, admin)).json()["data"]
    response = await client.get(f"/admin/notifications/{created['id']}", headers=auth_headers(admin))
    assert response.status_code == 200
    recipients = response.json()["data"]["recipients"]
    assert [r["email"] for r in recipients] == ["ada@example.com"]
    assert recipients[0]["channel"] == "in-app"


@pytest.mark.asyncio
async def test_status_update_and_delete(client: AsyncClient, admin, student):
    created = (await compose(client, admin, send_now=False)).json()["data"]

    bad = await client.patch(
        f"/admin/notifications/{created['id']}/status", json={"status": "scheduled"}, headers=auth_headers(admin)
    )
    assert bad.status_code == 422

    failed = await client.patch(
        f"/admin/notifications/{created['id']}/status", json={"status": "failed"}, headers=auth_headers(admin)
    )
    assert failed.json()["data"]["status"] == "failed"

    deleted = await client.delete(f"/admin/notifications/{created['id']}", headers=auth_headers(admin))
    assert deleted.status_code == 200
    missing = await client.get(f"/admin/notifications/{created['id']}", headers=auth_headers(admin))
    assert missing.status_code == 404


# ── Templates & Triggers ──────────────────────────────────────

async def create_template(client: AsyncClient, admin, **overrides):
    payload = {
        "name": "booking_approved",
        "title": "Session with {teacher_name} confirmed",
        "body": "Booking {booking_number} is confirmed.",
        "type": "booking",
    }
    payload.update(overrides)
    return await client.post("/admin/notifications/templates", json=payload, headers=auth_headers(admin))


@pytest.mark.asyncio
async def test_template_names_are_unique(client: AsyncClient, admin):
    first = await create_template(client, admin)
    assert first.status_code == 201
    duplicate = await create_template(client, admin)
    assert duplicate.status_code == 422
    assert "name" in duplicate.json()["errors"]


@pytest.mark.asyncio
async def test_send_from_template_renders_placeholders(client: AsyncClient, admin, student):
    template = (await create_template(client, admin)).json()["data"]
    response = await client.post(
        f"/admin/notifications/templates/{template['id']}/send",
        json={"data": {"teacher_name": "Tunde"}, "recipients": {"user_ids": [str(student.id)]}},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["title"] == "Session with Tunde confirmed"
    assert data["message"] == "Booking {booking_number} is confirmed."
    assert data["sender_type"] == "admin"


@pytest.mark.asyncio
async def test_trigger_requires_existing_template(client: AsyncClient, admin):
    response = await client.post(
        "/admin/notifications/triggers",
        json={"name": "Approved", "event": "booking.approved", "template_id": "00000000-0000-0000-0000-000000000000"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 422
    assert "template_id" in response.json()["errors"]


@pytest.mark.asyncio
async def test_trigger_event_format_validated(client: AsyncClient, admin):
    template = (await create_template(client, admin)).json()["data"]
    response = await client.post(
        "/admin/notifications/triggers",
        json={"name": "Bad", "event": "Booking Approved", "template_id": template["id"]},
        headers=auth_headers(admin),
    )
    assert response.status_code == 422
    assert "event" in response.json()["errors"]


@pytest.mark.asyncio
async def test_trigger_overrides_default_text(client: AsyncClient, admin, student, teacher, subject):
    from tests.test_bookings import create_booking

    template = (await create_template(client, admin)).json()["data"]
    trigger = await client.post(
        "/admin/notifications/triggers",
        json={"name": "Approved", "event": "booking.approved", "template_id": template["id"], "audience": "student"},
        headers=auth_headers(admin),
    )
    assert trigger.status_code == 201

    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(teacher))

    inbox = (await client.get("/api/notifications", headers=auth_headers(student))).json()["data"]
    assert inbox[0]["message"] == f"Booking {booking['booking_number']} is confirmed."

    listed = await client.get("/admin/notifications/triggers", headers=auth_headers(admin))
    assert [t["event"] for t in listed.json()["data"]] == ["booking.approved"]


@pytest.mark.asyncio
async def test_disabled_trigger_falls_back_to_default_text(client: AsyncClient, admin, student, teacher, subject):
    from tests.test_bookings import create_booking

    template = (await create_template(client, admin)).json()["data"]
    trigger = (await client.post(
        "/admin/notifications/triggers",
        json={"name": "Approved", "event": "booking.approved", "template_id": template["id"]},
        headers=auth_headers(admin),
    )).json()["data"]
    await client.patch(
        f"/admin/notifications/triggers/{trigger['id']}", json={"is_enabled": False}, headers=auth_headers(admin)
    )

    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(teacher))

    inbox = (await client.get("/api/notifications", headers=auth_headers(student))).json()["data"]
    assert inbox[0]["title"] == "Booking approved"


@pytest.mark.asyncio
async def test_console_requires_admin(client: AsyncClient, teacher):
    response = await client.get("/admin/notifications", headers=auth_headers(teacher))
    assert response.status_code == 403


def test_render_leaves_unmatched_braces_alone():
    text = "Use code {PROMO for 10% off, {0} or {} with {name}"
    assert service.render(text, {"name": "Ada"}) == "Use code {PROMO for 10% off, {0} or {} with Ada"
    assert service.render("{missing} stays", {}) == "{missing} stays"


@pytest.mark.asyncio
async def test_send_from_template_with_stray_brace(client: AsyncClient, admin, student):
    template = (await create_template(
        client, admin, name="promo", title="Promo {teacher_name}", body="Use code {PROMO for 10% off"
    )).json()["data"]
    response = await client.post(
        f"/admin/notifications/templates/{template['id']}/send",
        json={"data": {"teacher_name": "Tunde"}, "recipients": {"user_ids": [str(student.id)]}},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    assert response.json()["data"]["message"] == "Use code {PROMO for 10% off"


@pytest.mark.asyncio
async def test_failing_trigger_falls_back_to_default_text(
    client: AsyncClient, admin, student, teacher, subject, monkeypatch
):
    from tests.test_bookings import create_booking

    template = (await create_template(client, admin)).json()["data"]
    await client.post(
        "/admin/notifications/triggers",
        json={"name": "Approved", "event": "booking.approved", "template_id": template["id"], "audience": "student"},
        headers=auth_headers(admin),
    )

    async def broken_template(*args, **kwargs):
        raise RuntimeError("template store unavailable")

    monkeypatch.setattr(service, "create_from_template", broken_template)

    booking = (await create_booking(client, student, teacher, subject)).json()["data"]
    approved = await client.post(f"/bookings/{booking['id']}/approve", json={}, headers=auth_headers(teacher))
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "approved"

    inbox = (await client.get("/api/notifications", headers=auth_headers(student))).json()["data"]
    assert inbox[0]["title"] == "Booking approved"
