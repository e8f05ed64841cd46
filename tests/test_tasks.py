"""
tests/test_tasks.py
Tests for the background work behind the Celery tasks: scheduled sends,
reminder timing and delivery pre-checks.
"""

from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from services.notification import service
from shared.models.models import Notification
from tasks.notification_tasks import _dispatch, _email_html, _session_start
from tests.conftest import auth_headers


@pytest.mark.asyncio
async def test_due_scheduled_notification_is_sent(client: AsyncClient, db, admin, student):
    later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
    created = await client.post(
        "/admin/notifications",
        json={"title": "Mock exams", "message": "Mock exams start Monday.",
              "recipients": {"roles": ["student"]}, "scheduled_at": later},
        headers=auth_headers(admin),
    )
    assert created.json()["data"]["status"] == "scheduled"

    notification = (await db.execute(select(Notification))).scalar_one()
    notification.scheduled_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db.commit()

    assert await service.send_scheduled_notifications(db) == 1
    await db.commit()

    inbox = await client.get("/api/notifications", headers=auth_headers(student))
    assert [n["title"] for n in inbox.json()["data"]] == ["Mock exams"]


def test_session_start_uses_teacher_timezone():
    booking = SimpleNamespace(booking_date=date(2026, 3, 2), start_time=time(10, 0))
    starts_at = _session_start(booking, "Africa/Lagos")
    assert starts_at.astimezone(timezone.utc) == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def test_session_start_unknown_timezone_falls_back_to_utc():
    booking = SimpleNamespace(booking_date=date(2026, 3, 2), start_time=time(10, 0))
    assert _session_start(booking, "Mars/Olympus") == datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def test_dispatch_requires_contact_details():
    user = SimpleNamespace(email=None, phone=None, fcm_token=None)
    notification = SimpleNamespace(id="n1", type="custom", title="Hi", message="Hello", notification_metadata={})
    assert _dispatch("email", user, notification) == "User has no email address"
    assert _dispatch("sms", user, notification) == "User has no phone number"
    assert _dispatch("push", user, notification) == "User has no push token"
    assert _dispatch("fax", user, notification) == "Unknown channel: fax"


def test_email_body_is_escaped():
    body = _email_html("Results <out>", "Line one\nLine two")
    assert "Results &lt;out&gt;" in body
    assert "Line one<br>Line two" in body
