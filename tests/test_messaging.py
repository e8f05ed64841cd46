"""
tests/test_messaging.py
Tests for conversations, messages, read state and who may message whom.
"""

import pytest
from httpx import AsyncClient

from tests.conftest import auth_headers
from tests.test_bookings import create_booking


@pytest.fixture
async def booked(client, student, teacher, subject) -> dict:
    response = await create_booking(client, student, teacher, subject)
    assert response.status_code == 201
    return response.json()["data"]


async def start_conversation(client: AsyncClient, sender, recipient, message: str = "Hello, see you on Monday"):
    return await client.post(
        "/api/conversations",
        json={"participant_ids": [str(recipient.id)], "initial_message": message},
        headers=auth_headers(sender),
    )


# ── Permissions ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_student_cannot_message_teacher_without_booking(client: AsyncClient, student, teacher):
    response = await start_conversation(client, student, teacher)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_students_cannot_message_each_other(client: AsyncClient, student, other_student):
    response = await start_conversation(client, student, other_student)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_anyone_can_message_admin(client: AsyncClient, other_student, admin):
    response = await start_conversation(client, other_student, admin, "My top-up is missing")
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_guardian_needs_approved_booking(client: AsyncClient, guardian, teacher, booked):
    response = await start_conversation(client, guardian, teacher)
    assert response.status_code == 403

    await client.post(f"/bookings/{booked['id']}/approve", json={}, headers=auth_headers(teacher))
    response = await start_conversation(client, guardian, teacher)
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_unknown_participant_rejected(client: AsyncClient, student):
    response = await client.post(
        "/api/conversations",
        json={"participant_ids": ["00000000-0000-0000-0000-000000000000"]},
        headers=auth_headers(student),
    )
    assert response.status_code == 422
    assert "participant_ids" in response.json()["errors"]


# ── Conversations ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_direct_conversation_is_reused(client: AsyncClient, student, teacher, booked):
    first = await start_conversation(client, student, teacher)
    assert first.status_code == 201
    assert first.json()["created"] is True

    second = await start_conversation(client, teacher, student, "Yes, Monday works")
    assert second.json()["created"] is False
    assert second.json()["data"]["id"] == first.json()["data"]["id"]

    detail = await client.get(f"/api/conversations/{first.json()['data']['id']}", headers=auth_headers(student))
    assert [m["content"] for m in detail.json()["data"]["messages"]] == ["Yes, Monday works", "Hello, see you on Monday"]


@pytest.mark.asyncio
async def test_unread_counts_and_read(client: AsyncClient, student, teacher, booked):
    conversation = (await start_conversation(client, student, teacher)).json()["data"]

    listing = await client.get("/api/conversations", headers=auth_headers(teacher))
    assert listing.json()["unread_count"] == 1
    summary = listing.json()["data"][0]
    assert summary["participants"][0]["name"] == "Ada Student"
    assert summary["last_message"]["content"] == "Hello, see you on Monday"

    read = await client.post(f"/api/conversations/{conversation['id']}/read", headers=auth_headers(teacher))
    assert read.json()["data"]["updated"] == 1

    listing = await client.get("/api/conversations", headers=auth_headers(teacher))
    assert listing.json()["unread_count"] == 0


@pytest.mark.asyncio
async def test_outsider_cannot_open_conversation(client: AsyncClient, student, teacher, other_student, booked):
    conversation = (await start_conversation(client, student, teacher)).json()["data"]
    response = await client.get(f"/api/conversations/{conversation['id']}", headers=auth_headers(other_student))
    assert response.status_code == 403

    missing = await client.get(
        "/api/conversations/00000000-0000-0000-0000-000000000000", headers=auth_headers(student)
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_archive_and_new_message_restores(client: AsyncClient, student, teacher, booked):
    conversation = (await start_conversation(client, student, teacher)).json()["data"]

    await client.post(f"/api/conversations/{conversation['id']}/archive", headers=auth_headers(teacher))
    active = await client.get("/api/conversations", headers=auth_headers(teacher))
    assert active.json()["data"] == []
    archived = await client.get("/api/conversations", params={"archived": True}, headers=auth_headers(teacher))
    assert len(archived.json()["data"]) == 1

    await client.post(
        "/api/messages",
        json={"conversation_id": conversation["id"], "content": "Bring your past papers"},
        headers=auth_headers(student),
    )
    active = await client.get("/api/conversations", headers=auth_headers(teacher))
    assert [c["id"] for c in active.json()["data"]] == [conversation["id"]]


@pytest.mark.asyncio
async def test_muted_conversation_skips_notifications(client: AsyncClient, student, teacher, booked):
    conversation = (await start_conversation(client, student, teacher)).json()["data"]
    muted = await client.post(f"/api/conversations/{conversation['id']}/mute", headers=auth_headers(teacher))
    assert muted.json()["data"]["is_muted"] is True

    await client.post(
        "/api/messages",
        json={"conversation_id": conversation["id"], "content": "Second message"},
        headers=auth_headers(student),
    )
    inbox = (await client.get("/api/notifications", headers=auth_headers(teacher))).json()["data"]
    message_alerts = [n for n in inbox if n["title"] == "New message from Ada Student"]
    assert len(message_alerts) == 1


# ── Messages ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_edit_and_delete_own_message(client: AsyncClient, student, teacher, booked):
    conversation = (await start_conversation(client, student, teacher)).json()["data"]
    sent = await client.post(
        "/api/messages",
        json={"conversation_id": conversation["id"], "content": "Typo in here"},
        headers=auth_headers(student),
    )
    assert sent.status_code == 201
    message_id = sent.json()["data"]["id"]

    forbidden = await client.patch(
        f"/api/messages/{message_id}", json={"content": "Hijacked"}, headers=auth_headers(teacher)
    )
    assert forbidden.status_code == 403

    edited = await client.patch(
        f"/api/messages/{message_id}", json={"content": "No typo now"}, headers=auth_headers(student)
    )
    assert edited.json()["data"]["content"] == "No typo now"
    assert edited.json()["data"]["edited_at"] is not None

    deleted = await client.delete(f"/api/messages/{message_id}", headers=auth_headers(student))
    assert deleted.status_code == 200
    gone = await client.patch(
        f"/api/messages/{message_id}", json={"content": "Again"}, headers=auth_headers(student)
    )
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_non_participant_cannot_post(client: AsyncClient, student, teacher, other_student, booked):
    conversation = (await start_conversation(client, student, teacher)).json()["data"]
    response = await client.post(
        "/api/messages",
        json={"conversation_id": conversation["id"], "content": "Let me in"},
        headers=auth_headers(other_student),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_search_and_read_all(client: AsyncClient, student, teacher, booked):
    conversation = (await start_conversation(client, student, teacher, "Quadratic equations homework")).json()["data"]
    await client.post(
        "/api/messages",
        json={"conversation_id": conversation["id"], "content": "Also simultaneous equations"},
        headers=auth_headers(student),
    )

    found = await client.get("/api/messages/search", params={"q": "quadratic"}, headers=auth_headers(teacher))
    assert [m["content"] for m in found.json()["data"]] == ["Quadratic equations homework"]

    too_short = await client.get("/api/messages/search", params={"q": "q"}, headers=auth_headers(teacher))
    assert too_short.status_code == 422

    read_all = await client.post("/api/messages/read-all", headers=auth_headers(teacher))
    assert read_all.json()["data"]["updated"] == 2
