"""
tests/test_subjects.py
Tests for the subject catalogue and subject teacher listings.
"""

import pytest
from httpx import AsyncClient

from tests.conftest import auth_headers


@pytest.mark.asyncio
async def test_list_subjects_is_public(client: AsyncClient, subject):
    response = await client.get("/subjects")
    assert response.status_code == 200
    assert [s["slug"] for s in response.json()["data"]] == ["mathematics"]

    filtered = await client.get("/subjects", params={"q": "chem"})
    assert filtered.json()["data"] == []


@pytest.mark.asyncio
async def test_admin_creates_subject_with_slug(client: AsyncClient, admin):
    response = await client.post(
        "/subjects", json={"name": "Further Mathematics"}, headers=auth_headers(admin)
    )
    assert response.status_code == 201
    assert response.json()["data"]["slug"] == "further-mathematics"

    duplicate = await client.post(
        "/subjects", json={"name": "Further  Mathematics!"}, headers=auth_headers(admin)
    )
    assert duplicate.status_code == 422
    assert "slug" in duplicate.json()["errors"]


@pytest.mark.asyncio
async def test_only_admin_creates_subjects(client: AsyncClient, teacher):
    response = await client.post("/subjects", json={"name": "Physics"}, headers=auth_headers(teacher))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_deactivated_subject_hidden(client: AsyncClient, admin, subject):
    response = await client.patch(
        f"/subjects/{subject.id}", json={"is_active": False}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert (await client.get("/subjects")).json()["data"] == []

    everything = await client.get("/subjects", params={"include_inactive": True})
    assert len(everything.json()["data"]) == 1


@pytest.mark.asyncio
async def test_subject_teachers_only_verified(client: AsyncClient, subject, teacher, second_teacher, unverified_teacher):
    response = await client.get(f"/subjects/{subject.id}/teachers")
    assert response.status_code == 200
    body = response.json()
    assert [t["name"] for t in body["data"]] == ["Kemi Teacher", "Tunde Teacher"]
    assert body["meta"]["total"] == 2


@pytest.mark.asyncio
async def test_subject_teachers_unknown_subject(client: AsyncClient):
    response = await client.get("/subjects/00000000-0000-0000-0000-000000000000/teachers")
    assert response.status_code == 404
