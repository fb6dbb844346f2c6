"""
tests/test_users.py
Tests for the caller's profile and their family profiles.
"""

import uuid

import pytest
from httpx import AsyncClient

from shared.models.models import FamilyProfile, Profile, User
from tests.conftest import auth_headers

MOTHER = {
    "full_name": "Meera Verma",
    "relation": "Parent",
    "birth_date": "1962-11-02",
    "birth_time": "5:40 PM",
    "birth_place": "Gujarat",
}


@pytest.mark.asyncio
async def test_get_own_profile(client: AsyncClient, user: User):
    response = await client.get("/users/me", headers=auth_headers(user))
    assert response.status_code == 200
    data = response.json()
    assert data["email"] == user.email
    assert data["role"] == "user"
    assert data["profile"]["full_name"] == "Asha Verma"


@pytest.mark.asyncio
async def test_update_profile_with_natal_details(client: AsyncClient, user: User):
    headers = auth_headers(user)
    before = await client.get("/users/me", headers=headers)
    assert before.json()["profile_complete"] is False

    response = await client.put(
        "/users/me",
        headers=headers,
        json={
            "birth_date": "1994-03-21",
            "birth_time": "6:15 AM",
            "birth_place": "Pune",
            "zodiac_sign": "Aries",
            "phone": "9123456780",
        },
    )
    assert response.status_code == 200
    data = response.json()
    assert data["profile"]["birth_date"] == "1994-03-21"
    assert data["profile"]["birth_time"] == "6:15 AM"
    assert data["profile"]["birth_place"] == "Pune"
    assert data["profile"]["full_name"] == "Asha Verma"
    assert data["profile_complete"] is True

    again = await client.get("/users/me", headers=headers)
    assert again.json()["profile"]["birth_place"] == "Pune"
    assert again.json()["profile_complete"] is True


@pytest.mark.asyncio
async def test_partial_natal_details_leave_profile_incomplete(client: AsyncClient, user: User):
    response = await client.put(
        "/users/me",
        headers=auth_headers(user),
        json={"birth_date": "1994-03-21", "birth_place": "Pune"},
    )
    assert response.status_code == 200
    assert response.json()["profile"]["birth_time"] is None
    assert response.json()["profile_complete"] is False


@pytest.mark.asyncio
async def test_profile_complete_without_profile_row(client: AsyncClient, db, user: User):
    profile = await db.get(Profile, user.id)
    await db.delete(profile)
    await db.commit()

    response = await client.get("/auth/me", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["profile"] is None
    assert response.json()["profile_complete"] is False


@pytest.mark.asyncio
@pytest.mark.parametrize("birth_time", ["06:15", "6:15am", "24:00 PM"])
async def test_update_profile_validates_birth_time(client: AsyncClient, user: User, birth_time):
    response = await client.put("/users/me", headers=auth_headers(user), json={"birth_time": birth_time})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_update_profile_validates_phone(client: AsyncClient, user: User):
    response = await client.put("/users/me", headers=auth_headers(user), json={"phone": "12ab"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_profile_requires_auth(client: AsyncClient):
    assert (await client.get("/users/me")).status_code == 401


# ── Family Profiles ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_family_profile_crud(client: AsyncClient, user: User):
    headers = auth_headers(user)

    created = await client.post("/users/me/family-profiles", headers=headers, json=MOTHER)
    assert created.status_code == 201
    profile_id = created.json()["id"]
    assert created.json()["user_id"] == str(user.id)
    assert created.json()["birth_time"] == "5:40 PM"

    listed = await client.get("/users/me/family-profiles", headers=headers)
    assert [p["id"] for p in listed.json()] == [profile_id]

    updated = await client.put(
        f"/users/me/family-profiles/{profile_id}",
        headers=headers,
        json={"birth_place": "Rajasthan", "full_name": None},
    )
    assert updated.status_code == 200
    assert updated.json()["birth_place"] == "Rajasthan"
    assert updated.json()["full_name"] == "Meera Verma"

    deleted = await client.delete(f"/users/me/family-profiles/{profile_id}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Family profile deleted"

    listed = await client.get("/users/me/family-profiles", headers=headers)
    assert listed.json() == []


@pytest.mark.asyncio
async def test_someone_elses_family_profile_is_hidden(client: AsyncClient, db, user: User, other_user: User):
    family = FamilyProfile(user_id=other_user.id, full_name="Someone Else")
    db.add(family)
    await db.commit()

    headers = auth_headers(user)
    assert (await client.get("/users/me/family-profiles", headers=headers)).json() == []

    response = await client.put(
        f"/users/me/family-profiles/{family.id}", headers=headers, json={"birth_place": "Goa"}
    )
    assert response.status_code == 404

    response = await client.delete(f"/users/me/family-profiles/{family.id}", headers=headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_unknown_family_profile_returns_404(client: AsyncClient, user: User):
    response = await client.delete(f"/users/me/family-profiles/{uuid.uuid4()}", headers=auth_headers(user))
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("birth_time", ["17:40", "5:40pm", "13:00 PM", "0:15 AM"])
async def test_family_profile_birth_time_format(client: AsyncClient, user: User, birth_time):
    response = await client.post(
        "/users/me/family-profiles",
        headers=auth_headers(user),
        json={**MOTHER, "birth_time": birth_time},
    )
    assert response.status_code == 422
