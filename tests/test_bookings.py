"""
tests/test_bookings.py
Booking endpoints end to end: submission, role-shaped listings, redaction,
claiming, status changes, reassignment and cancellation.
"""

import json
import uuid
from datetime import date
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from config.settings import settings
from main import app
from services.booking.queries import BookingListing
from services.booking.router import get_summary_client
from services.enrichment.summarizer import SummaryClient
from shared.models.models import Booking, BookingStatus, FamilyProfile, FamilyRelation, ServiceType, User
from shared.utils.errors import UpstreamUnavailable
from tests.conftest import auth_headers

CONSULTATION = {
    "service_type": "consultation",
    "name": "Asha Verma",
    "phone": "9876543210",
    "problem_category": "Career",
    "preferred_slot": "Evening",
    "dob": "1990-05-17",
    "birth_time": "7:05 AM",
    "birth_state": "Maharashtra",
    "description": "Facing repeated delays in a job change since last year.",
}

POOJA = {
    "service_type": "pooja",
    "name": "Asha Verma",
    "email": "asha@example.com",
    "pooja_type": "Griha Pravesh",
    "preferred_slot": "Morning",
    "description": "House warming next month.",
}


def _ids(response) -> set:
    return {item["id"] for item in response.json()["data"]}


# ── Submission ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_signed_in_user_creates_consultation(client: AsyncClient, user: User, redis):
    response = await client.post("/bookings", headers=auth_headers(user), json=CONSULTATION)
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert data["status"] == BookingStatus.PENDING.value
    assert data["assigned_to"] is None
    assert data["requester_id"] == str(user.id)
    assert data["email"] == user.email
    assert data["detail_visible"] is True

    channel, message = redis.published[-1]
    assert channel == settings.BOOKING_EVENTS_CHANNEL
    assert json.loads(message)["event_type"] == "insert"


@pytest.mark.asyncio
async def test_anonymous_submission_is_accepted(client: AsyncClient):
    response = await client.post("/bookings", json=POOJA)
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["requester_id"] is None
    assert data["service_type"] == "pooja"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"problem_category": None},
        {"phone": "98765"},
        {"birth_time": "19:05"},
        {"email": "not-an-email"},
        {"service_type": "tarot"},
        {"name": None},
    ],
)
async def test_invalid_submission_is_rejected(client: AsyncClient, overrides):
    payload = {**CONSULTATION, **overrides}
    response = await client.post("/bookings", json=payload)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_family_profile_prefills_natal_details(client: AsyncClient, db, user: User):
    family = FamilyProfile(
        user_id=user.id,
        full_name="Meera Verma",
        relation=FamilyRelation.PARENT,
        birth_date=date(1962, 11, 2),
        birth_time="5:40 PM",
        birth_place="Gujarat",
    )
    db.add(family)
    await db.commit()

    payload = {k: v for k, v in CONSULTATION.items() if k not in ("name", "dob", "birth_time", "birth_state")}
    payload["family_profile_id"] = str(family.id)
    response = await client.post("/bookings", headers=auth_headers(user), json=payload)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["name"] == "Meera Verma"
    assert data["dob"] == "1962-11-02"
    assert data["birth_time"] == "5:40 PM"
    assert data["birth_state"] == "Gujarat"
    assert data["family_profile_id"] == str(family.id)


@pytest.mark.asyncio
async def test_someone_elses_family_profile_is_not_found(
    client: AsyncClient, db, user: User, other_user: User
):
    family = FamilyProfile(user_id=other_user.id, full_name="Someone Else")
    db.add(family)
    await db.commit()

    payload = {**CONSULTATION, "family_profile_id": str(family.id)}
    response = await client.post("/bookings", headers=auth_headers(user), json=payload)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


# ── Listings ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_listing_requires_auth(client: AsyncClient):
    response = await client.get("/bookings")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_listings_are_shaped_by_role(
    client: AsyncClient, make_booking, user, other_user, astrologer, astrologer_two, priest, admin_user
):
    mine = await make_booking(requester=user)
    theirs = await make_booking(requester=other_user, assigned_to=astrologer, status=BookingStatus.CONFIRMED)
    held_elsewhere = await make_booking(assigned_to=astrologer_two, status=BookingStatus.CONFIRMED)
    pooja = await make_booking(service_type=ServiceType.POOJA, requester=user)

    as_user = await client.get("/bookings", headers=auth_headers(user))
    assert _ids(as_user) == {str(mine.id), str(pooja.id)}

    as_astrologer = await client.get("/bookings", headers=auth_headers(astrologer))
    assert _ids(as_astrologer) == {str(mine.id), str(theirs.id)}

    as_priest = await client.get("/bookings", headers=auth_headers(priest))
    assert _ids(as_priest) == {str(pooja.id)}

    as_admin = await client.get("/bookings", headers=auth_headers(admin_user))
    assert _ids(as_admin) == {str(mine.id), str(theirs.id), str(held_elsewhere.id), str(pooja.id)}


@pytest.mark.asyncio
async def test_open_bookings_are_redacted_for_providers(client: AsyncClient, make_booking, astrologer):
    open_booking = await make_booking()
    own = await make_booking(assigned_to=astrologer, status=BookingStatus.CONFIRMED)

    response = await client.get("/bookings", headers=auth_headers(astrologer))
    rows = {item["id"]: item for item in response.json()["data"]}

    redacted = rows[str(open_booking.id)]
    assert redacted["detail_visible"] is False
    assert redacted["name"] is None
    assert redacted["phone"] is None
    assert redacted["description"] is None
    assert redacted["problem_category"] == "Career"

    full = rows[str(own.id)]
    assert full["detail_visible"] is True
    assert full["phone"] == "9876543210"


@pytest.mark.asyncio
async def test_listing_is_newest_first(client: AsyncClient, make_booking, admin_user):
    first = await make_booking()
    second = await make_booking()

    response = await client.get("/bookings", headers=auth_headers(admin_user))
    ids = [item["id"] for item in response.json()["data"]]
    assert ids.index(str(second.id)) < ids.index(str(first.id))


@pytest.mark.asyncio
async def test_listing_store_failure_degrades(client: AsyncClient, user):
    failing = AsyncMock(return_value=BookingListing(error=UpstreamUnavailable("Could not load bookings")))
    with patch("services.booking.queries.list_for", failing):
        response = await client.get("/bookings", headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["data"] == []
    assert body["error"]["code"] == "UPSTREAM_UNAVAILABLE"


@pytest.mark.asyncio
async def test_booking_outside_listing_is_not_found(client: AsyncClient, make_booking, user, other_user):
    booking = await make_booking(requester=other_user)

    response = await client.get(f"/bookings/{booking.id}", headers=auth_headers(user))
    assert response.status_code == 404

    response = await client.get(f"/bookings/{booking.id}", headers=auth_headers(other_user))
    assert response.status_code == 200
    assert response.json()["data"]["id"] == str(booking.id)


# ── Claiming ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_astrologer_confirms_booking(client: AsyncClient, make_booking, astrologer):
    booking = await make_booking()

    response = await client.post(f"/bookings/{booking.id}/confirm", headers=auth_headers(astrologer))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["summary_generated"] is False
    assert body["enrichment_error"] is None
    assert body["data"]["status"] == "confirmed"
    assert body["data"]["assigned_to"] == str(astrologer.id)
    assert body["data"]["detail_visible"] is True


@pytest.mark.asyncio
async def test_confirm_reports_generated_summary(client: AsyncClient, make_booking, astrologer):
    booking = await make_booking()

    def gemini(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "Career timing worries."}]}}]})

    summarizer = SummaryClient(
        settings.model_copy(update={"GEMINI_API_KEY": "test-key"}),
        transport=httpx.MockTransport(gemini),
    )
    app.dependency_overrides[get_summary_client] = lambda: summarizer

    response = await client.post(f"/bookings/{booking.id}/confirm", headers=auth_headers(astrologer))

    body = response.json()
    assert body["summary_generated"] is True
    assert body["data"]["ai_summary"] == "Career timing worries."


@pytest.mark.asyncio
async def test_confirm_reports_enrichment_error(client: AsyncClient, make_booking, astrologer):
    booking = await make_booking()

    def gemini(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="internal")

    summarizer = SummaryClient(
        settings.model_copy(update={"GEMINI_API_KEY": "test-key"}),
        transport=httpx.MockTransport(gemini),
    )
    app.dependency_overrides[get_summary_client] = lambda: summarizer

    response = await client.post(f"/bookings/{booking.id}/confirm", headers=auth_headers(astrologer))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["summary_generated"] is False
    assert body["enrichment_error"] == "Summary API returned 500"
    assert body["error"] is None
    assert body["data"]["assigned_to"] == str(astrologer.id)


@pytest.mark.asyncio
async def test_second_claim_is_a_conflict(client: AsyncClient, make_booking, astrologer, astrologer_two):
    booking = await make_booking()

    first = await client.post(f"/bookings/{booking.id}/confirm", headers=auth_headers(astrologer))
    second = await client.post(f"/bookings/{booking.id}/confirm", headers=auth_headers(astrologer_two))

    assert first.status_code == 200
    assert second.status_code == 409
    body = second.json()
    assert body["success"] is False
    assert body["error"]["code"] == "ALREADY_ASSIGNED"


@pytest.mark.asyncio
async def test_user_cannot_confirm(client: AsyncClient, make_booking, user):
    booking = await make_booking(requester=user)

    response = await client.post(f"/bookings/{booking.id}/confirm", headers=auth_headers(user))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "PERMISSION_DENIED"


@pytest.mark.asyncio
async def test_priest_cannot_confirm_consultation(client: AsyncClient, make_booking, priest):
    booking = await make_booking()

    response = await client.post(f"/bookings/{booking.id}/confirm", headers=auth_headers(priest))

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_confirm_unknown_booking(client: AsyncClient, priest):
    response = await client.post(f"/bookings/{uuid.uuid4()}/confirm", headers=auth_headers(priest))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


# ── Status / Assign / Cancel ──────────────────────────────────

@pytest.mark.asyncio
async def test_assigned_priest_moves_booking_forward(client: AsyncClient, make_booking, priest):
    booking = await make_booking(service_type=ServiceType.POOJA, assigned_to=priest, status=BookingStatus.CONFIRMED)

    accepted = await client.patch(
        f"/bookings/{booking.id}/status", headers=auth_headers(priest), json={"status": "accepted"}
    )
    assert accepted.status_code == 200
    assert accepted.json()["data"]["status"] == "accepted"

    completed = await client.patch(
        f"/bookings/{booking.id}/status", headers=auth_headers(priest), json={"status": "completed"}
    )
    assert completed.json()["data"]["status"] == "completed"

    reopened = await client.patch(
        f"/bookings/{booking.id}/status", headers=auth_headers(priest), json={"status": "accepted"}
    )
    assert reopened.status_code == 422
    assert reopened.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_unknown_status_value_is_rejected(client: AsyncClient, make_booking, admin_user):
    booking = await make_booking()
    response = await client.patch(
        f"/bookings/{booking.id}/status", headers=auth_headers(admin_user), json={"status": "archived"}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_assigns_booking(client: AsyncClient, db, make_booking, admin_user, astrologer):
    booking = await make_booking()

    response = await client.post(
        f"/bookings/{booking.id}/assign",
        headers=auth_headers(admin_user),
        json={"assignee_id": str(astrologer.id)},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["assigned_to"] == str(astrologer.id)
    assert data["status"] == "assigned"


@pytest.mark.asyncio
async def test_provider_cannot_assign(client: AsyncClient, make_booking, astrologer, astrologer_two):
    booking = await make_booking()

    response = await client.post(
        f"/bookings/{booking.id}/assign",
        headers=auth_headers(astrologer),
        json={"assignee_id": str(astrologer_two.id)},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_requester_cancels_with_reason(client: AsyncClient, db, make_booking, user):
    booking = await make_booking(requester=user)

    response = await client.post(
        f"/bookings/{booking.id}/cancel",
        headers=auth_headers(user),
        json={"reason": "Travelling that week"},
    )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"
    assert response.json()["data"]["cancellation_reason"] == "Travelling that week"

    db.expire_all()
    stored = await db.scalar(select(Booking).where(Booking.id == booking.id))
    assert stored.status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancelling_twice_succeeds_without_changes(client: AsyncClient, make_booking, redis, user):
    booking = await make_booking(requester=user)
    headers = auth_headers(user)

    first = await client.post(f"/bookings/{booking.id}/cancel", headers=headers, json={"reason": "Travelling"})
    published = len(redis.published)
    second = await client.post(f"/bookings/{booking.id}/cancel", headers=headers, json={"reason": "Again"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["success"] is True
    assert second.json()["data"]["cancellation_reason"] == "Travelling"
    assert len(redis.published) == published


@pytest.mark.asyncio
async def test_other_user_cannot_cancel(client: AsyncClient, make_booking, user, other_user):
    booking = await make_booking(requester=user)

    response = await client.post(
        f"/bookings/{booking.id}/cancel", headers=auth_headers(other_user), json={}
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "PERMISSION_DENIED"
