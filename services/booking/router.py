"""
services/booking/router.py
Booking endpoints. Every response is an OperationResult envelope and every
booking in it is redacted for the caller.
Statuses: pending → assigned | confirmed → accepted | rejected
          → completed, or cancelled from any open state
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, get_db_context
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.booking import queries
from services.booking.live import LiveBookingList, relay
from services.booking.policy import redact
from services.booking.service import BookingService
from services.booking.store import BookingEventBus
from services.enrichment.summarizer import SummaryClient
from services.identity.resolver import ActorContext, RoleResolver
from shared.middleware.auth import actor_for_token, get_actor, get_optional_actor
from shared.schemas.schemas import (
    BookingAssignRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingStatusUpdateRequest,
    OperationResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Dependencies ──────────────────────────────────────────────

def get_summary_client() -> SummaryClient:
    return SummaryClient(settings)


def get_booking_service(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    summarizer: SummaryClient = Depends(get_summary_client),
) -> BookingService:
    return BookingService(
        db,
        events=BookingEventBus(redis),
        summarizer=summarizer,
        resolver=RoleResolver(db, RedisCache(redis)),
    )


def _ok(booking, actor: ActorContext, **extra) -> OperationResult:
    return OperationResult(success=True, data=redact(booking, actor), **extra)


# ── Create / Read ─────────────────────────────────────────────

@router.post("", response_model=OperationResult, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    actor: ActorContext = Depends(get_optional_actor),
    service: BookingService = Depends(get_booking_service),
):
    """Submit a consultation or pooja request. Signing in is optional."""
    booking = await service.create_booking(data, actor)
    return _ok(booking, actor)


@router.get("", response_model=OperationResult)
async def list_bookings(
    actor: ActorContext = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    """
    Role-shaped listing, newest first. A store failure still answers 200 with
    an empty list and the error set, so dashboards can render it.
    """
    listing = await service.list_for(actor)
    views = [redact(b, actor) for b in listing.bookings]
    if listing.error:
        return OperationResult(success=False, data=views, error=listing.error.to_dict())
    return OperationResult(success=True, data=views)


@router.websocket("/live")
async def live_bookings(
    websocket: WebSocket,
    token: str = Query(...),
    redis=Depends(get_redis),
):
    """
    Live listing. Sends a snapshot, then one message per visible change:
    {"event_type": insert|update|delete, "id", "booking"}.
    """
    async with get_db_context() as db:
        actor = await actor_for_token(token, RoleResolver(db, RedisCache(redis)), redis)
        listing = await queries.list_for(db, actor.id, actor.role) if actor else None

    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    live = LiveBookingList(actor)
    live.seed(listing.bookings)

    await websocket.accept()
    await websocket.send_json({
        "event_type": "snapshot",
        "bookings": [view.model_dump(mode="json") for view in live.view()],
        "error": listing.error.to_dict() if listing.error else None,
    })

    pubsub = redis.pubsub()
    await pubsub.subscribe(settings.BOOKING_EVENTS_CHANNEL)
    try:
        await relay(pubsub, live, websocket.send_json)
    except WebSocketDisconnect:
        logger.info(f"Live feed closed for {actor.id}")
    finally:
        await pubsub.unsubscribe(settings.BOOKING_EVENTS_CHANNEL)
        await pubsub.aclose()


@router.get("/{booking_id}", response_model=OperationResult)
async def get_booking(
    booking_id: UUID,
    actor: ActorContext = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    """A booking from the caller's own listing."""
    booking = await service.get_booking(booking_id, actor)
    return _ok(booking, actor)


# ── Assignment / Lifecycle ────────────────────────────────────

@router.post("/{booking_id}/confirm", response_model=OperationResult)
async def confirm_booking(
    booking_id: UUID,
    actor: ActorContext = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    """Astrologer or priest claims an open booking of their service type."""
    outcome = await service.confirm_and_assign(booking_id, actor)
    return _ok(
        outcome.booking,
        actor,
        summary_generated=outcome.summary_generated,
        enrichment_error=outcome.enrichment_error,
    )


@router.patch("/{booking_id}/status", response_model=OperationResult)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    actor: ActorContext = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.update_status(booking_id, data.status, actor)
    return _ok(booking, actor)


@router.post("/{booking_id}/assign", response_model=OperationResult)
async def assign_booking(
    booking_id: UUID,
    data: BookingAssignRequest,
    request: Request,
    actor: ActorContext = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    """Admin sets or overrides the assigned provider."""
    booking = await service.reassign(
        booking_id,
        data.assignee_id,
        actor,
        ip_address=request.client.host if request.client else None,
    )
    return _ok(booking, actor)


@router.post("/{booking_id}/cancel", response_model=OperationResult)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    actor: ActorContext = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    """Requester or admin cancels an open booking."""
    booking = await service.cancel(booking_id, actor, data.reason)
    return _ok(booking, actor)
