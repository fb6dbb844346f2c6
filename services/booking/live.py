"""
services/booking/live.py
Per-viewer live booking list.

Change events ({event_type, row}) from the events channel are merged by
booking id, newest `updated_at` wins. Rows that fall out of the viewer's
listing turn into deletes for that viewer. A local optimistic status change
is held as pending until settle() replaces it with the server's answer.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from pydantic import ValidationError

from shared.models.models import BookingStatus
from shared.schemas.schemas import BookingChangeEvent, BookingRecord, BookingView
from services.booking.policy import redact
from services.booking.queries import listing_includes

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    record: BookingRecord
    # Last server-confirmed row while a local change is pending.
    base: Optional[BookingRecord] = None

    @property
    def pending(self) -> bool:
        return self.base is not None

    @property
    def authoritative(self) -> BookingRecord:
        return self.base or self.record


class LiveBookingList:
    def __init__(self, actor):
        self.actor = actor
        self._rows: dict[uuid.UUID, _Entry] = {}

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, booking_id) -> bool:
        return booking_id in self._rows

    def seed(self, bookings: Iterable) -> None:
        self._rows = {}
        for booking in bookings:
            record = booking if isinstance(booking, BookingRecord) else BookingRecord.model_validate(booking)
            self._rows[record.id] = _Entry(record=record)

    def get(self, booking_id: uuid.UUID) -> Optional[BookingRecord]:
        entry = self._rows.get(booking_id)
        return entry.record if entry else None

    def is_pending(self, booking_id: uuid.UUID) -> bool:
        entry = self._rows.get(booking_id)
        return bool(entry and entry.pending)

    def apply(self, event: Union[BookingChangeEvent, dict]) -> Optional[BookingChangeEvent]:
        """
        Merge one change event. Returns the change as this viewer should see
        it, or None when nothing visible changed (duplicate, stale, or a row
        outside the listing).
        """
        if not isinstance(event, BookingChangeEvent):
            event = BookingChangeEvent.model_validate(event)
        row = event.row
        existing = self._rows.get(row.id)

        if event.event_type == "delete":
            if existing is None:
                return None
            del self._rows[row.id]
            return BookingChangeEvent(event_type="delete", row=existing.record)

        if existing is not None:
            if row.updated_at < existing.authoritative.updated_at:
                logger.debug(f"Ignoring stale event for booking {row.id}")
                return None
            if not existing.pending and row.model_dump() == existing.record.model_dump():
                return None

        if not listing_includes(self.actor.id, self.actor.role, row):
            if existing is None:
                return None
            del self._rows[row.id]
            return BookingChangeEvent(event_type="delete", row=row)

        self._rows[row.id] = _Entry(record=row)
        return BookingChangeEvent(event_type="update" if existing else "insert", row=row)

    def begin_local_update(self, booking_id: uuid.UUID, status: BookingStatus) -> BookingRecord:
        """Show `status` immediately; the server's answer arrives via settle()."""
        entry = self._rows.get(booking_id)
        if entry is None:
            raise KeyError(booking_id)
        base = entry.authoritative
        entry.record = base.model_copy(update={"status": BookingStatus(status).value})
        entry.base = base
        return entry.record

    def settle(self, booking_id: uuid.UUID, row=None) -> Optional[BookingRecord]:
        """
        Resolve a pending local change. With the server's row (success) it
        replaces the tentative one; without it (failure) the last confirmed
        row comes back.
        """
        entry = self._rows.get(booking_id)
        if entry is None:
            if row is None:
                return None
            return self._settle_new(row)

        if row is None:
            entry.record = entry.authoritative
            entry.base = None
            return entry.record

        record = row if isinstance(row, BookingRecord) else BookingRecord.model_validate(row)
        if record.updated_at >= entry.authoritative.updated_at:
            entry.record = record
        else:
            entry.record = entry.authoritative
        entry.base = None
        if not listing_includes(self.actor.id, self.actor.role, entry.record):
            del self._rows[booking_id]
            return None
        return entry.record

    def _settle_new(self, row) -> Optional[BookingRecord]:
        change = self.apply(BookingChangeEvent(event_type="insert", row=BookingRecord.model_validate(row)))
        return change.row if change and change.event_type != "delete" else None

    def view(self) -> list[BookingView]:
        """Newest first, redacted for this viewer."""
        records = sorted(
            (entry.record for entry in self._rows.values()),
            key=lambda r: r.created_at,
            reverse=True,
        )
        return [redact(record, self.actor) for record in records]

    def render(self, change: BookingChangeEvent) -> dict:
        if change.event_type == "delete":
            return {"event_type": "delete", "id": str(change.row.id), "booking": None}
        return {
            "event_type": change.event_type,
            "id": str(change.row.id),
            "booking": redact(change.row, self.actor).model_dump(mode="json"),
        }


async def relay(pubsub, live: LiveBookingList, send) -> None:
    """
    Forward channel messages to `send` (e.g. websocket.send_json) as
    projected, redacted changes. Runs until the subscription ends.
    """
    async for message in pubsub.listen():
        if message.get("type") != "message":
            continue
        try:
            event = BookingChangeEvent.model_validate_json(message["data"])
        except ValidationError as e:
            logger.warning(f"Dropping malformed booking event: {e}")
            continue
        change = live.apply(event)
        if change is not None:
            await send(live.render(change))
