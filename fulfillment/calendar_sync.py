"""
Calendar sync for event bookings. At most one calendar event per booking (guarded by calendar_event_id);
failures flag the booking for manual follow-up instead of failing the lifecycle operation.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4

from fulfillment.errors import PreconditionFailed
from fulfillment.models import EVENT_BOOKINGS, EventBooking, EventBookingStatus, utcnow
from fulfillment.store import EntityStore

logger = logging.getLogger(__name__)

SYNCABLE_STATUSES = (EventBookingStatus.CONFIRMED, EventBookingStatus.SCHEDULED)


@dataclass(frozen=True)
class CalendarResult:
    success: bool
    event_id: str | None = None
    error: str | None = None


class CalendarClient(ABC):
    """Blocking calendar API client."""

    @abstractmethod
    def create_event(self, details: dict) -> CalendarResult:
        ...

    @abstractmethod
    def delete_event(self, event_id: str) -> CalendarResult:
        ...


class FakeCalendarClient(CalendarClient):
    def __init__(self) -> None:
        self.events: dict[str, dict] = {}
        self.fail_create = False
        self.fail_delete = False
        self.calls: list[dict] = []

    def create_event(self, details: dict) -> CalendarResult:
        self.calls.append({"method": "create_event", **details})
        if self.fail_create:
            return CalendarResult(success=False, error="calendar unavailable")
        event_id = f"cal_{uuid4().hex[:12]}"
        self.events[event_id] = details
        return CalendarResult(success=True, event_id=event_id)

    def delete_event(self, event_id: str) -> CalendarResult:
        self.calls.append({"method": "delete_event", "event_id": event_id})
        if self.fail_delete:
            return CalendarResult(success=False, error="calendar unavailable")
        self.events.pop(event_id, None)
        return CalendarResult(success=True, event_id=event_id)


def event_details(booking: EventBooking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "summary": f"Event booking {booking.booking_id}",
        "location": booking.location,
        "start": booking.start_time.isoformat() if booking.start_time else None,
        "end": booking.end_time.isoformat() if booking.end_time else None,
        "lead": booking.assigned_lead_actor_id,
    }


class CalendarSynchronizer:
    def __init__(self, store: EntityStore, client: CalendarClient, timeout_seconds: float = 10.0):
        self._store = store
        self._client = client
        self._timeout = timeout_seconds

    async def _call(self, fn, *args) -> CalendarResult:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._timeout)
        except asyncio.TimeoutError:
            return CalendarResult(success=False, error="calendar timeout")
        except Exception as e:
            logger.exception("Calendar %s raised", getattr(fn, "__name__", fn))
            return CalendarResult(success=False, error=f"{type(e).__name__}: {e}")

    async def create_for_booking(self, booking_id: str) -> bool:
        """Create the booking's calendar event if it has none. Returns False if the booking was flagged."""
        doc = await self._store.get(EVENT_BOOKINGS, booking_id)
        if doc is None:
            logger.warning("Calendar create skipped: booking %s not found", booking_id)
            return True
        booking = EventBooking.model_validate(doc)
        if booking.calendar_event_id:
            logger.info("Calendar event already exists for booking %s (%s)", booking_id, booking.calendar_event_id)
            return True
        if booking.booking_status not in SYNCABLE_STATUSES:
            logger.info("Calendar create skipped: booking %s is %s", booking_id, booking.booking_status.value)
            return True

        result = await self._call(self._client.create_event, event_details(booking))
        now = utcnow().isoformat()
        if not result.success:
            logger.error("Calendar create failed for booking %s: %s", booking_id, result.error)
            await self._store.update(EVENT_BOOKINGS, booking_id, {
                "needs_manual_calendar_check": True,
                "processing_error": f"calendar create failed: {result.error}",
                "updated_at": now,
            })
            return False
        try:
            await self._store.update(
                EVENT_BOOKINGS,
                booking_id,
                {"calendar_event_id": result.event_id, "needs_manual_calendar_check": False, "updated_at": now},
                expected={"calendar_event_id": None},
            )
        except PreconditionFailed:
            logger.warning("Booking %s got a calendar event concurrently; %s is orphaned", booking_id, result.event_id)
            await self._store.update(EVENT_BOOKINGS, booking_id, {"needs_manual_calendar_check": True, "updated_at": now})
            return False
        logger.info("Calendar event %s created for booking %s", result.event_id, booking_id)
        return True

    async def delete_for_booking(self, booking_id: str, event_id: str | None) -> bool:
        if not event_id:
            return True
        doc = await self._store.get(EVENT_BOOKINGS, booking_id)
        if doc is None or doc.get("calendar_event_id") != event_id:
            logger.info("Calendar event %s for booking %s already removed", event_id, booking_id)
            return True
        result = await self._call(self._client.delete_event, event_id)
        now = utcnow().isoformat()
        if not result.success:
            logger.error("Calendar delete failed for booking %s event %s: %s", booking_id, event_id, result.error)
            await self._store.update(EVENT_BOOKINGS, booking_id, {"needs_manual_calendar_check": True, "updated_at": now})
            return False
        await self._store.update(EVENT_BOOKINGS, booking_id, {"calendar_event_id": None, "updated_at": now})
        return True
