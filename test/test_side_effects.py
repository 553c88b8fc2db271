import asyncio

import pytest

from _helper import documents, seed_booking
from fulfillment.calendar_sync import CalendarSynchronizer, FakeCalendarClient
from fulfillment.errors import SideEffectError
from fulfillment.models import AUDIT_LOGS, EVENT_BOOKINGS, NOTIFICATIONS, EntityType
from fulfillment.notifications import Notifier
from fulfillment.side_effects import NotificationRequest, SideEffectDispatcher, SideEffectEvent


async def test_dispatch_returns_before_sink_runs():
    started = asyncio.Event()
    release = asyncio.Event()
    seen = []

    async def slow_sink(event):
        started.set()
        await release.wait()
        seen.append(event.action)

    dispatcher = SideEffectDispatcher(slow_sink)
    dispatcher.dispatch(SideEffectEvent(action="Test"))
    assert dispatcher.in_flight == 1
    assert seen == []

    await started.wait()
    release.set()
    await dispatcher.drain()
    assert seen == ["Test"]
    assert dispatcher.in_flight == 0


async def test_sink_failure_is_swallowed(caplog):
    async def broken_sink(event):
        raise RuntimeError("queue down")

    dispatcher = SideEffectDispatcher(broken_sink)
    dispatcher.dispatch(SideEffectEvent(action="Test"))
    await dispatcher.drain()
    assert "queue down" in caplog.text


async def test_processing_is_idempotent(container, seeded):
    event = SideEffectEvent(
        action="UpdateOrderStatus",
        entity_type=EntityType.ORDER,
        entity_id="o1",
        actor_id="admin1",
        notifications=[NotificationRequest(recipient_id="cust1", template_key="notification.orderReady")],
        operator_alert="check o1",
    )
    await container.processor.process(event)
    await container.processor.process(event)
    assert len(documents(seeded, AUDIT_LOGS)) == 1
    assert len(documents(seeded, NOTIFICATIONS)) == 2


class BrokenNotifier(Notifier):
    async def notify(self, recipient_id, template_key, params=None, payload=None, notification_id=None):
        raise ConnectionError("push service down")


async def test_failed_steps_reported_together(container, seeded):
    container.processor._notifier = BrokenNotifier()
    event = SideEffectEvent(
        action="X",
        notifications=[NotificationRequest(recipient_id="cust1", template_key="t")],
        operator_alert="boom",
    )
    with pytest.raises(SideEffectError) as exc:
        await container.processor.process(event)
    assert exc.value.failed_steps == ["notifications", "operator_alert"]
    # the audit step still ran
    assert len(documents(seeded, AUDIT_LOGS)) == 1


@pytest.fixture
def calendar(seeded, calendar_client):
    return CalendarSynchronizer(seeded, calendar_client, timeout_seconds=1.0)


async def test_calendar_created_once(calendar, seeded, calendar_client):
    await seed_booking(seeded, "e1", status="Confirmed")
    assert await calendar.create_for_booking("e1")
    assert await calendar.create_for_booking("e1")
    assert len(calendar_client.events) == 1
    assert (await seeded.get(EVENT_BOOKINGS, "e1"))["calendar_event_id"] in calendar_client.events


async def test_calendar_skips_unconfirmed_booking(calendar, seeded, calendar_client):
    await seed_booking(seeded, "e1", status="PendingAdminApproval")
    assert await calendar.create_for_booking("e1")
    assert calendar_client.calls == []


async def test_calendar_create_failure_flags_booking(calendar, seeded, calendar_client):
    calendar_client.fail_create = True
    await seed_booking(seeded, "e1", status="Scheduled")
    assert not await calendar.create_for_booking("e1")
    doc = await seeded.get(EVENT_BOOKINGS, "e1")
    assert doc["needs_manual_calendar_check"] is True
    assert doc["processing_error"].startswith("calendar create failed")
    assert doc["calendar_event_id"] is None


class UnreachableCalendar(FakeCalendarClient):
    def create_event(self, details):
        raise ConnectionError("calendar unreachable")


async def test_calendar_client_exception_flags_booking(seeded):
    calendar = CalendarSynchronizer(seeded, UnreachableCalendar(), timeout_seconds=1.0)
    await seed_booking(seeded, "e1", status="Confirmed")
    assert not await calendar.create_for_booking("e1")
    doc = await seeded.get(EVENT_BOOKINGS, "e1")
    assert doc["needs_manual_calendar_check"] is True
    assert "ConnectionError" in doc["processing_error"]
    assert doc["calendar_event_id"] is None
