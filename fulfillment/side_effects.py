"""
Side effects of lifecycle operations: audit log, customer notifications, operator alerts, asynchronous
refunds and calendar sync.

SideEffectDispatcher.dispatch() is fire-and-forget: it schedules delivery to a sink (the in-process
SideEffectProcessor, or the queue consumed by the worker) and returns. Failures never reach the caller.
SideEffectProcessor steps are idempotent (audit and notification ids derive from the event id) so a
re-queued event can be processed again.
"""
import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from fulfillment.calendar_sync import CalendarSynchronizer
from fulfillment.errors import PreconditionFailed, SideEffectError
from fulfillment.metrics import side_effects_dispatched_total, side_effects_failed_total
from fulfillment.models import (
    AUDIT_LOGS,
    EVENT_BOOKINGS,
    ORDERS,
    AuditLogEntry,
    EntityType,
    EventBooking,
    Order,
    PaymentStatus,
    utcnow,
)
from fulfillment.notifications import Notifier
from fulfillment.payments import PaymentCoordinator
from fulfillment.store import EntityStore

logger = logging.getLogger(__name__)


class NotificationRequest(BaseModel):
    recipient_id: str
    template_key: str
    params: dict = Field(default_factory=dict)
    payload: dict = Field(default_factory=dict)


class SideEffectEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    action: str
    entity_type: EntityType | None = None
    entity_id: str | None = None
    actor_id: str | None = None
    actor_role: str | None = None
    from_status: str | None = None
    to_status: str | None = None
    success: bool = True
    error_code: str | None = None
    details: dict = Field(default_factory=dict)
    notifications: list[NotificationRequest] = Field(default_factory=list)
    operator_alert: str | None = None
    refund_reason: str | None = None
    calendar_action: Literal["create", "delete"] | None = None
    calendar_event_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


Sink = Callable[[SideEffectEvent], Awaitable[None]]


class SideEffectDispatcher:
    def __init__(self, sink: Sink):
        self._sink = sink
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def dispatch(self, event: SideEffectEvent) -> None:
        side_effects_dispatched_total.labels(action=event.action).inc()
        t = asyncio.get_running_loop().create_task(self._deliver(event))
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: SideEffectEvent) -> None:
        try:
            await self._sink(event)
        except Exception as e:
            side_effects_failed_total.labels(step="dispatch").inc()
            logger.error("Side effects for %s (event_id=%s) failed: %s", event.action, event.event_id, e)

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for in-flight deliveries (graceful shutdown)."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout, return_when=asyncio.ALL_COMPLETED)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


ENTITY_COLLECTIONS = {
    EntityType.ORDER: (ORDERS, Order),
    EntityType.EVENT_BOOKING: (EVENT_BOOKINGS, EventBooking),
}


class SideEffectProcessor:
    def __init__(
        self,
        store: EntityStore,
        notifier: Notifier,
        payments: PaymentCoordinator,
        calendar: CalendarSynchronizer,
        operator_alert_actor_id: str = "operations",
    ):
        self._store = store
        self._notifier = notifier
        self._payments = payments
        self._calendar = calendar
        self._operator_id = operator_alert_actor_id

    async def process(self, event: SideEffectEvent) -> None:
        steps = [("audit", self._audit), ("notifications", self._notify)]
        if event.operator_alert:
            steps.append(("operator_alert", self._alert))
        if event.refund_reason is not None:
            steps.append(("refund", self._refund))
        if event.calendar_action:
            steps.append(("calendar", self._sync_calendar))

        failed = []
        for name, step in steps:
            try:
                await step(event)
            except Exception:
                side_effects_failed_total.labels(step=name).inc()
                logger.exception("Side-effect step %s failed for event_id=%s (%s)", name, event.event_id, event.action)
                failed.append(name)
        if failed:
            raise SideEffectError(failed)

    async def _audit(self, event: SideEffectEvent) -> None:
        entry = AuditLogEntry(
            entry_id=event.event_id,
            action=event.action,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            entity_type=event.entity_type.value if event.entity_type else None,
            entity_id=event.entity_id,
            details={
                "from_status": event.from_status,
                "to_status": event.to_status,
                "success": event.success,
                "error_code": event.error_code,
                **event.details,
            },
            timestamp=event.created_at,
        )
        await self._store.insert(AUDIT_LOGS, entry.entry_id, entry.model_dump(mode="json"))

    async def _notify(self, event: SideEffectEvent) -> None:
        for i, n in enumerate(event.notifications):
            await self._notifier.notify(
                n.recipient_id, n.template_key, n.params, n.payload, notification_id=f"{event.event_id}:{i}",
            )

    async def _alert(self, event: SideEffectEvent) -> None:
        logger.warning("Operator alert (%s %s): %s", event.action, event.entity_id, event.operator_alert)
        await self._notifier.notify(
            self._operator_id,
            "notification.operatorAlert",
            {"message": event.operator_alert, "entity_id": event.entity_id, "action": event.action},
            notification_id=f"{event.event_id}:alert",
        )

    async def _refund(self, event: SideEffectEvent) -> None:
        collection, model = ENTITY_COLLECTIONS[event.entity_type]
        doc = await self._store.get(collection, event.entity_id)
        if doc is None:
            logger.warning("Refund skipped: %s %s not found", event.entity_type.value, event.entity_id)
            return
        entity = model.model_validate(doc)
        if entity.payment_status is not PaymentStatus.REFUND_PENDING:
            logger.info("Refund skipped for %s: payment status is %s", event.entity_id, entity.payment_status.value)
            return
        fields = await self._payments.refund(entity, event.refund_reason or "cancelled")
        try:
            await self._store.update(
                collection, event.entity_id, fields,
                expected={"payment_status": PaymentStatus.REFUND_PENDING.value},
            )
        except PreconditionFailed:
            logger.warning("Refund result for %s discarded: payment status changed concurrently", event.entity_id)
            return
        if fields["payment_status"] == PaymentStatus.REFUND_FAILED.value:
            await self._notifier.notify(
                self._operator_id,
                "notification.operatorAlert",
                {"message": f"Refund failed for {event.entity_id}", "entity_id": event.entity_id, "action": "refund"},
                notification_id=f"{event.event_id}:refund_alert",
            )

    async def _sync_calendar(self, event: SideEffectEvent) -> None:
        if event.calendar_action == "create":
            await self._calendar.create_for_booking(event.entity_id)
        else:
            await self._calendar.delete_for_booking(event.entity_id, event.calendar_event_id)
