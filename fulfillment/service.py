"""
Lifecycle operations for orders, event bookings and box inventory.

Every operation: load + authorize the actor -> load the target -> plan the transition -> run the payment
action (synchronous, may block the transition) -> write (conditional update, or one transaction when
stock moves with it) -> dispatch side effects (detached). Failures come back as
OperationResult(success=False, error=<message key>, error_code=<code>), never as exceptions.
"""
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fulfillment.errors import (
    ActorNotFound,
    BoxNotFound,
    ErrorCode,
    InternalError,
    InvalidArgument,
    InvalidStatusTransition,
    LeadActorInvalid,
    LifecycleError,
    MinOrderNotMet,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
    ResourceInactive,
    ResourceNotFound,
    Unauthenticated,
)
from fulfillment.inventory import InventoryLedger
from fulfillment.metrics import lifecycle_operations_failed_total, lifecycle_transitions_total
from fulfillment.models import (
    EVENT_BOOKINGS,
    EVENT_RESOURCES,
    ORDERS,
    USERS,
    Actor,
    AdminApprovalDetails,
    ApprovalDecision,
    EntityType,
    EventBooking,
    EventBookingItem,
    EventBookingStatus,
    EventResource,
    Order,
    OrderStatus,
    utcnow,
)
from fulfillment.order_state import CANCELLABLE_BOOKING_STATUSES
from fulfillment.payments import PaymentAction, PaymentCoordinator, PaymentOutcome
from fulfillment.permissions import PermissionResolver
from fulfillment.side_effects import NotificationRequest, SideEffectDispatcher, SideEffectEvent
from fulfillment.store import EntityStore, Transaction
from fulfillment.transitions import StatusTransitionEngine, TransitionPlan

logger = logging.getLogger(__name__)

LEAD_ROLES = frozenset({"Courier"})

# Targets update_event_status accepts; the rest have dedicated operations
EVENT_STATUS_TARGETS = frozenset({
    EventBookingStatus.PREPARING.value,
    EventBookingStatus.IN_PROGRESS.value,
    EventBookingStatus.COMPLETED.value,
    EventBookingStatus.DELAYED.value,
    EventBookingStatus.REQUIRES_ATTENTION.value,
})
ASSIGNABLE_BOOKING_STATUSES = (EventBookingStatus.CONFIRMED, EventBookingStatus.SCHEDULED)

ORDER_NOTIFICATIONS = {
    OrderStatus.READY.value: "notification.orderReady",
    OrderStatus.COMPLETED.value: "notification.orderDelivered",
    OrderStatus.CANCELLED.value: "notification.orderCancelled",
}
BOOKING_NOTIFICATIONS = {
    EventBookingStatus.PENDING_CUSTOMER_CONFIRMATION.value: "notification.eventApproved",
    EventBookingStatus.REJECTED.value: "notification.eventRejected",
    EventBookingStatus.CONFIRMED.value: "notification.eventConfirmed",
    EventBookingStatus.SCHEDULED.value: "notification.eventScheduled",
    EventBookingStatus.IN_PROGRESS.value: "notification.eventStarted",
    EventBookingStatus.COMPLETED.value: "notification.eventCompleted",
    EventBookingStatus.DELAYED.value: "notification.eventDelayed",
    EventBookingStatus.CANCELLED.value: "notification.eventCancelled",
}
ALERT_STATUSES = frozenset({EventBookingStatus.DELAYED.value, EventBookingStatus.REQUIRES_ATTENTION.value})


@dataclass(frozen=True)
class Caller:
    """Authenticated identity of the request. actor_id None means unauthenticated."""

    actor_id: str | None
    role: str | None = None


class OperationResult(BaseModel):
    success: bool
    error: str | None = None
    error_code: str | None = None
    requires_action: bool = False
    action_url: str | None = None
    data: dict = Field(default_factory=dict)


# --- operation inputs ---

class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid")


class UpdateOrderStatusInput(_Input):
    order_id: str = Field(min_length=1)
    new_status: str
    details: dict | None = None


class CancelOrderInput(_Input):
    order_id: str = Field(min_length=1)
    reason: str | None = None


class UpdateEventStatusInput(_Input):
    booking_id: str = Field(min_length=1)
    new_status: str
    details: dict | None = None


class ApproveEventBookingInput(_Input):
    booking_id: str = Field(min_length=1)
    decision: ApprovalDecision
    notes: str | None = None
    updated_items: list[EventBookingItem] | None = None
    updated_total: int | None = Field(default=None, ge=0)


class ConfirmEventAgreementInput(_Input):
    booking_id: str = Field(min_length=1)


class AssignEventResourcesInput(_Input):
    booking_id: str = Field(min_length=1)
    assignments: dict[str, list[str]] = Field(default_factory=dict)
    lead_actor_id: str | None = None


class CancelEventBookingInput(_Input):
    booking_id: str = Field(min_length=1)
    reason: str | None = None


class AdjustBoxInventoryInput(_Input):
    box_id: str = Field(min_length=1)
    adjustments: list[dict]
    reason: str


def _parse(model: type[BaseModel], data) -> BaseModel:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ())) or None
        raise InvalidArgument(f"{loc}: {err.get('msg')}", field=loc) from e


class LifecycleService:
    def __init__(
        self,
        store: EntityStore,
        permissions: PermissionResolver,
        engine: StatusTransitionEngine,
        payments: PaymentCoordinator,
        inventory: InventoryLedger,
        dispatcher: SideEffectDispatcher,
        min_event_order: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._permissions = permissions
        self._engine = engine
        self._payments = payments
        self._inventory = inventory
        self._dispatcher = dispatcher
        self._min_event_order = min_event_order
        self._clock = clock

    # --- plumbing ---

    async def _run(
        self,
        action: str,
        caller: Caller,
        entity_id: str | None,
        fn: Callable[[], Awaitable[OperationResult]],
    ) -> OperationResult:
        start = time.monotonic()
        try:
            return await fn()
        except LifecycleError as e:
            lifecycle_operations_failed_total.labels(operation=action, error_code=e.code.value).inc()
            logger.warning("%s failed for %s (actor=%s): %s [%s]", action, entity_id, caller.actor_id, e, e.code.value)
            return self._failed(action, caller, entity_id, e)
        except Exception:
            logger.exception("%s crashed for %s (actor=%s)", action, entity_id, caller.actor_id)
            e = InternalError()
            lifecycle_operations_failed_total.labels(operation=action, error_code=e.code.value).inc()
            return self._failed(action, caller, entity_id, e)
        finally:
            logger.info("%s %s finished in %.1fms", action, entity_id, (time.monotonic() - start) * 1000)

    def _failed(self, action: str, caller: Caller, entity_id: str | None, e: LifecycleError) -> OperationResult:
        if caller.actor_id:
            self._dispatcher.dispatch(SideEffectEvent(
                action=f"{action}Failed",
                entity_id=entity_id,
                actor_id=caller.actor_id,
                actor_role=caller.role,
                success=False,
                error_code=e.code.value,
                details={"error": str(e)},
            ))
        return OperationResult(success=False, error=e.message_key, error_code=e.code.value)

    async def _actor(self, caller: Caller) -> Actor:
        if not caller.actor_id:
            raise Unauthenticated()
        doc = await self._store.get(USERS, caller.actor_id)
        if doc is None:
            raise ActorNotFound(caller.actor_id)
        actor = Actor.model_validate(doc)
        if not actor.is_active:
            raise PermissionDenied("userInactive")
        return actor

    async def _authorize(self, caller: Caller, actor: Actor, permission_id: str) -> None:
        if not await self._permissions.has_permission(actor.actor_id, caller.role, permission_id):
            raise PermissionDenied(permission_id)

    async def _order(self, order_id: str) -> Order:
        doc = await self._store.get(ORDERS, order_id)
        if doc is None:
            raise NotFound("order", order_id)
        return Order.model_validate(doc)

    async def _booking(self, booking_id: str) -> EventBooking:
        doc = await self._store.get(EVENT_BOOKINGS, booking_id)
        if doc is None:
            raise NotFound("booking", booking_id)
        return EventBooking.model_validate(doc)

    async def _write(
        self,
        collection: str,
        plan: TransitionPlan,
        fields: dict,
        payment: PaymentOutcome,
        stage: Callable[[Transaction], Awaitable[dict]] | None = None,
    ) -> None:
        """Persist a planned transition. `stage` folds extra writes (stock) into the same transaction."""
        try:
            if stage is None:
                await self._store.update(collection, plan.entity_id, fields, append=plan.append(), expected=plan.expected())
            else:
                async def _tx(tx: Transaction) -> None:
                    doc = await tx.get(collection, plan.entity_id)
                    if doc is None:
                        raise NotFound(plan.entity_type.value, plan.entity_id)
                    if doc.get(plan.status_field) != plan.from_status:
                        raise PreconditionFailed(f"{plan.entity_id} changed to {doc.get(plan.status_field)}")
                    extra = await stage(tx)
                    tx.update(collection, plan.entity_id, {**fields, **extra}, plan.append())

                await self._store.run_transaction(_tx)
        except LifecycleError:
            if payment.action in (PaymentAction.CAPTURE, PaymentAction.CHARGE, PaymentAction.VOID):
                logger.error(
                    "%s %s: payment %s executed (%s) but the status write failed",
                    plan.entity_type.value, plan.entity_id, payment.action.value, payment.payment_status,
                )
                self._dispatcher.dispatch(SideEffectEvent(
                    action="PaymentWriteFailed",
                    entity_type=plan.entity_type,
                    entity_id=plan.entity_id,
                    success=False,
                    operator_alert=f"Payment {payment.action.value} for {plan.entity_id} not recorded",
                    details={"payment_fields": payment.fields},
                ))
            raise
        if not plan.noop:
            lifecycle_transitions_total.labels(
                entity_type=plan.entity_type.value, from_status=plan.from_status, to_status=plan.to_status,
            ).inc()

    def _emit(
        self,
        action: str,
        actor: Actor,
        plan: TransitionPlan,
        customer_id: str,
        payment: PaymentOutcome | None = None,
        details: dict | None = None,
        **extra,
    ) -> None:
        templates = ORDER_NOTIFICATIONS if plan.entity_type is EntityType.ORDER else BOOKING_NOTIFICATIONS
        notifications = []
        template = templates.get(plan.to_status)
        if template and not plan.noop:
            notifications.append(NotificationRequest(
                recipient_id=customer_id,
                template_key=template,
                params={"id": plan.entity_id, "status": plan.to_status},
                payload={"entity_type": plan.entity_type.value, "entity_id": plan.entity_id},
            ))
        alert = payment.operator_alert if payment else None
        if not alert and plan.entity_type is EntityType.EVENT_BOOKING and plan.to_status in ALERT_STATUSES and not plan.noop:
            alert = f"Booking {plan.entity_id} is {plan.to_status}: {plan.details.reason}"
        body = {
            "from_status": plan.from_status,
            "to_status": plan.to_status,
            "noop": plan.noop,
            **(details or {}),
        }
        if payment and payment.payment_status:
            body["payment_status"] = payment.payment_status
        self._dispatcher.dispatch(SideEffectEvent(
            action=action,
            entity_type=plan.entity_type,
            entity_id=plan.entity_id,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            from_status=plan.from_status,
            to_status=plan.to_status,
            details=body,
            notifications=notifications,
            operator_alert=alert,
            refund_reason=(plan.details.reason or "cancelled") if payment and payment.refund_requested else None,
            **extra,
        ))

    @staticmethod
    def _ok(plan: TransitionPlan, payment: PaymentOutcome | None = None, **data) -> OperationResult:
        result = OperationResult(success=True, data={"status": plan.to_status, "noop": plan.noop, **data})
        if payment is not None:
            if payment.payment_status:
                result.data["payment_status"] = payment.payment_status
            result.requires_action = payment.requires_action
            result.action_url = payment.action_url
        return result

    # --- orders ---

    async def update_order_status(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(UpdateOrderStatusInput, data)
            actor = await self._actor(caller)
            await self._authorize(caller, actor, "order:updateStatus")
            order = await self._order(inp.order_id)
            if inp.new_status == OrderStatus.CANCELLED.value:
                return await self._cancel_order(actor, order, inp.details, "UpdateOrderStatus")

            plan = self._engine.plan(EntityType.ORDER, order, actor, inp.new_status, inp.details)
            if plan.noop:
                return self._ok(plan)
            payment = await self._payments.decide_and_execute(EntityType.ORDER, order, plan)
            await self._write(ORDERS, plan, {**plan.fields, **payment.fields}, payment)
            logger.info("Order %s: %s -> %s by %s", order.order_id, plan.from_status, plan.to_status, actor.actor_id)
            self._emit("UpdateOrderStatus", actor, plan, order.customer_id, payment)
            return self._ok(plan, payment)

        return await self._run("UpdateOrderStatus", caller, _entity_id(data, "order_id"), op)

    async def cancel_order(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(CancelOrderInput, data)
            actor = await self._actor(caller)
            order = await self._order(inp.order_id)
            owner = order.customer_id == actor.actor_id
            await self._authorize(caller, actor, "order:cancel:own" if owner else "order:cancel:any")
            return await self._cancel_order(actor, order, {"reason": inp.reason}, "CancelOrder")

        return await self._run("CancelOrder", caller, _entity_id(data, "order_id"), op)

    async def _cancel_order(self, actor: Actor, order: Order, details, action: str) -> OperationResult:
        plan = self._engine.plan(EntityType.ORDER, order, actor, OrderStatus.CANCELLED.value, details)
        if plan.noop:
            return self._ok(plan)
        payment = await self._payments.decide_and_execute(EntityType.ORDER, order, plan)
        fields = {**plan.fields, **payment.fields}

        deltas: dict[str, int] = {}
        for item in order.items:
            if item.quantity > 0:
                deltas[item.product_id] = deltas.get(item.product_id, 0) + item.quantity

        outcome = {"restored": False}
        if deltas and not order.inventory_restored:
            async def restore(tx: Transaction) -> dict:
                try:
                    await self._inventory.stage(tx, order.box_id, deltas)
                except BoxNotFound:
                    outcome["restored"] = False
                    return {"processing_error": f"inventory restore skipped: box {order.box_id} not found"}
                outcome["restored"] = True
                return {"inventory_restored": True}

            await self._write(ORDERS, plan, fields, payment, stage=restore)
            if not outcome["restored"]:
                logger.error("Order %s cancelled without stock restore: box %s not found", order.order_id, order.box_id)
                if not payment.operator_alert:
                    payment.operator_alert = f"Stock for cancelled order {order.order_id} not restored"
        else:
            await self._write(ORDERS, plan, fields, payment)
        restored = outcome["restored"]

        logger.info(
            "Order %s cancelled by %s (payment=%s, stock restored=%s)",
            order.order_id, actor.actor_id, payment.payment_status, restored,
        )
        self._emit(action, actor, plan, order.customer_id, payment,
                   details={"inventory_restored": restored, "reason": plan.details.reason})
        return self._ok(plan, payment, inventory_restored=restored)

    # --- event bookings ---

    async def update_event_status(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(UpdateEventStatusInput, data)
            if inp.new_status not in EVENT_STATUS_TARGETS:
                raise InvalidArgument(
                    f"status {inp.new_status!r} cannot be set here", field="new_status", code=ErrorCode.INVALID_STATUS,
                )
            actor = await self._actor(caller)
            await self._authorize(caller, actor, "event:updateStatus")
            booking = await self._booking(inp.booking_id)
            plan = self._engine.plan(EntityType.EVENT_BOOKING, booking, actor, inp.new_status, inp.details)
            if plan.noop:
                return self._ok(plan)
            payment = await self._payments.decide_and_execute(EntityType.EVENT_BOOKING, booking, plan)
            await self._write(EVENT_BOOKINGS, plan, {**plan.fields, **payment.fields}, payment)
            self._emit("UpdateEventStatus", actor, plan, booking.customer_id, payment)
            return self._ok(plan, payment)

        return await self._run("UpdateEventStatus", caller, _entity_id(data, "booking_id"), op)

    async def approve_event_booking(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(ApproveEventBookingInput, data)
            actor = await self._actor(caller)
            await self._authorize(caller, actor, "event:approve")
            booking = await self._booking(inp.booking_id)

            rejected = inp.decision is ApprovalDecision.REJECTED
            target = EventBookingStatus.REJECTED if rejected else EventBookingStatus.PENDING_CUSTOMER_CONFIRMATION
            plan = self._engine.plan(EntityType.EVENT_BOOKING, booking, actor, target.value, {"reason": inp.notes})
            if plan.noop:
                return self._ok(plan)

            now = self._clock()
            extra: dict = {
                "admin_approval_details": AdminApprovalDetails(
                    decision=inp.decision, actor_id=actor.actor_id, timestamp=now, notes=inp.notes,
                ).model_dump(mode="json"),
            }
            if inp.decision is ApprovalDecision.APPROVED_WITH_CHANGES:
                if not inp.updated_items:
                    raise InvalidArgument("updated_items required for ApprovedWithChanges", field="updated_items")
                total = inp.updated_total
                if total is None:
                    total = sum(item.line_total() for item in inp.updated_items)
                if self._min_event_order and total < self._min_event_order:
                    raise MinOrderNotMet(total, self._min_event_order)
                extra["selected_items"] = [item.model_dump(mode="json") for item in inp.updated_items]
                extra["total_amount_smallest_unit"] = total
            if not rejected:
                extra["agreement_sent_at"] = now.isoformat()

            payment = PaymentOutcome(action=PaymentAction.NONE)
            await self._write(EVENT_BOOKINGS, plan, {**plan.fields, **extra}, payment)
            self._emit("ApproveEventBooking", actor, plan, booking.customer_id,
                       details={"decision": inp.decision.value, "notes": inp.notes})
            return self._ok(plan, decision=inp.decision.value,
                            total_amount_smallest_unit=extra.get("total_amount_smallest_unit",
                                                                 booking.total_amount_smallest_unit))

        return await self._run("ApproveEventBooking", caller, _entity_id(data, "booking_id"), op)

    async def confirm_event_agreement(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(ConfirmEventAgreementInput, data)
            actor = await self._actor(caller)
            booking = await self._booking(inp.booking_id)
            if booking.customer_id != actor.actor_id:
                raise PermissionDenied("notBookingOwner", code=ErrorCode.NOT_BOOKING_OWNER)
            plan = self._engine.plan(
                EntityType.EVENT_BOOKING, booking, actor, EventBookingStatus.CONFIRMED.value,
                {"reason": "Agreement confirmed by customer"},
            )
            if plan.noop:
                return self._ok(plan)
            payment = await self._payments.decide_and_execute(EntityType.EVENT_BOOKING, booking, plan)
            fields = {**plan.fields, **payment.fields, "agreement_confirmed_at": self._clock().isoformat()}
            await self._write(EVENT_BOOKINGS, plan, fields, payment)
            self._emit("ConfirmEventAgreement", actor, plan, booking.customer_id, payment, calendar_action="create")
            return self._ok(plan, payment)

        return await self._run("ConfirmEventAgreement", caller, _entity_id(data, "booking_id"), op)

    async def assign_event_resources(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(AssignEventResourcesInput, data)
            actor = await self._actor(caller)
            await self._authorize(caller, actor, "event:assignResource")
            booking = await self._booking(inp.booking_id)
            if booking.booking_status not in ASSIGNABLE_BOOKING_STATUSES:
                raise InvalidStatusTransition(booking.booking_status.value, EventBookingStatus.SCHEDULED.value)

            for resource_type, resource_ids in inp.assignments.items():
                for resource_id in resource_ids:
                    doc = await self._store.get(EVENT_RESOURCES, resource_id)
                    if doc is None:
                        raise ResourceNotFound(resource_id)
                    if not EventResource.model_validate(doc).is_active:
                        raise ResourceInactive(resource_id)
            if inp.lead_actor_id:
                lead = await self._store.get(USERS, inp.lead_actor_id)
                if lead is None or lead.get("role") not in LEAD_ROLES:
                    raise LeadActorInvalid(inp.lead_actor_id)

            plan = self._engine.plan(
                EntityType.EVENT_BOOKING, booking, actor, EventBookingStatus.SCHEDULED.value,
                {"reason": "Resources assigned"},
            )
            fields = {
                **plan.fields,
                "assigned_resources": inp.assignments,
                "assigned_lead_actor_id": inp.lead_actor_id,
                "updated_at": self._clock().isoformat(),
            }
            payment = PaymentOutcome(action=PaymentAction.NONE)
            await self._write(EVENT_BOOKINGS, plan, fields, payment)
            self._emit(
                "AssignEventResources", actor, plan, booking.customer_id,
                details={"assignments": inp.assignments, "lead_actor_id": inp.lead_actor_id},
                calendar_action="create",
            )
            return self._ok(plan, assigned_resources=inp.assignments, lead_actor_id=inp.lead_actor_id)

        return await self._run("AssignEventResources", caller, _entity_id(data, "booking_id"), op)

    async def cancel_event_booking(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(CancelEventBookingInput, data)
            actor = await self._actor(caller)
            booking = await self._booking(inp.booking_id)
            owner = booking.customer_id == actor.actor_id
            await self._authorize(caller, actor, "event:cancel:own" if owner else "event:cancel:any")

            status = booking.booking_status.value
            if status != EventBookingStatus.CANCELLED.value and status not in CANCELLABLE_BOOKING_STATUSES:
                raise InvalidStatusTransition(status, EventBookingStatus.CANCELLED.value)
            plan = self._engine.plan(
                EntityType.EVENT_BOOKING, booking, actor, EventBookingStatus.CANCELLED.value, {"reason": inp.reason},
            )
            if plan.noop:
                return self._ok(plan)
            payment = await self._payments.decide_and_execute(EntityType.EVENT_BOOKING, booking, plan)
            await self._write(EVENT_BOOKINGS, plan, {**plan.fields, **payment.fields}, payment)
            self._emit(
                "CancelEventBooking", actor, plan, booking.customer_id, payment,
                details={"reason": inp.reason},
                calendar_action="delete" if booking.calendar_event_id else None,
                calendar_event_id=booking.calendar_event_id,
            )
            return self._ok(plan, payment)

        return await self._run("CancelEventBooking", caller, _entity_id(data, "booking_id"), op)

    # --- inventory ---

    async def adjust_box_inventory(self, caller: Caller, data) -> OperationResult:
        async def op() -> OperationResult:
            inp = _parse(AdjustBoxInventoryInput, data)
            actor = await self._actor(caller)
            await self._authorize(caller, actor, "admin:inventory:adjust")
            result = await self._inventory.apply_adjustments(inp.box_id, inp.adjustments, inp.reason)
            self._dispatcher.dispatch(SideEffectEvent(
                action="AdjustBoxInventory",
                entity_id=inp.box_id,
                actor_id=actor.actor_id,
                actor_role=actor.role,
                details={"deltas": result.deltas, "levels": result.levels, "reason": inp.reason},
            ))
            return OperationResult(success=True, data={"box_id": result.box_id, "levels": result.levels})

        return await self._run("AdjustBoxInventory", caller, _entity_id(data, "box_id"), op)


def _entity_id(data, key: str) -> str | None:
    if isinstance(data, dict):
        return data.get(key)
    return getattr(data, key, None)
