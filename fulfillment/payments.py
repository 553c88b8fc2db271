"""
Payment coordination for status transitions.

Decision table (entity type, transition, payment state) -> gateway action:
- order -> Completed, Authorized card payment: capture (failure blocks the transition)
- order -> Completed, cash / credit on delivery or zero total: mark Paid without the gateway
- any -> Cancelled, Authorized: void (failure recorded as VoidFailed, transition proceeds)
- any -> Cancelled, Captured/Paid: RefundPending; refund runs later as a side effect
- booking PendingCustomerConfirmation -> Confirmed: charge the booking total (failure blocks)
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fulfillment.errors import MissingPaymentInfo, PaymentCaptureFailed, PaymentChargeFailed, PaymentVoidFailed
from fulfillment.gateway import ChargeResult, PaymentGateway, RefundResult, VoidResult
from fulfillment.metrics import payment_operations_total
from fulfillment.models import (
    EntityType,
    EventBooking,
    EventBookingStatus,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from fulfillment.transitions import TransitionPlan

logger = logging.getLogger(__name__)

GATEWAY_TIMEOUT = "gateway_timeout"
GATEWAY_ERROR = "gateway_error"
OFFLINE_METHODS = (PaymentMethod.CASH_ON_DELIVERY, PaymentMethod.CREDIT_ON_DELIVERY)


class PaymentAction(str, Enum):
    NONE = "none"
    MARK_PAID = "mark_paid"
    CAPTURE = "capture"
    CHARGE = "charge"
    VOID = "void"
    REFUND = "refund"


@dataclass
class PaymentOutcome:
    action: PaymentAction
    payment_status: str | None = None
    fields: dict = field(default_factory=dict)
    requires_action: bool = False
    action_url: str | None = None
    operator_alert: str | None = None
    refund_requested: bool = False


def entity_amount(entity: Order | EventBooking) -> int:
    if isinstance(entity, Order):
        return entity.total_amount
    return entity.total_amount_smallest_unit


def entity_id(entity: Order | EventBooking) -> str:
    return entity.order_id if isinstance(entity, Order) else entity.booking_id


class PaymentCoordinator:
    def __init__(
        self,
        gateway: PaymentGateway,
        timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._gateway = gateway
        self._timeout = timeout_seconds
        self._clock = clock

    def decide(self, entity_type: EntityType, entity: Order | EventBooking, plan: TransitionPlan) -> PaymentAction:
        if plan.noop:
            return PaymentAction.NONE
        status = entity.payment_status
        to = plan.to_status

        if entity_type is EntityType.ORDER and to == OrderStatus.COMPLETED.value:
            if status in (PaymentStatus.PAID, PaymentStatus.CAPTURED):
                return PaymentAction.NONE
            if entity.payment_method in OFFLINE_METHODS or entity_amount(entity) <= 0:
                return PaymentAction.MARK_PAID
            if status is PaymentStatus.AUTHORIZED:
                return PaymentAction.CAPTURE
            return PaymentAction.NONE

        if to in (OrderStatus.CANCELLED.value, EventBookingStatus.CANCELLED.value):
            if status is PaymentStatus.AUTHORIZED:
                return PaymentAction.VOID
            if status in (PaymentStatus.CAPTURED, PaymentStatus.PAID):
                return PaymentAction.REFUND
            return PaymentAction.NONE

        if (
            entity_type is EntityType.EVENT_BOOKING
            and plan.from_status == EventBookingStatus.PENDING_CUSTOMER_CONFIRMATION.value
            and to == EventBookingStatus.CONFIRMED.value
        ):
            if status in (PaymentStatus.PAID, PaymentStatus.CAPTURED):
                return PaymentAction.NONE
            if entity_amount(entity) <= 0:
                return PaymentAction.MARK_PAID
            return PaymentAction.CHARGE

        return PaymentAction.NONE

    async def _call(self, fn, *args) -> tuple[Any, str | None]:
        """Run a blocking gateway call in a thread. Returns (result, None) or (None, error code)."""
        name = getattr(fn, "__name__", fn)
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._timeout), None
        except asyncio.TimeoutError:
            logger.warning("Payment gateway %s timed out after %.1fs", name, self._timeout)
            return None, GATEWAY_TIMEOUT
        except Exception:
            logger.exception("Payment gateway %s raised", name)
            return None, GATEWAY_ERROR

    def _details(self, entity: Order | EventBooking, **changes) -> dict:
        details = entity.payment_details.model_dump(mode="json")
        details.update(changes)
        details["updated_at"] = self._clock().isoformat()
        return details

    def _outcome(self, action: PaymentAction, entity, status: PaymentStatus, **details) -> PaymentOutcome:
        return PaymentOutcome(
            action=action,
            payment_status=status.value,
            fields={"payment_status": status.value, "payment_details": self._details(entity, **details)},
        )

    async def decide_and_execute(
        self,
        entity_type: EntityType,
        entity: Order | EventBooking,
        plan: TransitionPlan,
    ) -> PaymentOutcome:
        action = self.decide(entity_type, entity, plan)
        if action is PaymentAction.NONE:
            return PaymentOutcome(action=action)
        if action is PaymentAction.MARK_PAID:
            payment_operations_total.labels(action="mark_paid", outcome="success").inc()
            return self._outcome(action, entity, PaymentStatus.PAID)
        if action is PaymentAction.REFUND:
            outcome = self._outcome(action, entity, PaymentStatus.REFUND_PENDING)
            outcome.refund_requested = True
            return outcome
        if action is PaymentAction.CAPTURE:
            return await self._capture(entity)
        if action is PaymentAction.CHARGE:
            return await self._charge(entity)
        return await self._void(entity, plan)

    async def _capture(self, entity: Order | EventBooking) -> PaymentOutcome:
        auth = entity.authorization
        if auth is None or not auth.authorization_id:
            payment_operations_total.labels(action="capture", outcome="missing_info").inc()
            raise MissingPaymentInfo(entity_id(entity))
        amount = entity_amount(entity)
        result: ChargeResult | None
        result, call_error = await self._call(
            self._gateway.capture, auth.authorization_id, amount, entity.currency_code
        )
        if result is None or not result.success:
            error = result.error_code if result else call_error
            payment_operations_total.labels(action="capture", outcome="failed").inc()
            logger.warning("Capture failed for %s: %s", entity_id(entity), error)
            raise PaymentCaptureFailed(entity_id(entity), error)
        payment_operations_total.labels(action="capture", outcome="success").inc()
        logger.info("Captured %d %s for %s", amount, entity.currency_code, entity_id(entity))
        return self._outcome(
            PaymentAction.CAPTURE, entity, PaymentStatus.PAID,
            capture_id=result.transaction_id, error_code=None, error_message=None,
        )

    async def _charge(self, entity: Order | EventBooking) -> PaymentOutcome:
        amount = entity_amount(entity)
        result: ChargeResult | None
        result, call_error = await self._call(
            self._gateway.charge, amount, entity.currency_code, entity.customer_id, f"{entity_id(entity)}:charge"
        )
        if result is not None and result.requires_action:
            payment_operations_total.labels(action="charge", outcome="requires_action").inc()
            outcome = self._outcome(
                PaymentAction.CHARGE, entity, PaymentStatus.ACTION_REQUIRED,
                charge_id=result.transaction_id, action_url=result.action_url,
            )
            outcome.requires_action = True
            outcome.action_url = result.action_url
            return outcome
        if result is None or not result.success:
            error = result.error_code if result else call_error
            payment_operations_total.labels(action="charge", outcome="failed").inc()
            logger.warning("Charge failed for %s: %s", entity_id(entity), error)
            raise PaymentChargeFailed(entity_id(entity), error)
        payment_operations_total.labels(action="charge", outcome="success").inc()
        return self._outcome(
            PaymentAction.CHARGE, entity, PaymentStatus.PAID,
            charge_id=result.transaction_id, error_code=None, error_message=None,
        )

    async def _void(self, entity: Order | EventBooking, plan: TransitionPlan) -> PaymentOutcome:
        auth = entity.authorization
        reason = plan.details.reason or "cancelled"
        result: VoidResult | None = None
        call_error = None
        if auth is not None and auth.authorization_id:
            result, call_error = await self._call(self._gateway.void, auth.authorization_id, reason)
        if result is not None and result.success:
            payment_operations_total.labels(action="void", outcome="success").inc()
            return self._outcome(PaymentAction.VOID, entity, PaymentStatus.VOIDED, void_id=result.void_id)

        if auth is None or not auth.authorization_id:
            error_code, error_message = "missing_authorization", "no authorization id recorded"
        elif result is None:
            error_code, error_message = call_error, f"void failed: {call_error}"
        else:
            error_code, error_message = result.error_code, result.error_message
        err = PaymentVoidFailed(entity_id(entity), error_code)
        payment_operations_total.labels(action="void", outcome="failed").inc()
        logger.error("%s; cancellation proceeds", err)
        outcome = self._outcome(
            PaymentAction.VOID, entity, PaymentStatus.VOID_FAILED,
            error_code=error_code, error_message=error_message,
        )
        outcome.operator_alert = str(err)
        return outcome

    async def refund(self, entity: Order | EventBooking, reason: str) -> dict:
        """Refund a captured payment. Returns the payment fields to write (Refunded or RefundFailed)."""
        details = entity.payment_details
        txn = details.capture_id or details.charge_id or (
            entity.authorization.transaction_id if entity.authorization else None
        )
        if not txn:
            payment_operations_total.labels(action="refund", outcome="missing_info").inc()
            return self._outcome(
                PaymentAction.REFUND, entity, PaymentStatus.REFUND_FAILED,
                error_code="missing_transaction", error_message="no captured transaction to refund",
            ).fields
        result: RefundResult | None
        result, call_error = await self._call(self._gateway.refund, txn, entity_amount(entity), reason)
        if result is not None and result.success:
            payment_operations_total.labels(action="refund", outcome="success").inc()
            return self._outcome(
                PaymentAction.REFUND, entity, PaymentStatus.REFUNDED, refund_id=result.refund_id,
            ).fields
        payment_operations_total.labels(action="refund", outcome="failed").inc()
        return self._outcome(
            PaymentAction.REFUND, entity, PaymentStatus.REFUND_FAILED,
            error_code=result.error_code if result else call_error,
            error_message=result.error_message if result else f"refund failed: {call_error}",
        ).fields
