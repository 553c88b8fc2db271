import pytest

from fulfillment.errors import MissingPaymentInfo, PaymentCaptureFailed, PaymentChargeFailed
from fulfillment.gateway import FakeGateway
from fulfillment.models import Actor, EntityType, EventBooking, Order, PaymentAuthorization
from fulfillment.payments import PaymentAction, PaymentCoordinator
from fulfillment.transitions import StatusTransitionEngine

ACTOR = Actor(actor_id="admin1", role="Admin")
engine = StatusTransitionEngine()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payments(gateway):
    return PaymentCoordinator(gateway, timeout_seconds=0.5)


def order(status="Preparing", payment_status="Authorized", method="Card", total=5000, auth_id="auth-1"):
    return Order(
        order_id="o1", customer_id="c1", box_id="b1", status=status,
        payment_status=payment_status, payment_method=method, total_amount=total,
        authorization=PaymentAuthorization(authorization_id=auth_id, amount=total) if auth_id else None,
    )


def plan_for(entity_type, entity, target, details=None):
    return engine.plan(entity_type, entity, ACTOR, target, details)


@pytest.mark.parametrize("entity, target, expected", [
    (order(), "Completed", PaymentAction.CAPTURE),
    (order(method="CashOnDelivery", payment_status="Pending"), "Completed", PaymentAction.MARK_PAID),
    (order(total=0), "Completed", PaymentAction.MARK_PAID),
    (order(payment_status="Paid"), "Completed", PaymentAction.NONE),
    (order(), "Cancelled", PaymentAction.VOID),
    (order(payment_status="Captured"), "Cancelled", PaymentAction.REFUND),
    (order(payment_status="Pending"), "Cancelled", PaymentAction.NONE),
    (order(), "Ready", PaymentAction.NONE),
])
def test_order_decision_table(payments, entity, target, expected):
    assert payments.decide(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, target)) is expected


def test_booking_confirmation_charges(payments):
    booking = EventBooking(booking_id="e1", customer_id="c1", booking_status="PendingCustomerConfirmation",
                           total_amount_smallest_unit=20000)
    plan = plan_for(EntityType.EVENT_BOOKING, booking, "Confirmed")
    assert payments.decide(EntityType.EVENT_BOOKING, booking, plan) is PaymentAction.CHARGE


async def test_capture_success_marks_paid(payments, gateway):
    entity = order()
    outcome = await payments.decide_and_execute(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Completed"))
    assert outcome.payment_status == "Paid"
    assert outcome.fields["payment_details"]["capture_id"].startswith("fake_cap_")
    assert gateway.calls[0]["method"] == "capture"
    assert gateway.calls[0]["authorization_id"] == "auth-1"
    assert gateway.calls[0]["amount"] == 5000


async def test_capture_failure_raises(payments, gateway):
    gateway.configure("capture", "fail", error_code="expired_authorization")
    entity = order()
    with pytest.raises(PaymentCaptureFailed) as exc:
        await payments.decide_and_execute(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Completed"))
    assert exc.value.gateway_error == "expired_authorization"


async def test_capture_without_authorization_id(payments, gateway):
    entity = order(auth_id=None)
    with pytest.raises(MissingPaymentInfo):
        await payments.decide_and_execute(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Completed"))
    assert gateway.calls == []


async def test_gateway_timeout_is_a_failure(payments, gateway):
    gateway.delay_seconds = 1.0
    entity = order()
    with pytest.raises(PaymentCaptureFailed) as exc:
        await payments.decide_and_execute(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Completed"))
    assert exc.value.gateway_error == "gateway_timeout"


async def test_void_failure_is_recorded_not_raised(payments, gateway):
    gateway.configure("void", "fail", error_code="processor_down", error_message="down")
    entity = order()
    outcome = await payments.decide_and_execute(
        EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Cancelled", {"reason": "oops"})
    )
    assert outcome.payment_status == "VoidFailed"
    assert outcome.fields["payment_details"]["error_code"] == "processor_down"
    assert outcome.operator_alert


async def test_refund_is_deferred(payments, gateway):
    entity = order(payment_status="Paid")
    outcome = await payments.decide_and_execute(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Cancelled"))
    assert outcome.payment_status == "RefundPending"
    assert outcome.refund_requested
    assert gateway.calls == []


async def test_charge_requires_action(payments, gateway):
    gateway.configure("charge", "requires_action")
    booking = EventBooking(booking_id="e1", customer_id="c1", booking_status="PendingCustomerConfirmation",
                           total_amount_smallest_unit=20000)
    outcome = await payments.decide_and_execute(
        EntityType.EVENT_BOOKING, booking, plan_for(EntityType.EVENT_BOOKING, booking, "Confirmed")
    )
    assert outcome.payment_status == "ActionRequired"
    assert outcome.requires_action
    assert outcome.action_url == gateway.action_url


async def test_charge_failure_raises(payments, gateway):
    gateway.configure("charge", "fail")
    booking = EventBooking(booking_id="e1", customer_id="c1", booking_status="PendingCustomerConfirmation",
                           total_amount_smallest_unit=20000)
    with pytest.raises(PaymentChargeFailed):
        await payments.decide_and_execute(
            EntityType.EVENT_BOOKING, booking, plan_for(EntityType.EVENT_BOOKING, booking, "Confirmed")
        )


async def test_refund_result_fields(payments, gateway):
    entity = order(payment_status="RefundPending")
    entity.payment_details.capture_id = "cap-1"
    fields = await payments.refund(entity, "cancelled")
    assert fields["payment_status"] == "Refunded"
    assert gateway.calls[-1]["transaction_id"] == "cap-1"

    gateway.configure("refund", "fail")
    fields = await payments.refund(entity, "cancelled")
    assert fields["payment_status"] == "RefundFailed"


class RaisingGateway(FakeGateway):
    def capture(self, authorization_id, amount, currency):
        raise ConnectionError("gateway unreachable")

    def void(self, authorization_id, reason):
        raise ConnectionError("gateway unreachable")


async def test_capture_exception_is_capture_failure():
    payments = PaymentCoordinator(RaisingGateway(), timeout_seconds=0.5)
    entity = order()
    with pytest.raises(PaymentCaptureFailed) as exc:
        await payments.decide_and_execute(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Completed"))
    assert exc.value.gateway_error == "gateway_error"


async def test_void_exception_is_recorded_not_raised():
    payments = PaymentCoordinator(RaisingGateway(), timeout_seconds=0.5)
    entity = order()
    outcome = await payments.decide_and_execute(EntityType.ORDER, entity, plan_for(EntityType.ORDER, entity, "Cancelled"))
    assert outcome.payment_status == "VoidFailed"
    assert outcome.fields["payment_details"]["error_code"] == "gateway_error"
    assert outcome.operator_alert
