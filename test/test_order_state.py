import pytest

from fulfillment.models import EntityType, EventBookingStatus, OrderStatus
from fulfillment.order_state import (
    CANCELLABLE_BOOKING_STATUSES,
    TRANSITIONS,
    is_valid_transition,
)


@pytest.mark.parametrize("entity_type, statuses", [
    (EntityType.ORDER, OrderStatus),
    (EntityType.EVENT_BOOKING, EventBookingStatus),
])
def test_table_is_closed_over_status_enum(entity_type, statuses):
    values = {s.value for s in statuses}
    table = TRANSITIONS[entity_type]
    assert set(table) == values
    for targets in table.values():
        assert targets <= values


def test_terminal_states_have_no_exits():
    for status in ("Completed", "Cancelled"):
        assert not TRANSITIONS[EntityType.ORDER][status]
    for status in ("Completed", "Rejected", "Cancelled"):
        assert not TRANSITIONS[EntityType.EVENT_BOOKING][status]
    assert TRANSITIONS[EntityType.EVENT_BOOKING]["Delayed"]


def test_accepts_enum_members_and_plain_strings():
    assert is_valid_transition(EntityType.ORDER, OrderStatus.PREPARING, OrderStatus.COMPLETED)
    assert is_valid_transition(EntityType.ORDER, "Preparing", "Completed")
    assert not is_valid_transition(EntityType.ORDER, "Placed", "Completed")


def test_booking_progression():
    path = [
        "PendingAdminApproval", "PendingCustomerConfirmation", "Confirmed",
        "Scheduled", "Preparing", "InProgress", "Completed",
    ]
    for current, nxt in zip(path, path[1:]):
        assert is_valid_transition(EntityType.EVENT_BOOKING, current, nxt)
    assert not is_valid_transition(EntityType.EVENT_BOOKING, "InProgress", "Cancelled")


def test_cancellable_booking_statuses():
    assert "Confirmed" in CANCELLABLE_BOOKING_STATUSES
    assert "InProgress" not in CANCELLABLE_BOOKING_STATUSES
    assert "Completed" not in CANCELLABLE_BOOKING_STATUSES
