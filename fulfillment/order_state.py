"""
Order and event booking lifecycle state machines. Valid transitions enforce business rules.
"""
from enum import Enum

from fulfillment.models import EntityType, EventBookingStatus, OrderStatus

O = OrderStatus
E = EventBookingStatus

# Current status -> allowed next statuses
ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    O.PLACED.value: frozenset({O.PREPARING.value, O.CANCELLED.value}),
    O.PREPARING.value: frozenset({O.READY.value, O.COMPLETED.value, O.CANCELLED.value}),
    O.READY.value: frozenset({O.COMPLETED.value, O.CANCELLED.value}),
    O.COMPLETED.value: frozenset(),  # terminal
    O.CANCELLED.value: frozenset(),  # terminal
}

EVENT_BOOKING_TRANSITIONS: dict[str, frozenset[str]] = {
    E.PENDING_ADMIN_APPROVAL.value: frozenset({
        E.PENDING_CUSTOMER_CONFIRMATION.value, E.REJECTED.value, E.CANCELLED.value, E.REQUIRES_ATTENTION.value,
    }),
    E.PENDING_CUSTOMER_CONFIRMATION.value: frozenset({
        E.CONFIRMED.value, E.CANCELLED.value, E.REQUIRES_ATTENTION.value,
    }),
    E.CONFIRMED.value: frozenset({
        E.SCHEDULED.value, E.DELAYED.value, E.CANCELLED.value, E.REQUIRES_ATTENTION.value,
    }),
    E.SCHEDULED.value: frozenset({
        E.PREPARING.value, E.DELAYED.value, E.CANCELLED.value, E.REQUIRES_ATTENTION.value,
    }),
    E.PREPARING.value: frozenset({
        E.IN_PROGRESS.value, E.DELAYED.value, E.CANCELLED.value, E.REQUIRES_ATTENTION.value,
    }),
    E.IN_PROGRESS.value: frozenset({E.COMPLETED.value, E.DELAYED.value, E.REQUIRES_ATTENTION.value}),
    E.DELAYED.value: frozenset({
        E.PREPARING.value, E.IN_PROGRESS.value, E.CANCELLED.value, E.REQUIRES_ATTENTION.value,
    }),
    E.REQUIRES_ATTENTION.value: frozenset({
        E.PREPARING.value, E.IN_PROGRESS.value, E.DELAYED.value, E.COMPLETED.value, E.CANCELLED.value,
    }),
    E.COMPLETED.value: frozenset(),  # terminal
    E.REJECTED.value: frozenset(),  # terminal
    E.CANCELLED.value: frozenset(),  # terminal
}

TRANSITIONS: dict[EntityType, dict[str, frozenset[str]]] = {
    EntityType.ORDER: ORDER_TRANSITIONS,
    EntityType.EVENT_BOOKING: EVENT_BOOKING_TRANSITIONS,
}

STATUS_ENUMS: dict[EntityType, type[Enum]] = {
    EntityType.ORDER: OrderStatus,
    EntityType.EVENT_BOOKING: EventBookingStatus,
}

# Statuses the cancel operation accepts for a booking
CANCELLABLE_BOOKING_STATUSES = frozenset(
    s for s, allowed in EVENT_BOOKING_TRANSITIONS.items() if E.CANCELLED.value in allowed
)


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else status


def is_valid_transition(entity_type: EntityType, current_status: str, new_status: str) -> bool:
    """True if new_status is allowed after current_status."""
    allowed = TRANSITIONS[entity_type].get(_value(current_status), frozenset())
    return _value(new_status) in allowed
