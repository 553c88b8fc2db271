"""
Status transition engine. Validates a requested status change for an order or event booking and builds
the fields to write (status, history entry, derived timestamps). It never writes itself: callers apply
the plan as a conditional update or fold it into a store transaction.
"""
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from fulfillment.errors import ErrorCode, InvalidArgument, InvalidStatusTransition
from fulfillment.models import (
    Actor,
    EntityType,
    EventBooking,
    EventBookingStatus,
    Order,
    OrderStatus,
    StatusHistoryEntry,
    utcnow,
)
from fulfillment.order_state import STATUS_ENUMS, is_valid_transition

logger = logging.getLogger(__name__)

STATUS_FIELD = {
    EntityType.ORDER: "status",
    EntityType.EVENT_BOOKING: "booking_status",
}
HISTORY_FIELD = {
    EntityType.ORDER: "status_history",
    EntityType.EVENT_BOOKING: "status_change_history",
}
ID_FIELD = {
    EntityType.ORDER: "order_id",
    EntityType.EVENT_BOOKING: "booking_id",
}


# --- details variants, keyed by target status ---

class StatusNote(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = None


class DelayDetails(StatusNote):
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class StartDetails(StatusNote):
    actual_start_time: datetime | None = None


class CompletionDetails(StatusNote):
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None


class HandoffDetails(StatusNote):
    courier_id: str | None = None


class CancellationDetails(StatusNote):
    pass


def details_model(entity_type: EntityType, target: str) -> type[StatusNote]:
    if target in (EventBookingStatus.DELAYED.value, EventBookingStatus.REQUIRES_ATTENTION.value):
        return DelayDetails
    if target in (OrderStatus.CANCELLED.value, EventBookingStatus.CANCELLED.value):
        return CancellationDetails
    if entity_type is EntityType.ORDER:
        if target in (OrderStatus.READY.value, OrderStatus.COMPLETED.value):
            return HandoffDetails
        return StatusNote
    if target == EventBookingStatus.IN_PROGRESS.value:
        return StartDetails
    if target == EventBookingStatus.COMPLETED.value:
        return CompletionDetails
    return StatusNote


def parse_details(entity_type: EntityType, target: str, details) -> StatusNote:
    model = details_model(entity_type, target)
    if isinstance(details, model):
        return details
    if isinstance(details, BaseModel):
        details = details.model_dump(exclude_unset=True)
    try:
        return model.model_validate(details or {})
    except ValidationError as e:
        err = e.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ())) or None
        raise InvalidArgument(f"invalid details for {target}: {err.get('msg')}", field=loc) from e


@dataclass
class TransitionPlan:
    entity_type: EntityType
    entity_id: str
    from_status: str
    to_status: str
    details: StatusNote
    noop: bool = False
    fields: dict = field(default_factory=dict)
    history_entry: dict | None = None

    @property
    def status_field(self) -> str:
        return STATUS_FIELD[self.entity_type]

    def expected(self) -> dict:
        """Precondition for the conditional write: status unchanged since it was read."""
        return {self.status_field: self.from_status}

    def append(self) -> dict | None:
        if self.history_entry is None:
            return None
        return {HISTORY_FIELD[self.entity_type]: [self.history_entry]}


def current_status(entity_type: EntityType, entity: Order | EventBooking) -> str:
    status = getattr(entity, STATUS_FIELD[entity_type])
    return status.value if hasattr(status, "value") else status


class StatusTransitionEngine:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    def plan(
        self,
        entity_type: EntityType,
        entity: Order | EventBooking,
        actor: Actor,
        target_status: str,
        details=None,
    ) -> TransitionPlan:
        statuses = STATUS_ENUMS[entity_type]
        target = target_status.value if hasattr(target_status, "value") else target_status
        if target not in {s.value for s in statuses}:
            raise InvalidArgument(f"unknown {entity_type.value} status {target!r}", field="status",
                                  code=ErrorCode.INVALID_STATUS)

        # details are validated before the table is consulted
        parsed = parse_details(entity_type, target, details)

        entity_id = getattr(entity, ID_FIELD[entity_type])
        from_status = current_status(entity_type, entity)
        if from_status == target:
            logger.info("%s %s already %s; no-op", entity_type.value, entity_id, target)
            return TransitionPlan(entity_type, entity_id, from_status, target, parsed, noop=True)

        if not is_valid_transition(entity_type, from_status, target):
            raise InvalidStatusTransition(from_status, target)

        now = self._clock()
        reason = parsed.reason or f"Status updated to {target} by {actor.role}"
        entry = StatusHistoryEntry(
            from_status=from_status,
            to_status=target,
            timestamp=now,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            reason=reason,
        )
        fields = {
            STATUS_FIELD[entity_type]: target,
            "processing_error": None,
            "updated_at": now.isoformat(),
        }
        fields.update(self._derived_fields(entity_type, entity, target, parsed, now))
        return TransitionPlan(
            entity_type,
            entity_id,
            from_status,
            target,
            parsed,
            fields=fields,
            history_entry=entry.model_dump(mode="json"),
        )

    @staticmethod
    def _derived_fields(entity_type, entity, target: str, details: StatusNote, now: datetime) -> dict:
        fields: dict = {}
        if isinstance(details, DelayDetails):
            fields["last_delay_reason"] = details.reason
        elif isinstance(details, CancellationDetails):
            fields["cancellation_reason"] = details.reason
        elif isinstance(details, HandoffDetails):
            if details.courier_id:
                fields["courier_id"] = details.courier_id
            if target == OrderStatus.COMPLETED.value:
                fields["delivered_at"] = now.isoformat()
        elif isinstance(details, StartDetails):
            fields["actual_start_time"] = (details.actual_start_time or now).isoformat()
        elif isinstance(details, CompletionDetails):
            end = details.actual_end_time or now
            fields["actual_end_time"] = end.isoformat()
            if details.actual_start_time:
                fields["actual_start_time"] = details.actual_start_time.isoformat()
            elif getattr(entity, "actual_start_time", None) is None:
                fields["actual_start_time"] = end.isoformat()
        return fields
