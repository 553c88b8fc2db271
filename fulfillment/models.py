"""
Documents handled by the lifecycle core. Stored as JSON bodies (model_dump(mode="json")) keyed by collection and id.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ORDERS = "orders"
EVENT_BOOKINGS = "event_bookings"
BOXES = "boxes"
USERS = "users"
ROLES = "roles"
EVENT_RESOURCES = "event_resources"
AUDIT_LOGS = "audit_logs"
NOTIFICATIONS = "notifications"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityType(str, Enum):
    ORDER = "order"
    EVENT_BOOKING = "eventBooking"


class OrderStatus(str, Enum):
    PLACED = "Placed"
    PREPARING = "Preparing"
    READY = "Ready"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class EventBookingStatus(str, Enum):
    PENDING_ADMIN_APPROVAL = "PendingAdminApproval"
    PENDING_CUSTOMER_CONFIRMATION = "PendingCustomerConfirmation"
    CONFIRMED = "Confirmed"
    SCHEDULED = "Scheduled"
    PREPARING = "Preparing"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    DELAYED = "Delayed"
    REQUIRES_ATTENTION = "RequiresAttention"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    AUTHORIZED = "Authorized"
    CAPTURED = "Captured"
    PAID = "Paid"
    VOIDED = "Voided"
    VOID_FAILED = "VoidFailed"
    ACTION_REQUIRED = "ActionRequired"
    REFUND_PENDING = "RefundPending"
    REFUNDED = "Refunded"
    REFUND_FAILED = "RefundFailed"


class PaymentMethod(str, Enum):
    CARD = "Card"
    CASH_ON_DELIVERY = "CashOnDelivery"
    CREDIT_ON_DELIVERY = "CreditOnDelivery"


class StatusHistoryEntry(BaseModel):
    from_status: str | None
    to_status: str
    timestamp: datetime
    actor_id: str
    actor_role: str | None = None
    reason: str | None = None


class PaymentAuthorization(BaseModel):
    authorization_id: str | None = None
    transaction_id: str | None = None
    amount: int = 0
    currency: str = "ILS"


class PaymentDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    charge_id: str | None = None
    capture_id: str | None = None
    void_id: str | None = None
    refund_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    action_url: str | None = None
    updated_at: datetime | None = None


class OrderItem(BaseModel):
    product_id: str
    quantity: int
    unit_price: int = 0


class Order(BaseModel):
    order_id: str
    customer_id: str
    box_id: str
    items: list[OrderItem] = Field(default_factory=list)
    total_amount: int = 0
    currency_code: str = "ILS"
    status: OrderStatus = OrderStatus.PLACED
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CARD
    authorization: PaymentAuthorization | None = None
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    processing_error: str | None = None
    courier_id: str | None = None
    delivered_at: datetime | None = None
    cancellation_reason: str | None = None
    inventory_restored: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EventBookingItem(BaseModel):
    line_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    item_id: str
    item_type: str = "product"
    quantity: int | None = None
    duration_hours: float | None = None
    unit_price: int = 0

    def line_total(self) -> int:
        if self.duration_hours is not None:
            return round(self.unit_price * self.duration_hours)
        return self.unit_price * (self.quantity or 0)


class ApprovalDecision(str, Enum):
    APPROVED = "Approved"
    APPROVED_WITH_CHANGES = "ApprovedWithChanges"
    REJECTED = "Rejected"


class AdminApprovalDetails(BaseModel):
    decision: ApprovalDecision
    actor_id: str
    timestamp: datetime
    notes: str | None = None


class EventBooking(BaseModel):
    booking_id: str
    customer_id: str
    booking_status: EventBookingStatus = EventBookingStatus.PENDING_ADMIN_APPROVAL
    selected_items: list[EventBookingItem] = Field(default_factory=list)
    total_amount_smallest_unit: int = 0
    currency_code: str = "ILS"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CARD
    authorization: PaymentAuthorization | None = None
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    admin_approval_details: AdminApprovalDetails | None = None
    assigned_resources: dict[str, list[str]] = Field(default_factory=dict)
    assigned_lead_actor_id: str | None = None
    status_change_history: list[StatusHistoryEntry] = Field(default_factory=list)
    calendar_event_id: str | None = None
    needs_manual_calendar_check: bool = False
    processing_error: str | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    last_delay_reason: str | None = None
    agreement_sent_at: datetime | None = None
    agreement_confirmed_at: datetime | None = None
    cancellation_reason: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    location: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Box(BaseModel):
    box_id: str
    name: str = ""
    is_active: bool = True
    inventory: dict[str, int] = Field(default_factory=dict)


class Actor(BaseModel):
    actor_id: str
    role: str
    is_active: bool = True
    permissions: list[str] = Field(default_factory=list)
    payment_customer_id: str | None = None


class Role(BaseModel):
    role_id: str
    permissions: list[str] = Field(default_factory=list)


class EventResource(BaseModel):
    resource_id: str
    resource_type: str
    name: str = ""
    is_active: bool = True


class AuditLogEntry(BaseModel):
    entry_id: str
    action: str
    actor_id: str | None
    actor_role: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class Notification(BaseModel):
    notification_id: str
    recipient_id: str
    template_key: str
    params: dict[str, Any] = Field(default_factory=dict)
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
