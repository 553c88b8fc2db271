"""
Lifecycle error taxonomy. Every failure a lifecycle operation can report is one of these classes;
the service layer turns them into {success: false, error: <message key>, error_code: <code>}.
"""
from enum import Enum


class ErrorCode(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_BOOKING_OWNER = "NOT_BOOKING_OWNER"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_ADJUSTMENT_FORMAT = "INVALID_ADJUSTMENT_FORMAT"
    NOT_FOUND = "NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    BOX_NOT_FOUND = "BOX_NOT_FOUND"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    RESOURCE_INACTIVE = "RESOURCE_INACTIVE"
    LEAD_ACTOR_INVALID = "LEAD_ACTOR_INVALID"
    MIN_ORDER_NOT_MET = "MIN_ORDER_NOT_MET"
    PAYMENT_CAPTURE_FAILED = "PAYMENT_CAPTURE_FAILED"
    PAYMENT_CHARGE_FAILED = "PAYMENT_CHARGE_FAILED"
    PAYMENT_VOID_FAILED = "PAYMENT_VOID_FAILED"
    MISSING_PAYMENT_INFO = "MISSING_PAYMENT_INFO"
    TRANSACTION_ABORTED = "TRANSACTION_ABORTED"
    INTERNAL = "INTERNAL"


class LifecycleError(Exception):
    """Base for all lifecycle failures. Carries a stable code and an i18n message key."""

    code: ErrorCode = ErrorCode.INTERNAL
    message_key: str = "error.internalServer"

    def __init__(self, detail: str | None = None):
        self.detail = detail
        super().__init__(detail or self.message_key)


class Unauthenticated(LifecycleError):
    code = ErrorCode.UNAUTHENTICATED
    message_key = "error.auth.unauthenticated"


class PermissionDenied(LifecycleError):
    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, permission_id: str, code: ErrorCode | None = None):
        self.permission_id = permission_id
        if code is not None:
            self.code = code
        self.message_key = f"error.permissionDenied.{permission_id.replace(':', '.')}"
        super().__init__(f"missing permission {permission_id}")


class InvalidArgument(LifecycleError):
    code = ErrorCode.INVALID_ARGUMENT
    message_key = "error.invalidInput.structure"

    def __init__(self, detail: str, field: str | None = None, code: ErrorCode | None = None):
        self.field = field
        if code is not None:
            self.code = code
        super().__init__(detail)


class InvalidAdjustmentFormat(InvalidArgument):
    code = ErrorCode.INVALID_ADJUSTMENT_FORMAT
    message_key = "error.invalidInput.adjustments"


class NotFound(LifecycleError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.message_key = f"error.{entity_type}.notFound"
        super().__init__(f"{entity_type} {entity_id} not found")


class ActorNotFound(NotFound):
    code = ErrorCode.USER_NOT_FOUND

    def __init__(self, actor_id: str):
        super().__init__("user", actor_id)


class BoxNotFound(NotFound):
    code = ErrorCode.BOX_NOT_FOUND

    def __init__(self, box_id: str):
        super().__init__("box", box_id)


class ResourceNotFound(NotFound):
    code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, resource_id: str):
        super().__init__("resource", resource_id)


class InvalidStatusTransition(LifecycleError):
    code = ErrorCode.INVALID_STATUS_TRANSITION
    message_key = "error.invalidInput.statusTransition"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"transition {from_status} -> {to_status} is not allowed")


class ResourceExhausted(LifecycleError):
    """Raised when an adjustment would take a product's stock below zero."""

    code = ErrorCode.RESOURCE_EXHAUSTED
    message_key = "error.transaction.resourceExhausted"

    def __init__(self, product_id: str, available: int = 0, requested: int = 0):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(f"insufficient stock for {product_id}: have {available}, delta {requested}")


class PreconditionFailed(LifecycleError):
    code = ErrorCode.FAILED_PRECONDITION
    message_key = "error.transaction.failedPrecondition"


class ResourceInactive(PreconditionFailed):
    code = ErrorCode.RESOURCE_INACTIVE
    message_key = "error.resource.inactive"

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"resource {resource_id} is inactive")


class LeadActorInvalid(PreconditionFailed):
    code = ErrorCode.LEAD_ACTOR_INVALID
    message_key = "error.assignResources.leadCourierInvalid"

    def __init__(self, actor_id: str):
        self.actor_id = actor_id
        super().__init__(f"actor {actor_id} cannot lead an event")


class MinOrderNotMet(PreconditionFailed):
    code = ErrorCode.MIN_ORDER_NOT_MET
    message_key = "error.event.minOrderNotMet"

    def __init__(self, total: int, minimum: int):
        self.total = total
        self.minimum = minimum
        super().__init__(f"total {total} below minimum {minimum}")


class PaymentCaptureFailed(LifecycleError):
    code = ErrorCode.PAYMENT_CAPTURE_FAILED
    message_key = "error.payment.captureFailed"

    def __init__(self, entity_id: str, gateway_error: str | None = None):
        self.entity_id = entity_id
        self.gateway_error = gateway_error
        super().__init__(f"payment for {entity_id} failed: {gateway_error}")


class PaymentChargeFailed(PaymentCaptureFailed):
    code = ErrorCode.PAYMENT_CHARGE_FAILED
    message_key = "error.payment.chargeFailed"


class PaymentVoidFailed(LifecycleError):
    """Recorded on the entity (VoidFailed) and raised as an operator alert; the cancellation still commits."""

    code = ErrorCode.PAYMENT_VOID_FAILED
    message_key = "error.payment.voidFailed"

    def __init__(self, entity_id: str, gateway_error: str | None = None):
        self.entity_id = entity_id
        self.gateway_error = gateway_error
        super().__init__(f"payment void for {entity_id} failed: {gateway_error}")


class MissingPaymentInfo(LifecycleError):
    code = ErrorCode.MISSING_PAYMENT_INFO
    message_key = "error.internal.missingPaymentInfo"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"no payment authorization recorded for {entity_id}")


class TransactionAborted(LifecycleError):
    code = ErrorCode.TRANSACTION_ABORTED
    message_key = "error.transaction.aborted"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"transaction aborted after {attempts} attempts")


class InternalError(LifecycleError):
    code = ErrorCode.INTERNAL
    message_key = "error.internalServer"


class ConcurrentModification(Exception):
    """Raised by a store when an optimistic transaction lost a version race. Retried internally."""


class SideEffectError(Exception):
    """One or more side-effect steps failed; the worker re-queues the event."""

    def __init__(self, failed_steps: list[str]):
        self.failed_steps = failed_steps
        super().__init__(", ".join(failed_steps))
