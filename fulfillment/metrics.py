"""
Prometheus metrics: lifecycle transitions and failures, payments, inventory, side effects (dispatch + worker),
role cache, queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# Lifecycle operations
lifecycle_transitions_total = Counter(
    "lifecycle_transitions_total",
    "Total status transitions applied",
    ["entity_type", "from_status", "to_status"],
)
lifecycle_operations_failed_total = Counter(
    "lifecycle_operations_failed_total",
    "Total lifecycle operations that returned an error result",
    ["operation", "error_code"],
)

# Payments
payment_operations_total = Counter(
    "payment_operations_total",
    "Total payment gateway operations by action and outcome",
    ["action", "outcome"],
)

# Inventory
inventory_adjustments_total = Counter(
    "inventory_adjustments_total",
    "Total inventory adjustment batches by outcome",
    ["outcome"],
)

# Side effects: dispatch (in-request) and processing (inline or worker)
side_effects_dispatched_total = Counter(
    "side_effects_dispatched_total",
    "Total side-effect events dispatched",
    ["action"],
)
side_effects_failed_total = Counter(
    "side_effects_failed_total",
    "Total side-effect steps that failed",
    ["step"],
)

# Permissions
role_cache_lookups_total = Counter(
    "role_cache_lookups_total",
    "Role permission cache lookups",
    ["result"],
)

# Worker: processing outcomes
messages_processed_total = Counter(
    "messages_processed_total",
    "Total side-effect messages successfully processed",
)
messages_failed_total = Counter(
    "messages_failed_total",
    "Total side-effect messages that failed processing (retried or sent to DLQ)",
)
messages_dlq_total = Counter(
    "messages_dlq_total",
    "Total side-effect messages moved to DLQ after max retries",
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
