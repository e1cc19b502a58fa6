"""
Prometheus metrics: order transitions and tracking updates (API), notification delivery (worker).
"""
from prometheus_client import Counter, generate_latest

# API: successful lifecycle actions
orders_placed_total = Counter(
    "orders_placed_total",
    "Total orders placed",
    ["payment_option"],
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions applied",
    ["action"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total order actions rejected by the lifecycle rules",
    ["kind", "action"],
)
tracking_updates_total = Counter(
    "tracking_updates_total",
    "Total tracking updates appended to approved orders",
    ["checkpoint"],
)

# Worker: notification delivery outcomes
notifications_delivered_total = Counter(
    "notifications_delivered_total",
    "Total buyer notifications written to the inbox",
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total notification deliveries that failed (retried or sent to DLQ)",
)
notifications_dlq_total = Counter(
    "notifications_dlq_total",
    "Total notifications moved to DLQ after max retries",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
