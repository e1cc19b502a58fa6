"""
Push buyer notifications to the Redis queue drained by the worker.
"""
import json
import uuid
from datetime import datetime, timezone

from garment_tracker.models import OrderRecord
from garment_tracker.redis_client import get_redis

NOTIFICATION_QUEUE_KEY = "queue:order_notifications"
NOTIFICATION_DLQ_KEY = "queue:order_notifications:dlq"

MESSAGES = {
    "approve": "Your order {tracking_id} has been approved.",
    "reject": "Your order {tracking_id} has been rejected.",
    "cancel": "Your order {tracking_id} has been cancelled.",
    "record_payment": "Payment received for order {tracking_id}.",
    "add_tracking": "Order {tracking_id}: {checkpoint} at {location}.",
}


def _make_body(
    notification_id: str,
    order: OrderRecord,
    event: str,
    message: str,
    attempts: int = 0,
) -> dict:
    return {
        "notification_id": notification_id,
        "order_id": order.id,
        "tracking_id": order.tracking_id,
        "buyer_uid": order.buyer.uid,
        "buyer_email": order.buyer.email,
        "event": event,
        "message": message,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "attempts": attempts,
    }


def render_message(order: OrderRecord, event: str) -> str:
    last = order.last_tracking_update
    return MESSAGES[event].format(
        tracking_id=order.tracking_id,
        checkpoint=last.status.value if last else "",
        location=last.location if last else "",
    )


async def push_notification(order: OrderRecord, event: str) -> str:
    notification_id = str(uuid.uuid4())
    body = _make_body(notification_id, order, event, render_message(order, event))
    r = await get_redis()
    await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(body))
    return notification_id


async def replay_dlq_to_main(limit: int = 100) -> int:
    """
    Move messages from the DLQ back onto the main queue with attempts reset.
    Returns number of messages replayed.
    """
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(NOTIFICATION_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not data.get("notification_id") or not data.get("buyer_uid"):
            continue
        data["attempts"] = 0
        data.pop("last_error", None)
        data.pop("failed_at", None)
        await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(data))
    return replayed
