"""
Buyer-facing tracking timeline, derived from an order's tracking updates on every read.
"""
from collections.abc import Sequence

from pydantic import BaseModel

from garment_tracker.models import OrderRecord, OrderStatus, TrackingStatus, TrackingUpdate
from garment_tracker.tracking import TRACKING_SEQUENCE, checkpoint_index


class TimelineStep(BaseModel):
    status: TrackingStatus
    completed: bool
    # None on a completed step means it was passed without an explicit update (system estimate)
    update: TrackingUpdate | None = None


class BuyerSummary(BaseModel):
    name: str
    email: str


class TrackingView(BaseModel):
    tracking_id: str
    status: OrderStatus
    buyer: BuyerSummary
    timeline: list[TimelineStep]
    last_update: TrackingUpdate | None = None


def latest_update(updates: Sequence[TrackingUpdate]) -> TrackingUpdate | None:
    """Chronologically latest update by updated_at; on equal timestamps the later insertion wins."""
    if not updates:
        return None
    _, _, latest = max((u.updated_at, i, u) for i, u in enumerate(updates))
    return latest


def build_timeline(updates: Sequence[TrackingUpdate]) -> list[TimelineStep]:
    last = latest_update(updates)
    last_index = checkpoint_index(last.status) if last is not None else -1

    by_status: dict[TrackingStatus, TrackingUpdate] = {}
    for update in updates:
        current = by_status.get(update.status)
        if current is None or update.updated_at >= current.updated_at:
            by_status[update.status] = update

    return [
        TimelineStep(status=status, completed=i <= last_index, update=by_status.get(status))
        for i, status in enumerate(TRACKING_SEQUENCE)
    ]


def tracking_view(order: OrderRecord) -> TrackingView:
    # Orders that never got approved show no progress rather than an error.
    updates = order.tracking_updates if order.status is OrderStatus.APPROVED else ()
    return TrackingView(
        tracking_id=order.tracking_id,
        status=order.status,
        buyer=BuyerSummary(name=order.buyer.name, email=order.buyer.email),
        timeline=build_timeline(updates),
        last_update=latest_update(updates),
    )
