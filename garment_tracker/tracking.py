"""
Production tracking: the fixed checkpoint sequence, the next-step suggestion
used to pre-fill the update form, and appending updates to approved orders.

Checkpoints may be submitted out of order; the suggestion is advisory only.
"""
from datetime import datetime, timezone

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from garment_tracker.models import Actor, OrderRecord, OrderStatus, TrackingStatus, TrackingUpdate
from garment_tracker.order_state import InvalidCheckpointError, InvalidOrderStateError, OrderValidationError

TRACKING_SEQUENCE: tuple[TrackingStatus, ...] = tuple(TrackingStatus)
FINAL_CHECKPOINT = TRACKING_SEQUENCE[-1]

_datetime_adapter = TypeAdapter(datetime)


class TrackingSubmission(BaseModel):
    """Raw tracking update as submitted; validated by append_tracking_update."""
    status: str
    location: str = ""
    note: str | None = None
    updated_at: datetime | str | None = None


class TrackingSuggestion(BaseModel):
    status: TrackingStatus
    location: str = ""


def checkpoint_index(status: TrackingStatus | str) -> int:
    """Position of status in the sequence, -1 if it is not a checkpoint."""
    try:
        return TRACKING_SEQUENCE.index(TrackingStatus(status))
    except ValueError:
        return -1


def parse_checkpoint(value: TrackingStatus | str) -> TrackingStatus | None:
    try:
        return TrackingStatus(value)
    except ValueError:
        return None


def next_suggested(order: OrderRecord) -> TrackingSuggestion:
    last = order.last_tracking_update
    if last is None:
        return TrackingSuggestion(status=TRACKING_SEQUENCE[0], location="")
    if last.status is FINAL_CHECKPOINT:
        return TrackingSuggestion(status=last.status, location=last.location)
    return TrackingSuggestion(
        status=TRACKING_SEQUENCE[checkpoint_index(last.status) + 1],
        location=last.location,
    )


def parse_timestamp(value: datetime | str | None, default: datetime) -> datetime:
    """Parse a submitted timestamp. Naive values (HTML datetime-local) are read as UTC.

    Strings must be ISO 8601; bare numbers are not taken as Unix time.
    """
    if value is None:
        parsed = default
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip())
    else:
        parsed = _datetime_adapter.validate_python(value, strict=True)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def append_tracking_update(
    order: OrderRecord,
    submission: TrackingSubmission,
    actor: Actor,
    now: datetime,
) -> OrderRecord:
    if order.status is not OrderStatus.APPROVED:
        raise InvalidOrderStateError(
            f"Order {order.tracking_id} is {order.status.value}; tracking requires an approved order",
            order_id=order.id,
            action="add_tracking",
            current_status=order.status.value,
        )

    checkpoint = parse_checkpoint(submission.status)
    if checkpoint is None:
        raise InvalidCheckpointError(
            f"{submission.status!r} is not a tracking checkpoint",
            order_id=order.id,
            action="add_tracking",
            current_status=order.status.value,
        )

    location = (submission.location or "").strip()
    if not location:
        raise OrderValidationError(
            "Location is required",
            order_id=order.id,
            action="add_tracking",
            current_status=order.status.value,
        )

    try:
        updated_at = parse_timestamp(submission.updated_at, default=now)
    except (ValueError, PydanticValidationError):
        raise OrderValidationError(
            f"Invalid timestamp {submission.updated_at!r}",
            order_id=order.id,
            action="add_tracking",
            current_status=order.status.value,
        )

    update = TrackingUpdate(
        status=checkpoint,
        location=location,
        note=submission.note or None,
        updated_at=updated_at,
        updated_by=actor,
    )
    return order.model_copy(update={"tracking_updates": order.tracking_updates + (update,)})
