"""
Order lifecycle state machine. Valid transitions enforce business rules.

pending -> approved | rejected | cancelled; the other three states are terminal.
Every function here is pure: it takes the current record and returns a new one
or raises, leaving the input untouched.
"""
from datetime import datetime

from garment_tracker.models import Actor, OrderRecord, OrderStatus, PaymentOption, PaymentStatus

# Current status -> action -> resulting status
VALID_TRANSITIONS: dict[OrderStatus, dict[str, OrderStatus]] = {
    OrderStatus.PENDING: {
        "approve": OrderStatus.APPROVED,
        "reject": OrderStatus.REJECTED,
        "cancel": OrderStatus.CANCELLED,
    },
    OrderStatus.APPROVED: {},  # terminal
    OrderStatus.REJECTED: {},  # terminal
    OrderStatus.CANCELLED: {},  # terminal
}


class OrderError(Exception):
    """Base for every recoverable order failure. Carries enough context to explain the rejection."""
    kind = "order_error"

    def __init__(
        self,
        message: str,
        order_id: str | None = None,
        action: str | None = None,
        current_status: str | None = None,
    ):
        self.message = message
        self.order_id = order_id
        self.action = action
        self.current_status = current_status
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "order_id": self.order_id,
            "action": self.action,
            "current_status": self.current_status,
        }


class InvalidTransitionError(OrderError):
    """Raised when order status transition is not allowed from the current status."""
    kind = "invalid_transition"


class InvalidOrderStateError(OrderError):
    """Raised when a tracking update targets an order that is not approved."""
    kind = "invalid_order_state"


class InvalidCheckpointError(OrderError):
    """Raised when a tracking status is not one of the production checkpoints."""
    kind = "invalid_checkpoint"


class OrderValidationError(OrderError):
    kind = "validation_error"


class OrderPermissionError(OrderError):
    kind = "permission_denied"


class OrderNotFoundError(OrderError):
    kind = "not_found"


def is_valid_transition(current_status: OrderStatus, action: str) -> bool:
    """True if action is allowed from current_status."""
    return action in VALID_TRANSITIONS.get(current_status, {})


def _transition(order: OrderRecord, action: str) -> OrderStatus:
    if not is_valid_transition(order.status, action):
        raise InvalidTransitionError(
            f"Cannot {action} order {order.tracking_id}: status is {order.status.value}",
            order_id=order.id,
            action=action,
            current_status=order.status.value,
        )
    return VALID_TRANSITIONS[order.status][action]


def approve(order: OrderRecord, actor: Actor, now: datetime) -> OrderRecord:
    new_status = _transition(order, "approve")
    return order.model_copy(update={"status": new_status, "approved_at": now})


def reject(order: OrderRecord, actor: Actor, now: datetime) -> OrderRecord:
    new_status = _transition(order, "reject")
    return order.model_copy(update={"status": new_status})


def cancel(order: OrderRecord, actor: Actor, now: datetime) -> OrderRecord:
    """Only the buyer who placed the order may cancel it, and only while pending."""
    new_status = _transition(order, "cancel")
    if actor.id != order.buyer.uid:
        raise OrderPermissionError(
            f"Only the buyer who placed order {order.tracking_id} can cancel it",
            order_id=order.id,
            action="cancel",
            current_status=order.status.value,
        )
    return order.model_copy(update={"status": new_status, "cancelled_at": now})


def record_payment(order: OrderRecord, actor: Actor, now: datetime) -> OrderRecord:
    """Mark an online-payment order as paid. COD orders never advance payment status."""
    if order.payment_option is not PaymentOption.PAY_FIRST:
        raise InvalidTransitionError(
            f"Order {order.tracking_id} is cash on delivery",
            order_id=order.id,
            action="record_payment",
            current_status=order.status.value,
        )
    if order.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
        raise InvalidTransitionError(
            f"Cannot record payment for {order.status.value} order {order.tracking_id}",
            order_id=order.id,
            action="record_payment",
            current_status=order.status.value,
        )
    if order.payment_status is PaymentStatus.PAID:
        raise InvalidTransitionError(
            f"Order {order.tracking_id} is already paid",
            order_id=order.id,
            action="record_payment",
            current_status=order.status.value,
        )
    return order.model_copy(update={"payment_status": PaymentStatus.PAID, "paid_at": now})
