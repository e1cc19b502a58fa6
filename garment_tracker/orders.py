"""
Order placement: snapshot the product and buyer, price the order, start it as pending.
"""
import uuid
from datetime import datetime

from garment_tracker.config import settings
from garment_tracker.models import (
    BuyerSnapshot,
    OrderRecord,
    OrderStatus,
    PaymentOption,
    PaymentStatus,
    Product,
)
from garment_tracker.order_state import OrderValidationError


def new_tracking_id(now: datetime) -> str:
    return f"{settings.tracking_id_prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def place_order(
    product: Product,
    buyer: BuyerSnapshot,
    quantity: int,
    payment_option: PaymentOption,
    now: datetime,
) -> OrderRecord:
    if quantity < 1:
        raise OrderValidationError("Quantity must be at least 1", action="place_order")
    if quantity < product.min_order_quantity:
        raise OrderValidationError(
            f"Minimum order quantity for {product.name} is {product.min_order_quantity}",
            action="place_order",
        )
    if quantity > product.available_quantity:
        raise OrderValidationError(
            f"Only {product.available_quantity} units of {product.name} available",
            action="place_order",
        )
    if payment_option not in product.payment_options:
        raise OrderValidationError(
            f"{payment_option.value} is not offered for {product.name}",
            action="place_order",
        )

    snapshot = product.snapshot()
    return OrderRecord(
        id=str(uuid.uuid4()),
        tracking_id=new_tracking_id(now),
        buyer=buyer,
        product=snapshot,
        quantity=quantity,
        order_price=round(quantity * snapshot.price, 2),
        payment_option=payment_option,
        requires_online_payment=payment_option is PaymentOption.PAY_FIRST,
        payment_status=PaymentStatus.PENDING,
        status=OrderStatus.PENDING,
        created_at=now,
    )
