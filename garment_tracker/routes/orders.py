import logging
from collections.abc import Callable
from datetime import datetime, timezone

import asyncpg
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from garment_tracker import db
from garment_tracker.metrics import (
    order_transitions_rejected_total,
    order_transitions_total,
    orders_placed_total,
    tracking_updates_total,
)
from garment_tracker.models import Actor, ActorRole, BuyerSnapshot, OrderRecord, OrderStatus, PaymentOption
from garment_tracker.order_state import (
    OrderError,
    OrderNotFoundError,
    OrderValidationError,
    approve,
    cancel,
    record_payment,
    reject,
)
from garment_tracker.orders import place_order
from garment_tracker.queue import push_notification
from garment_tracker.redis_client import check_idempotency, release_idempotency
from garment_tracker.routes.deps import (
    PageParams,
    get_actor,
    get_db_pool,
    pagination,
    require_admin,
    require_buyer,
    require_staff,
)
from garment_tracker.timeline import tracking_view
from garment_tracker.tracking import TrackingSubmission, append_tracking_update, next_suggested

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


class BuyerDetails(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    contact_number: str = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    email: str | None = None
    notes: str | None = None


class PlaceOrderBody(BaseModel):
    product_id: str
    quantity: int
    payment_option: PaymentOption = PaymentOption.COD
    buyer: BuyerDetails


class TrackingBody(BaseModel):
    status: str = Field(..., description="One of the production checkpoints")
    location: str = ""
    note: str | None = None
    updated_at: str | None = Field(default=None, description="ISO timestamp; defaults to now")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _list_response(orders: list[OrderRecord], page: PageParams, total: int) -> dict:
    return {
        "orders": [o.model_dump(mode="json") for o in orders],
        "pagination": pagination(page.page, page.limit, total),
    }


async def _load_visible_order(pool: asyncpg.Pool, order_id: str, actor: Actor) -> OrderRecord:
    """Buyers only see their own orders; staff see all."""
    order = await db.fetch_order(pool, order_id)
    if order is None or (actor.role is ActorRole.BUYER and order.buyer.uid != actor.id):
        raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id)
    return order


async def _apply(
    pool: asyncpg.Pool,
    order_id: str,
    action: str,
    mutate: Callable[[OrderRecord], OrderRecord],
    actor: Actor,
) -> OrderRecord:
    try:
        order = await db.apply_order_action(pool, order_id, action, mutate, actor)
    except OrderError as e:
        order_transitions_rejected_total.labels(kind=e.kind, action=action).inc()
        logger.info("Rejected %s order_id=%s: %s", action, order_id, e.message)
        raise
    order_transitions_total.labels(action=action).inc()
    try:
        await push_notification(order, action)
    except Exception:
        # The transition is committed; a lost notification must not fail the request.
        logger.exception("Failed to queue %s notification for order_id=%s", action, order_id)
    return order


@router.post("")
async def create_order(
    body: PlaceOrderBody,
    actor: Actor = Depends(require_buyer),
    pool: asyncpg.Pool = Depends(get_db_pool),
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    """
    Place an order as the acting buyer. Optional Idempotency-Key: a repeated key -> 200 (already processed).
    New order -> 201 Created.
    """
    key = f"idempotency:order:{actor.id}:{idempotency_key}" if idempotency_key else None
    if key and await check_idempotency(key):
        return JSONResponse(status_code=200, content={"status": "already_processed"})

    try:
        product = await db.fetch_product(pool, body.product_id)
        if product is None:
            raise HTTPException(status_code=404, detail=f"Product {body.product_id} not found")
        email = body.buyer.email or actor.email
        if not email:
            raise OrderValidationError("Buyer email is required", action="place_order")
        buyer = BuyerSnapshot(
            uid=actor.id,
            email=email,
            **body.buyer.model_dump(exclude={"email"}),
        )
        order = place_order(product, buyer, body.quantity, body.payment_option, _now())
        await db.insert_order(pool, order, actor)
    except Exception:
        if key:
            await release_idempotency(key)
        raise

    orders_placed_total.labels(payment_option=order.payment_option.value).inc()
    return JSONResponse(status_code=201, content=order.model_dump(mode="json"))


@router.get("")
async def all_orders(
    status: OrderStatus | None = Query(default=None),
    page: PageParams = Depends(),
    actor: Actor = Depends(require_admin),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    orders, total = await db.list_orders(
        pool,
        status=status.value if status else None,
        search=page.search,
        page=page.page,
        limit=page.limit,
    )
    return _list_response(orders, page, total)


@router.get("/status/{status}")
async def orders_by_status(
    status: OrderStatus,
    page: PageParams = Depends(),
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    orders, total = await db.list_orders(
        pool, status=status.value, search=page.search, page=page.page, limit=page.limit
    )
    return _list_response(orders, page, total)


@router.get("/my/orders")
async def my_orders(
    status: OrderStatus | None = Query(default=None),
    page: PageParams = Depends(),
    actor: Actor = Depends(require_buyer),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    orders, total = await db.list_orders(
        pool,
        status=status.value if status else None,
        buyer_uid=actor.id,
        search=page.search,
        page=page.page,
        limit=page.limit,
    )
    return _list_response(orders, page, total)


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    order = await _load_visible_order(pool, order_id, actor)
    return order.model_dump(mode="json")


@router.patch("/{order_id}/approve")
async def approve_order(
    order_id: str,
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    now = _now()
    order = await _apply(pool, order_id, "approve", lambda o: approve(o, actor, now), actor)
    return order.model_dump(mode="json")


@router.patch("/{order_id}/reject")
async def reject_order(
    order_id: str,
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    now = _now()
    order = await _apply(pool, order_id, "reject", lambda o: reject(o, actor, now), actor)
    return order.model_dump(mode="json")


@router.patch("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    actor: Actor = Depends(require_buyer),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    now = _now()
    order = await _apply(pool, order_id, "cancel", lambda o: cancel(o, actor, now), actor)
    return order.model_dump(mode="json")


@router.patch("/{order_id}/payment")
async def record_order_payment(
    order_id: str,
    actor: Actor = Depends(require_admin),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    now = _now()
    order = await _apply(pool, order_id, "record_payment", lambda o: record_payment(o, actor, now), actor)
    return order.model_dump(mode="json")


@router.post("/{order_id}/tracking")
async def add_tracking_update(
    order_id: str,
    body: TrackingBody,
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    key = f"idempotency:tracking:{order_id}:{idempotency_key}" if idempotency_key else None
    if key and await check_idempotency(key):
        return JSONResponse(status_code=200, content={"status": "already_processed"})

    submission = TrackingSubmission(**body.model_dump())
    now = _now()
    try:
        order = await _apply(
            pool,
            order_id,
            "add_tracking",
            lambda o: append_tracking_update(o, submission, actor, now),
            actor,
        )
    except Exception:
        if key:
            await release_idempotency(key)
        raise

    tracking_updates_total.labels(checkpoint=order.tracking_updates[-1].status.value).inc()
    return JSONResponse(status_code=201, content=order.model_dump(mode="json"))


@router.get("/{order_id}/tracking")
async def get_tracking(
    order_id: str,
    actor: Actor = Depends(get_actor),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    order = await _load_visible_order(pool, order_id, actor)
    return tracking_view(order).model_dump(mode="json")


@router.get("/{order_id}/tracking/next")
async def get_next_tracking_step(
    order_id: str,
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    """Suggested checkpoint and location to pre-fill the update form. Advisory only."""
    order = await _load_visible_order(pool, order_id, actor)
    return next_suggested(order).model_dump(mode="json")
