import asyncio
import json

import pytest
from _helper import build_order, headers_for

from garment_tracker.models import OrderStatus, PaymentOption, Product
from garment_tracker.queue import NOTIFICATION_QUEUE_KEY

pytestmark = pytest.mark.anyio

ORDER_BODY = {
    "product_id": "prod-1",
    "quantity": 250,
    "payment_option": "COD",
    "buyer": {
        "first_name": "Rahim",
        "last_name": "Uddin",
        "contact_number": "+8801700000000",
        "delivery_address": "House 12, Road 5, Dhaka",
    },
}


@pytest.fixture
def catalog(store):
    store.products["prod-1"] = Product(
        id="prod-1",
        name="Polo Shirt",
        price=4.0,
        available_quantity=1000,
        min_order_quantity=100,
        payment_options=[PaymentOption.COD, PaymentOption.PAY_FIRST],
    )
    return store


@pytest.fixture
def seeded(store):
    store.orders["order-1"] = build_order()
    return store


async def test_buyer_places_order(client, catalog, buyer, fake_redis):
    resp = await client.post("/orders", json=ORDER_BODY, headers=headers_for(buyer))
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["order_price"] == 1000.0
    assert body["buyer"]["uid"] == "buyer-1"
    assert body["buyer"]["email"] == "rahim@example.com"
    assert body["id"] in catalog.orders


async def test_order_below_minimum_quantity(client, catalog, buyer):
    resp = await client.post("/orders", json={**ORDER_BODY, "quantity": 10}, headers=headers_for(buyer))
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


async def test_order_for_unknown_product(client, catalog, buyer):
    resp = await client.post("/orders", json={**ORDER_BODY, "product_id": "nope"}, headers=headers_for(buyer))
    assert resp.status_code == 404


async def test_repeated_idempotency_key_places_one_order(client, catalog, buyer):
    headers = {**headers_for(buyer), "Idempotency-Key": "abc-123"}
    first = await client.post("/orders", json=ORDER_BODY, headers=headers)
    second = await client.post("/orders", json=ORDER_BODY, headers=headers)
    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json() == {"status": "already_processed"}
    assert len(catalog.orders) == 1


async def test_failed_order_releases_idempotency_key(client, catalog, buyer):
    headers = {**headers_for(buyer), "Idempotency-Key": "retry-me"}
    failed = await client.post("/orders", json={**ORDER_BODY, "quantity": 1}, headers=headers)
    retried = await client.post("/orders", json=ORDER_BODY, headers=headers)
    assert failed.status_code == 422
    assert retried.status_code == 201


async def test_missing_identity_is_unauthorized(client, seeded):
    resp = await client.patch("/orders/order-1/approve")
    assert resp.status_code == 401


async def test_buyer_cannot_approve(client, seeded, buyer):
    resp = await client.patch("/orders/order-1/approve", headers=headers_for(buyer))
    assert resp.status_code == 403
    assert seeded.orders["order-1"].status is OrderStatus.PENDING


async def test_approve_then_approve_again(client, seeded, manager, fake_redis):
    first = await client.patch("/orders/order-1/approve", headers=headers_for(manager))
    assert first.status_code == 200
    assert first.json()["status"] == "approved"
    approved_at = seeded.orders["order-1"].approved_at
    assert approved_at is not None

    second = await client.patch("/orders/order-1/approve", headers=headers_for(manager))
    assert second.status_code == 409
    assert second.json()["error"] == "invalid_transition"
    assert second.json()["current_status"] == "approved"
    assert seeded.orders["order-1"].approved_at == approved_at

    queued = [json.loads(m) for m in await fake_redis.lrange(NOTIFICATION_QUEUE_KEY, 0, -1)]
    assert [m["event"] for m in queued] == ["approve"]
    assert queued[0]["buyer_uid"] == "buyer-1"


async def test_concurrent_approvals_only_one_wins(client, seeded, manager, admin):
    results = await asyncio.gather(
        client.patch("/orders/order-1/approve", headers=headers_for(manager)),
        client.patch("/orders/order-1/approve", headers=headers_for(admin)),
    )
    assert sorted(r.status_code for r in results) == [200, 409]
    assert seeded.orders["order-1"].status is OrderStatus.APPROVED
    assert [e[1] for e in seeded.events] == ["approve"]


async def test_buyer_cancels_pending_order(client, seeded, buyer):
    resp = await client.patch("/orders/order-1/cancel", headers=headers_for(buyer))
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancelled_at"] is not None


async def test_other_buyer_cannot_cancel(client, seeded, other_buyer):
    resp = await client.patch("/orders/order-1/cancel", headers=headers_for(other_buyer))
    assert resp.status_code == 403
    assert resp.json()["error"] == "permission_denied"


async def test_cancel_after_approval_conflicts(client, seeded, manager, buyer):
    await client.patch("/orders/order-1/approve", headers=headers_for(manager))
    resp = await client.patch("/orders/order-1/cancel", headers=headers_for(buyer))
    assert resp.status_code == 409
    assert seeded.orders["order-1"].status is OrderStatus.APPROVED


async def test_unknown_order_is_not_found(client, store, manager):
    resp = await client.patch("/orders/missing/approve", headers=headers_for(manager))
    assert resp.status_code == 404


async def test_tracking_flow(client, seeded, manager, buyer):
    await client.patch("/orders/order-1/approve", headers=headers_for(manager))

    suggestion = await client.get("/orders/order-1/tracking/next", headers=headers_for(manager))
    assert suggestion.json() == {"status": "Cutting Completed", "location": ""}

    resp = await client.post(
        "/orders/order-1/tracking",
        json={"status": "Sewing Started", "location": "Dhaka", "updated_at": "2024-01-02T10:00:00Z"},
        headers=headers_for(manager),
    )
    assert resp.status_code == 201
    assert len(resp.json()["tracking_updates"]) == 1

    view = await client.get("/orders/order-1/tracking", headers=headers_for(buyer))
    assert view.status_code == 200
    timeline = view.json()["timeline"]
    assert len(timeline) == 8
    assert [s["completed"] for s in timeline] == [True, True] + [False] * 6
    assert timeline[0]["update"] is None
    assert timeline[1]["update"]["location"] == "Dhaka"
    assert view.json()["last_update"]["status"] == "Sewing Started"
    assert view.json()["buyer"] == {"name": "Rahim Uddin", "email": "rahim@example.com"}

    suggestion = await client.get("/orders/order-1/tracking/next", headers=headers_for(manager))
    assert suggestion.json() == {"status": "Finishing", "location": "Dhaka"}


async def test_tracking_unknown_checkpoint(client, seeded, manager):
    await client.patch("/orders/order-1/approve", headers=headers_for(manager))
    resp = await client.post(
        "/orders/order-1/tracking",
        json={"status": "Pressed", "location": "Dhaka"},
        headers=headers_for(manager),
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_checkpoint"
    assert seeded.orders["order-1"].tracking_updates == ()


async def test_tracking_empty_location(client, seeded, manager):
    await client.patch("/orders/order-1/approve", headers=headers_for(manager))
    resp = await client.post(
        "/orders/order-1/tracking",
        json={"status": "Packed", "location": "", "updated_at": "2024-01-03T10:00:00Z"},
        headers=headers_for(manager),
    )
    assert resp.status_code == 422
    assert resp.json()["error"] == "validation_error"


async def test_tracking_on_cancelled_order(client, seeded, manager, buyer):
    await client.patch("/orders/order-1/cancel", headers=headers_for(buyer))
    resp = await client.post(
        "/orders/order-1/tracking",
        json={"status": "Packed", "location": "Dhaka"},
        headers=headers_for(manager),
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_order_state"


async def test_tracking_idempotency_key(client, seeded, manager):
    await client.patch("/orders/order-1/approve", headers=headers_for(manager))
    headers = {**headers_for(manager), "Idempotency-Key": "upd-1"}
    body = {"status": "Finishing", "location": "Gazipur"}
    first = await client.post("/orders/order-1/tracking", json=body, headers=headers)
    second = await client.post("/orders/order-1/tracking", json=body, headers=headers)
    assert first.status_code == 201
    assert second.status_code == 200
    assert len(seeded.orders["order-1"].tracking_updates) == 1


async def test_buyer_only_sees_own_orders(client, store, buyer, other_buyer):
    store.orders["order-1"] = build_order()
    store.orders["order-2"] = build_order(id="order-2", tracking_id="GT-20240101-DEF456")
    store.orders["order-2"] = store.orders["order-2"].model_copy(
        update={"buyer": store.orders["order-2"].buyer.model_copy(update={"uid": "buyer-2"})}
    )

    mine = await client.get("/orders/my/orders", headers=headers_for(buyer))
    assert [o["id"] for o in mine.json()["orders"]] == ["order-1"]

    hidden = await client.get("/orders/order-2", headers=headers_for(buyer))
    assert hidden.status_code == 404
    visible = await client.get("/orders/order-2", headers=headers_for(other_buyer))
    assert visible.status_code == 200


async def test_status_listing_paginates_and_searches(client, store, manager):
    for i in range(12):
        store.orders[f"order-{i}"] = build_order(id=f"order-{i}", tracking_id=f"GT-20240101-{i:06d}")
    store.orders["order-0"] = store.orders["order-0"].model_copy(update={"status": OrderStatus.APPROVED})

    page1 = await client.get("/orders/status/pending?limit=5", headers=headers_for(manager))
    assert page1.status_code == 200
    assert len(page1.json()["orders"]) == 5
    assert page1.json()["pagination"] == {
        "current_page": 1,
        "total_pages": 3,
        "total_items": 11,
        "has_next_page": True,
        "has_prev_page": False,
        "items_per_page": 5,
    }

    found = await client.get("/orders/status/pending?searchText=000007", headers=headers_for(manager))
    assert [o["id"] for o in found.json()["orders"]] == ["order-7"]


async def test_global_listing_is_admin_only(client, seeded, manager, admin):
    assert (await client.get("/orders", headers=headers_for(manager))).status_code == 403
    resp = await client.get("/orders?status=pending", headers=headers_for(admin))
    assert resp.status_code == 200
    assert resp.json()["pagination"]["total_items"] == 1


async def test_invalid_status_filter(client, seeded, manager):
    resp = await client.get("/orders/status/shipped", headers=headers_for(manager))
    assert resp.status_code == 422


async def test_record_payment(client, store, admin):
    store.orders["order-1"] = build_order(payment_option=PaymentOption.PAY_FIRST, requires_online_payment=True)
    resp = await client.patch("/orders/order-1/payment", headers=headers_for(admin))
    assert resp.status_code == 200
    assert resp.json()["payment_status"] == "paid"
    again = await client.patch("/orders/order-1/payment", headers=headers_for(admin))
    assert again.status_code == 409


async def test_health_and_metrics(client):
    assert (await client.get("/health")).json() == {"status": "ok"}
    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "order_transitions_total" in metrics.text
