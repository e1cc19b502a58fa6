import asyncio
import json

import pytest
from _helper import build_order, headers_for

from garment_tracker import worker
from garment_tracker.config import settings
from garment_tracker.queue import NOTIFICATION_DLQ_KEY, NOTIFICATION_QUEUE_KEY, push_notification

pytestmark = pytest.mark.anyio


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(worker, "_backoff_seconds", lambda attempts: 0)


async def _pop_one(r) -> str:
    _key, raw = await r.brpop(NOTIFICATION_QUEUE_KEY, timeout=1)
    return raw


async def test_notification_delivered_to_inbox(store, fake_redis, monkeypatch):
    monkeypatch.setattr(worker, "insert_notification", store.insert_notification)
    order = build_order()
    notification_id = await push_notification(order, "approve")

    await worker.process_one(fake_redis, None, await _pop_one(fake_redis), asyncio.Semaphore(1))

    assert len(store.notifications) == 1
    delivered = store.notifications[0]
    assert delivered["notification_id"] == notification_id
    assert delivered["message"] == "Your order GT-20240101-ABC123 has been approved."


async def test_duplicate_delivery_is_skipped(store, fake_redis, monkeypatch):
    monkeypatch.setattr(worker, "insert_notification", store.insert_notification)
    await push_notification(build_order(), "reject")
    raw = await _pop_one(fake_redis)

    await worker.process_one(fake_redis, None, raw, asyncio.Semaphore(1))
    await worker.process_one(fake_redis, None, raw, asyncio.Semaphore(1))

    assert len(store.notifications) == 1


async def test_failed_delivery_is_requeued(fake_redis, monkeypatch, no_backoff):
    async def failing_insert(pool, body):
        raise ConnectionError("db down")

    monkeypatch.setattr(worker, "insert_notification", failing_insert)
    await push_notification(build_order(), "cancel")

    await worker.process_one(fake_redis, None, await _pop_one(fake_redis), asyncio.Semaphore(1))

    requeued = json.loads(await _pop_one(fake_redis))
    assert requeued["attempts"] == 1
    assert requeued["event"] == "cancel"


async def test_exhausted_retries_go_to_dlq(fake_redis, monkeypatch, no_backoff):
    async def failing_insert(pool, body):
        raise ConnectionError("db down")

    monkeypatch.setattr(worker, "insert_notification", failing_insert)
    await push_notification(build_order(), "approve")
    raw = json.loads(await _pop_one(fake_redis))
    raw["attempts"] = settings.worker_max_retries - 1

    await worker.process_one(fake_redis, None, json.dumps(raw), asyncio.Semaphore(1))

    assert await fake_redis.llen(NOTIFICATION_QUEUE_KEY) == 0
    dead = json.loads(await fake_redis.lindex(NOTIFICATION_DLQ_KEY, 0))
    assert dead["attempts"] == settings.worker_max_retries
    assert dead["last_error"] == "db down"


async def test_invalid_message_is_dropped(fake_redis, monkeypatch):
    async def must_not_run(pool, body):
        raise AssertionError("should not deliver")

    monkeypatch.setattr(worker, "insert_notification", must_not_run)
    await worker.process_one(fake_redis, None, "{not json", asyncio.Semaphore(1))
    await worker.process_one(fake_redis, None, json.dumps({"event": "approve"}), asyncio.Semaphore(1))
    assert await fake_redis.llen(NOTIFICATION_DLQ_KEY) == 0


async def test_admin_replays_dlq(client, fake_redis, admin, manager):
    dead = {"notification_id": "n-1", "buyer_uid": "buyer-1", "attempts": 5, "last_error": "db down"}
    await fake_redis.lpush(NOTIFICATION_DLQ_KEY, json.dumps(dead))

    assert (await client.post("/admin/dlq/replay", headers=headers_for(manager))).status_code == 403
    resp = await client.post("/admin/dlq/replay", headers=headers_for(admin))

    assert resp.json() == {"status": "ok", "replayed": 1}
    replayed = json.loads(await _pop_one(fake_redis))
    assert replayed["attempts"] == 0
    assert "last_error" not in replayed


async def test_buyer_reads_inbox(client, store, buyer):
    store.notifications.append(
        {"notification_id": "n-1", "buyer_uid": "buyer-1", "event": "approve", "message": "approved"}
    )
    store.notifications.append(
        {"notification_id": "n-2", "buyer_uid": "buyer-2", "event": "reject", "message": "rejected"}
    )
    resp = await client.get("/notifications/my", headers=headers_for(buyer))
    assert [n["notification_id"] for n in resp.json()["notifications"]] == ["n-1"]
