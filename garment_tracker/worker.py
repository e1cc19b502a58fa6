"""
Worker: pull buyer notifications from Redis, write them to the Postgres inbox.
- Exponential backoff + manual DLQ after worker_max_retries.
- Prometheus /metrics on worker_metrics_port (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m garment_tracker.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis

from garment_tracker.config import settings
from garment_tracker.db import close_pool, get_pool, init_schema, insert_notification
from garment_tracker.metrics import notifications_delivered_total, notifications_dlq_total, notifications_failed_total
from garment_tracker.queue import NOTIFICATION_DLQ_KEY, NOTIFICATION_QUEUE_KEY

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30


def _backoff_seconds(attempts: int) -> float:
    return 2 ** attempts


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.worker_metrics_port)


async def process_one(
    r: redis.Redis,
    pool,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return
    notification_id = data.get("notification_id")
    attempts = data.get("attempts", 0)
    if not notification_id or not data.get("buyer_uid"):
        logger.warning("Message missing notification_id or buyer_uid, skipping")
        return

    async with sem:
        try:
            inserted = await insert_notification(pool, data)
            if inserted:
                logger.info(
                    "Delivered %s notification_id=%s tracking_id=%s",
                    data.get("event"),
                    notification_id,
                    data.get("tracking_id"),
                )
            else:
                logger.info("Duplicate notification_id=%s, skipped", notification_id)
            notifications_delivered_total.inc()
        except Exception as e:
            notifications_failed_total.inc()
            logger.exception("Failed to deliver notification_id=%s (attempt %d): %s", notification_id, attempts + 1, e)
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                await r.lpush(NOTIFICATION_DLQ_KEY, json.dumps({
                    **data,
                    "attempts": next_attempts,
                    "last_error": str(e),
                    "failed_at": time.time(),
                }))
                notifications_dlq_total.inc()
                logger.warning(
                    "Moved notification_id=%s to DLQ after %d attempts", notification_id, settings.worker_max_retries
                )
            else:
                backoff_sec = _backoff_seconds(attempts)
                logger.info(
                    "Re-queuing notification_id=%s in %ss (attempt %d/%d)",
                    notification_id,
                    backoff_sec,
                    next_attempts,
                    settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps({**data, "attempts": next_attempts}))


async def run_worker(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Listening on %s (concurrency=%d, max_retries=%d) ...",
        NOTIFICATION_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(NOTIFICATION_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one(r, pool, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        if tasks:
            logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
            _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await r.aclose()
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.worker_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
