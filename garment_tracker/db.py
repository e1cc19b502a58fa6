"""
Async Postgres: products, orders (current state), order_tracking_updates (append-only log),
order_events (audit log) and the buyer notification inbox.
Every order action runs in a single transaction: lock order row, validate, write state, log the event.
"""
import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from garment_tracker.config import settings
from garment_tracker.models import (
    Actor,
    BuyerSnapshot,
    OrderRecord,
    PriceRange,
    Product,
    ProductSnapshot,
    TrackingUpdate,
)
from garment_tracker.order_state import OrderNotFoundError

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None


class DuplicateProductError(Exception):
    """Raised when a product id already exists."""


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS products (
                id VARCHAR(64) PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                description TEXT,
                category VARCHAR(100),
                price DOUBLE PRECISION NOT NULL,
                available_quantity INT NOT NULL DEFAULT 0,
                min_order_quantity INT NOT NULL DEFAULT 1,
                images JSONB NOT NULL DEFAULT '[]',
                payment_options JSONB NOT NULL DEFAULT '["COD"]',
                show_on_home BOOLEAN NOT NULL DEFAULT FALSE,
                created_by VARCHAR(255),
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                tracking_id VARCHAR(64) NOT NULL UNIQUE,
                buyer_uid VARCHAR(255) NOT NULL,
                buyer JSONB NOT NULL,
                product JSONB NOT NULL,
                quantity INT NOT NULL CHECK (quantity > 0),
                order_price DOUBLE PRECISION NOT NULL,
                payment_option VARCHAR(20) NOT NULL,
                requires_online_payment BOOLEAN NOT NULL,
                payment_status VARCHAR(20) NOT NULL,
                status VARCHAR(20) NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                approved_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                paid_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_buyer_uid ON orders(buyer_uid);")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_tracking_updates (
                id UUID PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id),
                seq INT NOT NULL,
                status VARCHAR(50) NOT NULL,
                location VARCHAR(255) NOT NULL,
                note TEXT,
                updated_at TIMESTAMPTZ NOT NULL,
                updated_by JSONB,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                UNIQUE(order_id, seq)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_events (
                id UUID PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id),
                action VARCHAR(50) NOT NULL,
                from_status VARCHAR(20),
                to_status VARCHAR(20) NOT NULL,
                actor_id VARCHAR(255),
                actor_role VARCHAR(20),
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_events_order_id
            ON order_events(order_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id UUID PRIMARY KEY,
                buyer_uid VARCHAR(255) NOT NULL,
                order_id VARCHAR(64) NOT NULL,
                tracking_id VARCHAR(64) NOT NULL,
                event VARCHAR(50) NOT NULL,
                message TEXT NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_notifications_buyer_uid
            ON notifications(buyer_uid);
        """)


def _json(value) -> dict | list:
    return json.loads(value) if isinstance(value, str) else value


def _row_to_product(row: asyncpg.Record) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        category=row["category"],
        price=row["price"],
        available_quantity=row["available_quantity"],
        min_order_quantity=row["min_order_quantity"],
        images=_json(row["images"]),
        payment_options=_json(row["payment_options"]),
        show_on_home=row["show_on_home"],
        created_by=row["created_by"],
    )


def _row_to_update(row: asyncpg.Record) -> TrackingUpdate:
    updated_by = _json(row["updated_by"]) if row["updated_by"] else None
    return TrackingUpdate(
        status=row["status"],
        location=row["location"],
        note=row["note"],
        updated_at=row["updated_at"],
        updated_by=Actor(**updated_by) if updated_by else None,
    )


def _row_to_order(row: asyncpg.Record, updates: list[TrackingUpdate]) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        tracking_id=row["tracking_id"],
        buyer=BuyerSnapshot(**_json(row["buyer"])),
        product=ProductSnapshot(**_json(row["product"])),
        quantity=row["quantity"],
        order_price=row["order_price"],
        payment_option=row["payment_option"],
        requires_online_payment=row["requires_online_payment"],
        payment_status=row["payment_status"],
        status=row["status"],
        created_at=row["created_at"],
        approved_at=row["approved_at"],
        cancelled_at=row["cancelled_at"],
        paid_at=row["paid_at"],
        tracking_updates=tuple(updates),
    )


async def create_product(pool: asyncpg.Pool, product: Product) -> Product:
    async with pool.acquire() as conn:
        try:
            await conn.execute(
                """
                INSERT INTO products (id, name, description, category, price, available_quantity,
                                      min_order_quantity, images, payment_options, show_on_home, created_by)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11);
                """,
                product.id,
                product.name,
                product.description,
                product.category,
                product.price,
                product.available_quantity,
                product.min_order_quantity,
                json.dumps(product.images),
                json.dumps([p.value for p in product.payment_options]),
                product.show_on_home,
                product.created_by,
            )
        except UniqueViolationError:
            raise DuplicateProductError(product.id)
    return product


async def fetch_product(pool: asyncpg.Pool, product_id: str) -> Product | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM products WHERE id = $1;", product_id)
    return _row_to_product(row) if row else None


_PRICE_RANGE_SQL = {
    PriceRange.LOW: "price < 50",
    PriceRange.MEDIUM: "price BETWEEN 50 AND 200",
    PriceRange.HIGH: "price > 200",
}

# Whitelisted ORDER BY columns, keyed by the sortBy values the catalog UI sends.
PRODUCT_SORT_COLUMNS = {"createdAt": "created_at", "price": "price", "name": "name"}


def _like_pattern(text: str) -> str:
    """Substring ILIKE pattern with the user's own % and _ matched literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def list_products(
    pool: asyncpg.Pool,
    search: str | None = None,
    show_on_home: bool | None = None,
    category: str | None = None,
    price_range: PriceRange | None = None,
    created_by: str | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Product], int]:
    clauses: list[str] = []
    args: list = []
    if search:
        args.append(_like_pattern(search))
        n = len(args)
        clauses.append(f"(name ILIKE ${n} ESCAPE '\\' OR category ILIKE ${n} ESCAPE '\\')")
    if show_on_home is not None:
        args.append(show_on_home)
        clauses.append(f"show_on_home = ${len(args)}")
    if category:
        args.append(category)
        clauses.append(f"category = ${len(args)}")
    if price_range is not None:
        clauses.append(_PRICE_RANGE_SQL[price_range])
    if created_by:
        args.append(created_by)
        clauses.append(f"created_by = ${len(args)}")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    column = PRODUCT_SORT_COLUMNS[sort_by]
    direction = "ASC" if sort_order == "asc" else "DESC"

    async with pool.acquire() as conn:
        total = await conn.fetchval(f"SELECT COUNT(*) FROM products {where};", *args)
        rows = await conn.fetch(
            f"""
            SELECT * FROM products {where}
            ORDER BY {column} {direction}, id
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2};
            """,
            *args,
            limit,
            (page - 1) * limit,
        )
    return [_row_to_product(r) for r in rows], int(total)


async def save_product(pool: asyncpg.Pool, product: Product) -> bool:
    """Overwrite an existing product's editable fields. Returns False if it no longer exists."""
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            UPDATE products
            SET name = $2, description = $3, category = $4, price = $5, available_quantity = $6,
                min_order_quantity = $7, images = $8::jsonb, payment_options = $9::jsonb, show_on_home = $10
            WHERE id = $1;
            """,
            product.id,
            product.name,
            product.description,
            product.category,
            product.price,
            product.available_quantity,
            product.min_order_quantity,
            json.dumps(product.images),
            json.dumps([p.value for p in product.payment_options]),
            product.show_on_home,
        )
    return result.endswith(" 1")


async def delete_product(pool: asyncpg.Pool, product_id: str) -> bool:
    # Orders keep their own product snapshot, so nothing references this row.
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM products WHERE id = $1;", product_id)
    return result.endswith(" 1")


async def list_categories(pool: asyncpg.Pool) -> list[str]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT DISTINCT category FROM products
            WHERE category IS NOT NULL AND category <> ''
            ORDER BY category;
            """
        )
    return [r["category"] for r in rows]


async def _fetch_updates(conn: asyncpg.Connection, order_ids: list[str]) -> dict[str, list[TrackingUpdate]]:
    rows = await conn.fetch(
        """
        SELECT * FROM order_tracking_updates
        WHERE order_id = ANY($1::varchar[])
        ORDER BY order_id, seq ASC;
        """,
        order_ids,
    )
    updates: dict[str, list[TrackingUpdate]] = {order_id: [] for order_id in order_ids}
    for r in rows:
        updates[r["order_id"]].append(_row_to_update(r))
    return updates


async def insert_order(pool: asyncpg.Pool, order: OrderRecord, actor: Actor) -> OrderRecord:
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(
                """
                INSERT INTO orders (id, tracking_id, buyer_uid, buyer, product, quantity, order_price,
                                    payment_option, requires_online_payment, payment_status, status, created_at)
                VALUES ($1, $2, $3, $4::jsonb, $5::jsonb, $6, $7, $8, $9, $10, $11, $12);
                """,
                order.id,
                order.tracking_id,
                order.buyer.uid,
                order.buyer.model_dump_json(),
                order.product.model_dump_json(),
                order.quantity,
                order.order_price,
                order.payment_option.value,
                order.requires_online_payment,
                order.payment_status.value,
                order.status.value,
                order.created_at,
            )
            await _insert_event(conn, order.id, "place_order", None, order.status.value, actor)
    logger.info("Order placed order_id=%s tracking_id=%s buyer=%s", order.id, order.tracking_id, order.buyer.uid)
    return order


async def fetch_order(pool: asyncpg.Pool, order_id: str) -> OrderRecord | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        if row is None:
            return None
        updates = await _fetch_updates(conn, [order_id])
    return _row_to_order(row, updates[order_id])


async def list_orders(
    pool: asyncpg.Pool,
    status: str | None = None,
    buyer_uid: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[OrderRecord], int]:
    """Newest first. search matches tracking id, buyer email/name and product name."""
    clauses: list[str] = []
    args: list = []
    if status:
        args.append(status)
        clauses.append(f"status = ${len(args)}")
    if buyer_uid:
        args.append(buyer_uid)
        clauses.append(f"buyer_uid = ${len(args)}")
    if search:
        args.append(_like_pattern(search))
        n = len(args)
        clauses.append(
            f"(tracking_id ILIKE ${n} ESCAPE '\\' OR buyer->>'email' ILIKE ${n} ESCAPE '\\'"
            f" OR ((buyer->>'first_name') || ' ' || (buyer->>'last_name')) ILIKE ${n} ESCAPE '\\'"
            f" OR product->>'name' ILIKE ${n} ESCAPE '\\')"
        )
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    async with pool.acquire() as conn:
        total = await conn.fetchval(f"SELECT COUNT(*) FROM orders {where};", *args)
        rows = await conn.fetch(
            f"""
            SELECT * FROM orders {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2};
            """,
            *args,
            limit,
            (page - 1) * limit,
        )
        updates = await _fetch_updates(conn, [r["id"] for r in rows])
    return [_row_to_order(r, updates[r["id"]]) for r in rows], int(total)


async def _insert_event(
    conn: asyncpg.Connection,
    order_id: str,
    action: str,
    from_status: str | None,
    to_status: str,
    actor: Actor,
) -> None:
    await conn.execute(
        """
        INSERT INTO order_events (id, order_id, action, from_status, to_status, actor_id, actor_role)
        VALUES ($1, $2, $3, $4, $5, $6, $7);
        """,
        uuid.uuid4(),
        order_id,
        action,
        from_status,
        to_status,
        actor.id,
        actor.role.value,
    )


async def apply_order_action(
    pool: asyncpg.Pool,
    order_id: str,
    action: str,
    mutate: Callable[[OrderRecord], OrderRecord],
    actor: Actor,
) -> OrderRecord:
    """
    Apply one lifecycle action in a single transaction.
    - SELECT order FOR UPDATE so concurrent actions on the same order serialize.
    - mutate() validates against the locked state; raising rolls back and leaves the order untouched.
    - Write the new state, append new tracking updates, log the event.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1 FOR UPDATE;", order_id)
            if row is None:
                raise OrderNotFoundError(f"Order {order_id} not found", order_id=order_id, action=action)
            updates = await _fetch_updates(conn, [order_id])
            current = _row_to_order(row, updates[order_id])

            new = mutate(current)

            await conn.execute(
                """
                UPDATE orders
                SET status = $1, payment_status = $2, approved_at = $3, cancelled_at = $4,
                    paid_at = $5, updated_at = NOW()
                WHERE id = $6;
                """,
                new.status.value,
                new.payment_status.value,
                new.approved_at,
                new.cancelled_at,
                new.paid_at,
                order_id,
            )
            appended = new.tracking_updates[len(current.tracking_updates):]
            for seq, update in enumerate(appended, start=len(current.tracking_updates)):
                await conn.execute(
                    """
                    INSERT INTO order_tracking_updates (id, order_id, seq, status, location, note, updated_at, updated_by)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb);
                    """,
                    uuid.uuid4(),
                    order_id,
                    seq,
                    update.status.value,
                    update.location,
                    update.note,
                    update.updated_at,
                    update.updated_by.model_dump_json() if update.updated_by else None,
                )
            await _insert_event(conn, order_id, action, current.status.value, new.status.value, actor)

    logger.info("Applied %s order_id=%s %s -> %s", action, order_id, current.status.value, new.status.value)
    return new


async def insert_notification(pool: asyncpg.Pool, body: dict) -> bool:
    """Write one notification to the buyer inbox. Returns False if it was already delivered."""
    async with pool.acquire() as conn:
        result = await conn.execute(
            """
            INSERT INTO notifications (id, buyer_uid, order_id, tracking_id, event, message, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO NOTHING;
            """,
            uuid.UUID(body["notification_id"]),
            body["buyer_uid"],
            body["order_id"],
            body["tracking_id"],
            body["event"],
            body["message"],
            datetime.fromisoformat(body["created_at"]) if body.get("created_at") else datetime.now(timezone.utc),
        )
    return result.endswith(" 1")


async def list_notifications(pool: asyncpg.Pool, buyer_uid: str, limit: int = 50) -> list[dict]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT id, order_id, tracking_id, event, message, created_at FROM notifications
            WHERE buyer_uid = $1
            ORDER BY created_at DESC
            LIMIT $2;
            """,
            buyer_uid,
            limit,
        )
    return [
        {
            "id": str(r["id"]),
            "order_id": r["order_id"],
            "tracking_id": r["tracking_id"],
            "event": r["event"],
            "message": r["message"],
            "created_at": r["created_at"].isoformat(),
        }
        for r in rows
    ]
