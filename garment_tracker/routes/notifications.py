import asyncpg
from fastapi import APIRouter, Depends, Query

from garment_tracker import db
from garment_tracker.models import Actor
from garment_tracker.routes.deps import get_db_pool, require_buyer

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/my")
async def my_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(require_buyer),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    """Buyer inbox, newest first. Filled by the notification worker."""
    return {"notifications": await db.list_notifications(pool, actor.id, limit=limit)}
