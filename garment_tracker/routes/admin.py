from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from garment_tracker.models import Actor
from garment_tracker.queue import replay_dlq_to_main
from garment_tracker.routes.deps import require_admin

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(
    limit: int = Query(default=100, ge=1, le=1000),
    actor: Actor = Depends(require_admin),
) -> JSONResponse:
    """
    Replay notifications from the DLQ to the main queue.
    Each DLQ message is re-queued with its attempt count reset.
    Returns number of messages replayed.
    """
    replayed = await replay_dlq_to_main(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
