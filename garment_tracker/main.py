from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from garment_tracker.db import DuplicateProductError, close_pool, get_pool, init_schema
from garment_tracker.metrics import get_metrics_bytes, get_metrics_content_type
from garment_tracker.order_state import (
    InvalidCheckpointError,
    InvalidOrderStateError,
    InvalidTransitionError,
    OrderError,
    OrderNotFoundError,
    OrderPermissionError,
    OrderValidationError,
)
from garment_tracker.redis_client import close_redis, get_redis
from garment_tracker.routes import admin, notifications, orders, products

ERROR_STATUS_CODES: dict[type[OrderError], int] = {
    InvalidTransitionError: 409,
    InvalidOrderStateError: 409,
    InvalidCheckpointError: 422,
    OrderValidationError: 422,
    OrderPermissionError: 403,
    OrderNotFoundError: 404,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    await init_schema(await get_pool())
    yield
    await close_pool()
    await close_redis()


app = FastAPI(title="Garment Order Tracker", lifespan=lifespan)
app.include_router(products.router)
app.include_router(orders.router)
app.include_router(notifications.router)
app.include_router(admin.router)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    return JSONResponse(status_code=ERROR_STATUS_CODES.get(type(exc), 400), content=exc.to_dict())


@app.exception_handler(DuplicateProductError)
async def duplicate_product_handler(request: Request, exc: DuplicateProductError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": "duplicate_product", "product_id": str(exc)})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: orders placed, transitions applied/rejected, tracking updates."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
