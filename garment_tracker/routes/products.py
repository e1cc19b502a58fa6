import uuid
from typing import Literal

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from garment_tracker import db
from garment_tracker.config import settings
from garment_tracker.models import Actor, ActorRole, PaymentOption, PriceRange, Product
from garment_tracker.routes.deps import PageParams, get_db_pool, pagination, require_admin, require_staff

router = APIRouter(prefix="/products", tags=["products"])


class CreateProductBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    category: str | None = None
    price: float = Field(..., ge=0)
    available_quantity: int = Field(..., ge=0)
    min_order_quantity: int = Field(default=1, ge=1)
    images: list[str] = Field(default_factory=list)
    payment_options: list[PaymentOption] = Field(default_factory=lambda: [PaymentOption.COD], min_length=1)
    show_on_home: bool = False


class UpdateProductBody(BaseModel):
    """Partial edit; fields left out keep their current value."""
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    category: str | None = None
    price: float | None = Field(default=None, ge=0)
    available_quantity: int | None = Field(default=None, ge=0)
    min_order_quantity: int | None = Field(default=None, ge=1)
    images: list[str] | None = None
    payment_options: list[PaymentOption] | None = Field(default=None, min_length=1)


class ShowOnHomeBody(BaseModel):
    show_on_home: bool = Field(..., alias="showOnHome")


class CatalogFilters:
    def __init__(
        self,
        category: str | None = Query(default=None),
        price: Literal["all", "low", "medium", "high"] | None = Query(default=None),
        sort_by: Literal["createdAt", "price", "name"] = Query(default="createdAt", alias="sortBy"),
        sort_order: Literal["asc", "desc"] = Query(default="desc", alias="sortOrder"),
    ):
        # the catalog UI sends "all" for an unset filter
        self.category = category if category and category != "all" else None
        self.price_range = PriceRange(price) if price and price != "all" else None
        self.sort_by = sort_by
        self.sort_order = sort_order


def _check_quantities(product: Product) -> None:
    if product.min_order_quantity > product.available_quantity:
        raise HTTPException(
            status_code=422,
            detail="Minimum order quantity cannot exceed available quantity",
        )


async def _load_owned_product(pool: asyncpg.Pool, product_id: str, actor: Actor) -> Product:
    """Managers may only change products they created; admins may change any."""
    product = await db.fetch_product(pool, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="product_not_found")
    if actor.role is not ActorRole.ADMIN and product.created_by != actor.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return product


async def _catalog_page(
    pool: asyncpg.Pool,
    page: PageParams,
    filters: CatalogFilters,
    show_on_home: bool | None = None,
    created_by: str | None = None,
) -> dict:
    products, total = await db.list_products(
        pool,
        search=page.search,
        show_on_home=show_on_home,
        category=filters.category,
        price_range=filters.price_range,
        created_by=created_by,
        sort_by=filters.sort_by,
        sort_order=filters.sort_order,
        page=page.page,
        limit=page.limit,
    )
    return {
        "products": [p.model_dump(mode="json") for p in products],
        "pagination": pagination(page.page, page.limit, total),
    }


@router.post("")
async def create_product(
    body: CreateProductBody,
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> JSONResponse:
    product = Product(id=uuid.uuid4().hex, created_by=actor.id, **body.model_dump())
    _check_quantities(product)
    await db.create_product(pool, product)
    return JSONResponse(status_code=201, content=product.model_dump(mode="json"))


@router.get("")
async def products_list(
    show_on_home: bool | None = Query(default=None, alias="showOnHome"),
    page: PageParams = Depends(),
    filters: CatalogFilters = Depends(),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    return await _catalog_page(pool, page, filters, show_on_home=show_on_home)


@router.get("/categories")
async def product_categories(pool: asyncpg.Pool = Depends(get_db_pool)) -> list[str]:
    return await db.list_categories(pool)


@router.get("/home")
async def home_products(pool: asyncpg.Pool = Depends(get_db_pool)) -> list[dict]:
    products, _ = await db.list_products(pool, show_on_home=True, limit=settings.home_product_limit)
    return [p.model_dump(mode="json") for p in products]


@router.get("/my/products")
async def my_products(
    actor: Actor = Depends(require_staff),
    page: PageParams = Depends(),
    filters: CatalogFilters = Depends(),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    return await _catalog_page(pool, page, filters, created_by=actor.id)


@router.get("/{product_id}")
async def product_detail(product_id: str, pool: asyncpg.Pool = Depends(get_db_pool)) -> dict:
    product = await db.fetch_product(pool, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="product_not_found")
    return product.model_dump(mode="json")


@router.patch("/{product_id}")
async def update_product(
    product_id: str,
    body: UpdateProductBody,
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    product = await _load_owned_product(pool, product_id, actor)
    try:
        updated = Product(**{**product.model_dump(), **body.model_dump(exclude_unset=True)})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    _check_quantities(updated)
    if not await db.save_product(pool, updated):
        raise HTTPException(status_code=404, detail="product_not_found")
    return updated.model_dump(mode="json")


@router.patch("/{product_id}/show-on-home")
async def set_show_on_home(
    product_id: str,
    body: ShowOnHomeBody,
    actor: Actor = Depends(require_admin),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    product = await _load_owned_product(pool, product_id, actor)
    updated = product.model_copy(update={"show_on_home": body.show_on_home})
    if not await db.save_product(pool, updated):
        raise HTTPException(status_code=404, detail="product_not_found")
    return updated.model_dump(mode="json")


@router.delete("/{product_id}")
async def delete_product(
    product_id: str,
    actor: Actor = Depends(require_staff),
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> dict:
    await _load_owned_product(pool, product_id, actor)
    if not await db.delete_product(pool, product_id):
        raise HTTPException(status_code=404, detail="product_not_found")
    return {"status": "deleted", "id": product_id}
