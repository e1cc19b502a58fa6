"""
Request dependencies: the acting user, role checks, DB pool, pagination.

The identity provider sits in front of this service and forwards the
authenticated user as X-Actor-* headers.
"""
import math
from collections.abc import Callable

import asyncpg
from fastapi import Depends, Header, HTTPException, Query

from garment_tracker.config import settings
from garment_tracker.db import get_pool
from garment_tracker.models import Actor, ActorRole


async def get_db_pool() -> asyncpg.Pool:
    return await get_pool()


async def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_actor_email: str | None = Header(default=None),
    x_actor_name: str | None = Header(default=None),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing actor identity")
    try:
        role = ActorRole(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role {x_actor_role!r}")
    return Actor(id=x_actor_id, role=role, email=x_actor_email, name=x_actor_name)


def require_roles(*roles: ActorRole) -> Callable:
    async def _check(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return actor
    return _check


require_staff = require_roles(ActorRole.MANAGER, ActorRole.ADMIN)
require_admin = require_roles(ActorRole.ADMIN)
require_buyer = require_roles(ActorRole.BUYER)


class PageParams:
    def __init__(
        self,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
        search_text: str | None = Query(default=None, alias="searchText"),
    ):
        self.page = page
        self.limit = limit
        self.search = search_text.strip() if search_text and search_text.strip() else None


def pagination(page: int, limit: int, total: int) -> dict:
    total_pages = max(1, math.ceil(total / limit))
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
        "items_per_page": limit,
    }
