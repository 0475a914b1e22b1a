from __future__ import annotations
import re
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict, NotFound
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from .db import Store

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,62}$")


def is_valid_slug(slug: Optional[str]) -> bool:
    return bool(slug) and SLUG_RE.match(slug) is not None


def is_valid_timezone(tz: Optional[str]) -> bool:
    if not tz:
        return False
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def store_to_dict(store: Store) -> Dict[str, Any]:
    return {
        "id": store.id,
        "slug": store.slug,
        "name": store.name,
        "isActive": bool(store.is_active),
        "timezone": store.timezone,
    }


async def resolve_slug(gs: GatedAsyncSession, slug: str) -> Optional[Store]:
    """Public lookup: only active stores resolve."""
    async with gs.begin() as db:
        return (await db.execute(
            select(Store).where(Store.slug == slug, Store.is_active.is_(True))
        )).scalar_one_or_none()


async def get_store(gs: GatedAsyncSession, store_id: str) -> Optional[Store]:
    async with gs.begin() as db:
        return await db.get(Store, store_id)


async def list_stores(gs: GatedAsyncSession) -> List[Store]:
    async with gs.begin() as db:
        rows = await db.execute(select(Store).order_by(Store.created_at))
        return list(rows.scalars().all())


async def create_store(
    gs: GatedAsyncSession, *, slug: str, name: str,
    timezone: str = "Asia/Bangkok", is_active: bool = True,
) -> Store:
    store = Store(
        id=new_id(),
        slug=slug,
        name=name,
        timezone=timezone,
        is_active=is_active,
        created_at=now_ts(),
    )
    try:
        async with gs.begin() as db:
            db.add(store)
    except IntegrityError:
        raise Conflict(f"store slug '{slug}' already exists")
    return store


async def update_store(
    gs: GatedAsyncSession, store_id: str, changes: Dict[str, Any]
) -> Store:
    try:
        async with gs.begin() as db:
            store = await db.get(Store, store_id)
            if store is None:
                raise NotFound("store not found")
            for key in ("slug", "name", "timezone", "is_active"):
                if key in changes and changes[key] is not None:
                    setattr(store, key, changes[key])
    except IntegrityError:
        raise Conflict("store slug already exists")
    return store
