from __future__ import annotations
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict, NotFound
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from .db import WarpPackage

MIN_PACKAGE_SECONDS = 5


def package_to_dict(p: WarpPackage) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "seconds": p.seconds,
        "price": p.price,
        "isActive": bool(p.is_active),
    }


def validate_package(seconds, price) -> Optional[str]:
    if seconds is None or int(seconds) < MIN_PACKAGE_SECONDS:
        return f"seconds must be at least {MIN_PACKAGE_SECONDS}"
    if price is None or int(price) < 0:
        return "price must be zero or more"
    return None


async def list_packages(
    gs: GatedAsyncSession, store_id: str, include_inactive: bool = False
) -> List[WarpPackage]:
    stmt = select(WarpPackage).where(WarpPackage.store_id == store_id)
    if not include_inactive:
        stmt = stmt.where(WarpPackage.is_active.is_(True))
    async with gs.begin() as db:
        rows = await db.execute(stmt.order_by(WarpPackage.seconds))
        return list(rows.scalars().all())


async def get_active_package(
    gs: GatedAsyncSession, store_id: str, package_id: str
) -> Optional[WarpPackage]:
    async with gs.begin() as db:
        return (await db.execute(
            select(WarpPackage).where(
                WarpPackage.id == package_id,
                WarpPackage.store_id == store_id,
                WarpPackage.is_active.is_(True),
            )
        )).scalar_one_or_none()


async def create_package(
    gs: GatedAsyncSession, *, store_id: str, name: str, seconds: int,
    price: int, is_active: bool = True,
) -> WarpPackage:
    pkg = WarpPackage(
        id=new_id(),
        store_id=store_id,
        name=name,
        seconds=int(seconds),
        price=int(price),
        is_active=is_active,
        created_at=now_ts(),
    )
    try:
        async with gs.begin() as db:
            db.add(pkg)
    except IntegrityError:
        raise Conflict("package name or seconds already exists")
    return pkg


async def update_package(
    gs: GatedAsyncSession, store_id: str, package_id: str,
    changes: Dict[str, Any],
) -> WarpPackage:
    try:
        async with gs.begin() as db:
            pkg = (await db.execute(
                select(WarpPackage).where(
                    WarpPackage.id == package_id,
                    WarpPackage.store_id == store_id,
                )
            )).scalar_one_or_none()
            if pkg is None:
                raise NotFound("package not found")
            for key in ("name", "seconds", "price", "is_active"):
                if key in changes and changes[key] is not None:
                    setattr(pkg, key, changes[key])
    except IntegrityError:
        raise Conflict("package name or seconds already exists")
    return pkg


async def delete_package(
    gs: GatedAsyncSession, store_id: str, package_id: str
) -> None:
    async with gs.begin() as db:
        pkg = (await db.execute(
            select(WarpPackage).where(
                WarpPackage.id == package_id,
                WarpPackage.store_id == store_id,
            )
        )).scalar_one_or_none()
        if pkg is None:
            raise NotFound("package not found")
        await db.delete(pkg)
