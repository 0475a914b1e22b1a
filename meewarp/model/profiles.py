from __future__ import annotations
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from .db import WarpProfile


def profile_to_dict(p: WarpProfile) -> Dict[str, Any]:
    return {
        "id": p.id,
        "code": p.code,
        "name": p.name,
        "socialLink": p.social_link,
        "isActive": bool(p.is_active),
    }


async def create_profile(
    gs: GatedAsyncSession, *, store_id: str, code: str, name: str,
    social_link: str, is_active: bool = True,
) -> WarpProfile:
    profile = WarpProfile(
        id=new_id(),
        store_id=store_id,
        code=code,
        name=name,
        social_link=social_link,
        is_active=is_active,
        created_at=now_ts(),
    )
    try:
        async with gs.begin() as db:
            db.add(profile)
    except IntegrityError:
        raise Conflict("Warp code already exists")
    return profile


async def get_profile_by_code(
    gs: GatedAsyncSession, store_id: str, code: str
) -> Optional[WarpProfile]:
    async with gs.begin() as db:
        return (await db.execute(
            select(WarpProfile).where(
                WarpProfile.store_id == store_id, WarpProfile.code == code
            )
        )).scalar_one_or_none()


async def list_profiles(
    gs: GatedAsyncSession, store_id: str
) -> List[WarpProfile]:
    async with gs.begin() as db:
        rows = await db.execute(
            select(WarpProfile)
            .where(WarpProfile.store_id == store_id)
            .order_by(WarpProfile.code)
        )
        return list(rows.scalars().all())
