from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_idemp(evt: str) -> str: return f"idemp:{evt}"


class WebhookEventStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(k_idemp(evt_id), "1", nx=True, ex=self.ttl)
        return bool(ok)

    async def forget(self, evt_id: Optional[str]) -> None:
        if not evt_id:
            return
        await self.r.delete(k_idemp(evt_id))
