# model/events/__init__.py
from typing import Optional, Union

import redis.asyncio as redis

from ...infra.sql import Gated
from sqlalchemy.ext.asyncio import AsyncSession

from ._sql import WebhookEventStore as SqlWebhookEventStore
from ._redis import WebhookEventStore as RedisWebhookEventStore

BACKENDS = ("sql", "redis")

WebhookEventStore = Union[SqlWebhookEventStore, RedisWebhookEventStore]


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *, db: Optional[AsyncSession] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600) -> WebhookEventStore:
    if backend == "sql":
        if db is None:
            raise RuntimeError(
                "WebhookEventStore(sql) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "WebhookEventStore(sql) requires gated=Gated"
            )
        return SqlWebhookEventStore(db=db, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return RedisWebhookEventStore(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown events backend: {backend!r}")


__all__ = [
    "WebhookEventStore", "SqlWebhookEventStore", "RedisWebhookEventStore",
    "new_store", "BACKENDS",
]
