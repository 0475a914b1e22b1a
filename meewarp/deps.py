# meewarp/deps.py
from __future__ import annotations
from typing import AsyncIterator

from fastapi import Depends, HTTPException, Request

from .adapters import PaymentAdapter
from .auth import AdminPrincipal, get_settings, require_admin, store_scope
from .infra.sql import GatedAsyncSession
from .model import stores
from .model.db import Store
from .model.events import WebhookEventStore, new_store


async def get_gs(request: Request) -> AsyncIterator[GatedAsyncSession]:
    state = request.app.state
    async with state.SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=state.gated)


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


async def get_events(request: Request) -> AsyncIterator[WebhookEventStore]:
    state = request.app.state
    if state.settings.events_backend == "sql":
        async with state.SessionAsync() as session:
            yield new_store("sql", db=session, gated=state.gated)
    else:
        yield new_store("redis", r=state.redis)


def _store_slug(request: Request):
    return (
        request.path_params.get("storeSlug")
        or request.query_params.get("store")
        or request.headers.get("x-store-slug")
    )


async def public_store(
    request: Request, gs: GatedAsyncSession = Depends(get_gs)
) -> Store:
    slug = _store_slug(request)
    if not slug:
        raise HTTPException(400, detail="store parameter is required")
    store = await stores.resolve_slug(gs, slug)
    if store is None:
        raise HTTPException(404, detail="Store not found")
    return store


async def admin_store(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    gs: GatedAsyncSession = Depends(get_gs),
) -> Store:
    store = await stores.get_store(gs, store_scope(request, principal))
    if store is None:
        raise HTTPException(404, detail="Store not found")
    return store
