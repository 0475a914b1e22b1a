from __future__ import annotations
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .. import checkout, leaderboard, reconciler
from ..adapters import PaymentAdapter
from ..auth import (
    AdminPrincipal, LoginRateLimiter, ROLE_MANAGER, ROLE_SUPERADMIN,
    client_key, issue_token, require_role,
)
from ..config import Settings
from ..deps import admin_store, get_adapter, get_gs, get_settings
from ..errors import InvalidRequest
from ..helpers import clean_str, ct_equal
from ..infra import timings
from ..infra.sql import GatedAsyncSession
from ..model import packages, profiles, songrequests, stores
from ..model import transactions as ledger
from ..model.db import Store, TERMINAL_STATUSES, PENDING
from .public import checkout_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["admin"])
admin_access = require_role(ROLE_SUPERADMIN, ROLE_MANAGER)
superadmin_access = require_role(ROLE_SUPERADMIN)

STATUSES = (PENDING, *sorted(TERMINAL_STATUSES))


def _status_filter(status: Optional[str]) -> Optional[str]:
    if status and status not in STATUSES:
        raise HTTPException(400, detail=f"invalid status: {status}")
    return status


# ----------------------------
# Login
# ----------------------------
@router.post("/admin/login")
async def admin_login(
    payload: dict,
    request: Request,
    settings: Settings = Depends(get_settings),
):
    limiter: LoginRateLimiter = request.app.state.login_limiter
    key = client_key(request)
    if not limiter.hit(key):
        raise HTTPException(
            429, detail="Too many login attempts, please try again later"
        )

    email = (clean_str(payload.get("email")) or "").lower()
    password = payload.get("password") or ""
    ok_user = ct_equal(email, settings.admin_email.lower())
    ok_pass = ct_equal(str(password), settings.admin_password)
    if not (ok_user and ok_pass):
        logger.info("failed admin login from %s", key)
        raise HTTPException(
            401, detail={"code": "unauthorized",
                         "message": "Invalid credentials"},
        )

    limiter.reset(key)
    token = issue_token(settings, email=email, role=ROLE_SUPERADMIN)
    return {
        "token": token,
        "expiresIn": settings.jwt_expires_seconds,
        "admin": {"email": email, "role": ROLE_SUPERADMIN, "storeId": None},
    }


# ----------------------------
# Warp profiles
# ----------------------------
@router.post("/admin/warp", status_code=201)
async def create_warp_profile(
    payload: dict,
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    code = clean_str(payload.get("code"), 64)
    name = clean_str(payload.get("name"), 120)
    social = clean_str(payload.get("socialLink"), 500)
    if not code or not name or not social:
        raise InvalidRequest("code, name, and socialLink are required")
    profile = await profiles.create_profile(
        gs, store_id=store.id, code=code, name=name, social_link=social,
        is_active=bool(payload.get("isActive", True)),
    )
    return profiles.profile_to_dict(profile)


@router.get("/admin/warp")
async def list_warp_profiles(
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    items = await profiles.list_profiles(gs, store.id)
    return {"profiles": [profiles.profile_to_dict(p) for p in items]}


# ----------------------------
# Packages
# ----------------------------
def _package_fields(payload: dict, partial: bool) -> dict:
    fields = {
        "name": clean_str(payload.get("name"), 120),
        "seconds": None,
        "price": None,
        "is_active": (bool(payload["isActive"])
                      if "isActive" in payload else None),
    }
    for key in ("seconds", "price"):
        if payload.get(key) is not None:
            try:
                fields[key] = int(payload[key])
            except (TypeError, ValueError, OverflowError):
                raise InvalidRequest(f"{key} must be a whole number")
    if not partial and not fields["name"]:
        raise InvalidRequest("name is required")
    if partial:
        # only check what was sent
        problem = packages.validate_package(
            packages.MIN_PACKAGE_SECONDS if fields["seconds"] is None
            else fields["seconds"],
            0 if fields["price"] is None else fields["price"],
        )
    else:
        problem = packages.validate_package(fields["seconds"], fields["price"])
    if problem:
        raise InvalidRequest(problem)
    return fields


@router.get("/admin/packages")
async def list_admin_packages(
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    items = await packages.list_packages(gs, store.id, include_inactive=True)
    return {"packages": [packages.package_to_dict(p) for p in items]}


@router.post("/admin/packages", status_code=201)
async def create_admin_package(
    payload: dict,
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    fields = _package_fields(payload, partial=False)
    pkg = await packages.create_package(
        gs, store_id=store.id, name=fields["name"],
        seconds=fields["seconds"], price=fields["price"],
        is_active=True if fields["is_active"] is None else fields["is_active"],
    )
    return packages.package_to_dict(pkg)


@router.put("/admin/packages/{package_id}")
async def update_admin_package(
    package_id: str,
    payload: dict,
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    pkg = await packages.update_package(
        gs, store.id, package_id, _package_fields(payload, partial=True)
    )
    return packages.package_to_dict(pkg)


@router.delete("/admin/packages/{package_id}")
async def delete_admin_package(
    package_id: str,
    _: AdminPrincipal = Depends(superadmin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    await packages.delete_package(gs, store.id, package_id)
    return {"success": True}


# ----------------------------
# Transactions
# ----------------------------
@router.post("/transactions", status_code=201)
async def create_admin_transaction(
    payload: dict,
    principal: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    txn = await checkout.create_checkout(
        gs, adapter, store, checkout.parse_warp(payload),
        actor=principal.email,
        timeout=settings.provider_timeout_seconds,
        success_url=settings.stripe_success_url or None,
        cancel_url=settings.stripe_cancel_url or None,
    )
    return checkout_response(txn)


@router.get("/transactions")
async def list_admin_transactions(
    status: Optional[str] = None,
    limit: int = 100,
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    items = await ledger.list_transactions(
        gs, store.id, _status_filter(status), limit
    )
    return {"transactions": [ledger.txn_to_dict(t) for t in items]}


@router.get("/transactions/activity-log")
async def activity_log(
    limit: int = 20,
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    return {"entries": await leaderboard.activity_log(gs, store.id, limit)}


@router.post("/transactions/{transaction_id}/check-status")
async def admin_check_status(
    transaction_id: str,
    principal: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    result = await reconciler.check_status(
        gs, adapter, transaction_id, store.id,
        actor=principal.email, timeout=settings.provider_timeout_seconds,
    )
    if not result.found:
        raise HTTPException(404, detail="Transaction not found")
    return {
        "status": result.status,
        "providerStatus": result.transaction.provider_status,
        "note": result.note,
        "isAlreadyPaid": result.is_already_paid,
        "promptPay": result.transaction.promptpay,
    }


@router.get("/admin/dashboard/overview")
async def dashboard_overview(
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    overview = await leaderboard.revenue_overview(gs, store.id, store.timezone)
    overview["topSupporters"] = await leaderboard.top_supporters(
        gs, store.id, 5
    )
    return overview


@router.get("/admin/statistics")
async def statistics(
    range_: Optional[str] = Query(None, alias="range"),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    return await leaderboard.statistics(
        gs, store.id, store.timezone,
        range_=range_, date_from=date_from, date_to=date_to,
    )


@router.get("/admin/customers")
async def customers(
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    return await leaderboard.customer_directory(
        gs, store.id, page=page, limit=limit, search=search
    )


@router.get("/admin/orders")
async def orders(
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    return await leaderboard.list_orders(
        gs, store.id, store.timezone,
        page=page, limit=limit, status=status, search=search,
        date_from=date_from, date_to=date_to,
    )


# ----------------------------
# Song requests
# ----------------------------
@router.get("/admin/song-requests")
async def list_admin_song_requests(
    status: Optional[str] = None,
    limit: int = 100,
    _: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    rows = await songrequests.list_song_requests(
        gs, store.id, _status_filter(status), limit
    )
    return {
        "songRequests": [songrequests.song_to_dict(sr, t) for sr, t in rows]
    }


@router.patch("/admin/song-requests/{request_id}")
async def update_song_request(
    request_id: str,
    payload: dict,
    principal: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    state = clean_str(payload.get("playbackState"))
    try:
        sr, txn = await songrequests.set_playback_state(
            gs, store.id, request_id, state or "", principal.email
        )
    except ValueError as e:
        raise InvalidRequest(str(e))
    return songrequests.song_to_dict(sr, txn)


@router.delete("/admin/song-requests/{request_id}")
async def delete_song_request(
    request_id: str,
    principal: AdminPrincipal = Depends(admin_access),
    store: Store = Depends(admin_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    await songrequests.delete_song_request(
        gs, store.id, request_id, principal.email
    )
    return {"message": "Song request deleted"}


# ----------------------------
# Stores (superadmin)
# ----------------------------
def _store_fields(payload: dict, partial: bool) -> dict:
    fields = {
        "slug": clean_str(payload.get("slug"), 63),
        "name": clean_str(payload.get("name"), 120),
        "timezone": clean_str(payload.get("timezone"), 64),
        "is_active": (bool(payload["isActive"])
                      if "isActive" in payload else None),
    }
    if fields["slug"] is not None:
        fields["slug"] = fields["slug"].lower()
        if not stores.is_valid_slug(fields["slug"]):
            raise InvalidRequest(
                "slug may contain lowercase letters, digits and dashes"
            )
    if fields["timezone"] is not None and not stores.is_valid_timezone(
            fields["timezone"]):
        raise InvalidRequest(f"unknown timezone: {fields['timezone']}")
    if not partial and (not fields["slug"] or not fields["name"]):
        raise InvalidRequest("slug and name are required")
    return fields


@router.get("/admin/stores")
async def list_all_stores(
    _: AdminPrincipal = Depends(superadmin_access),
    gs: GatedAsyncSession = Depends(get_gs),
):
    return {"stores": [stores.store_to_dict(s)
                       for s in await stores.list_stores(gs)]}


@router.post("/admin/stores", status_code=201)
async def create_new_store(
    payload: dict,
    _: AdminPrincipal = Depends(superadmin_access),
    gs: GatedAsyncSession = Depends(get_gs),
):
    fields = _store_fields(payload, partial=False)
    store = await stores.create_store(
        gs, slug=fields["slug"], name=fields["name"],
        timezone=fields["timezone"] or "Asia/Bangkok",
        is_active=True if fields["is_active"] is None else fields["is_active"],
    )
    return stores.store_to_dict(store)


@router.put("/admin/stores/{store_id}")
async def update_existing_store(
    store_id: str,
    payload: dict,
    _: AdminPrincipal = Depends(superadmin_access),
    gs: GatedAsyncSession = Depends(get_gs),
):
    store = await stores.update_store(
        gs, store_id, _store_fields(payload, partial=True)
    )
    return stores.store_to_dict(store)


@router.post("/admin/stores/{store_id}/token")
async def issue_manager_token(
    store_id: str,
    payload: dict,
    _: AdminPrincipal = Depends(superadmin_access),
    gs: GatedAsyncSession = Depends(get_gs),
    settings: Settings = Depends(get_settings),
):
    store = await stores.get_store(gs, store_id)
    if store is None:
        raise HTTPException(404, detail="Store not found")
    email = clean_str(payload.get("email"), 254)
    if not email:
        raise InvalidRequest("email is required")
    token = issue_token(settings, email=email, role=ROLE_MANAGER,
                        store_id=store.id)
    return {"token": token, "expiresIn": settings.jwt_expires_seconds,
            "admin": {"email": email, "role": ROLE_MANAGER,
                      "storeId": store.id}}


# ----------------------------
# Timings
# ----------------------------
@router.get("/admin/timings")
async def admin_timings(_: AdminPrincipal = Depends(admin_access)):
    return {"timings": timings.aggregates()}
