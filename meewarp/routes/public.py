from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import ORJSONResponse

from .. import checkout, leaderboard, reconciler
from ..adapters import PaymentAdapter
from ..config import Settings
from ..deps import get_adapter, get_gs, get_settings, public_store
from ..helpers import clean_str, to_iso
from ..infra.sql import GatedAsyncSession
from ..model import packages, profiles, songrequests
from ..model import transactions as ledger
from ..model.db import Store, Transaction

router = APIRouter(prefix="/api/v1", tags=["public"])


def store_ref(store: Store) -> dict:
    return {"id": store.id, "name": store.name, "slug": store.slug}


def checkout_response(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "code": txn.code,
        "customerName": txn.customer_name,
        "totalAmount": txn.amount,
        "currency": txn.currency,
        "displaySeconds": txn.display_seconds,
        "status": txn.status,
        "packageId": txn.package_id,
        "paymentMethod": txn.payment_method,
        "providerRef": txn.provider_ref,
        "checkoutUrl": txn.checkout_url,
        "promptPay": txn.promptpay,
    }


def display_response(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "customerName": txn.customer_name,
        "customerAvatar": txn.customer_avatar,
        "socialLink": txn.social_link,
        "quote": txn.quote,
        "displaySeconds": txn.display_seconds,
        "displayStartedAt": to_iso(txn.display_started_at),
    }


def _required_id(payload: Optional[dict], key: str = "transactionId"):
    txn_id = clean_str((payload or {}).get(key))
    if not txn_id:
        raise HTTPException(400, detail=f"{key} is required")
    return txn_id


# ----------------------------
# Profiles, packages, leaderboard
# ----------------------------
@router.get("/warp/{code}")
async def get_warp_profile(
    code: str,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    profile = await profiles.get_profile_by_code(gs, store.id, code)
    if profile is None or not profile.is_active:
        raise HTTPException(404, detail="Profile not found")
    return {**profiles.profile_to_dict(profile), "store": store_ref(store)}


@router.get("/public/packages")
async def public_packages(
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    items = await packages.list_packages(gs, store.id)
    return {"packages": [packages.package_to_dict(p) for p in items]}


@router.get("/leaderboard/top-supporters")
async def top_supporters(
    limit: int = 3,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    supporters = await leaderboard.top_supporters(gs, store.id, limit)
    return {"supporters": supporters, "store": store_ref(store)}


# ----------------------------
# Checkout & status
# ----------------------------
@router.post("/public/transactions", status_code=201)
async def create_public_transaction(
    payload: dict,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    req = checkout.parse_warp(payload)
    txn = await checkout.create_checkout(
        gs, adapter, store, req,
        actor="customer",
        timeout=settings.provider_timeout_seconds,
        success_url=(f"{settings.public_base_url}/{store.slug}"
                     "/payment/success"),
        cancel_url=f"{settings.public_base_url}/{store.slug}",
    )
    return checkout_response(txn)


@router.post("/public/transactions/check-status")
async def public_check_status(
    payload: dict,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    result = await reconciler.check_status(
        gs, adapter, _required_id(payload), store.id,
        actor="customer", timeout=settings.provider_timeout_seconds,
    )
    if not result.found:
        raise HTTPException(404, detail="Transaction not found")
    return {
        "status": result.status,
        "providerStatus": result.transaction.provider_status,
        "note": result.note,
        "promptPay": result.transaction.promptpay,
    }


@router.post("/public/check-payment-status")
async def check_payment_status(
    payload: dict,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    result = await reconciler.check_status(
        gs, adapter, _required_id(payload), store.id,
        actor="customer", timeout=settings.provider_timeout_seconds,
    )
    if not result.found:
        return ORJSONResponse(status_code=404, content=result.to_dict())
    return result.to_dict()


# ----------------------------
# Display queue (TV)
# ----------------------------
@router.post("/public/display/next")
async def display_next(
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    txn = await ledger.claim_next_display(gs, store.id)
    if txn is None:
        return Response(status_code=204)
    return display_response(txn)


@router.post("/public/display/{transaction_id}/complete")
async def display_complete(
    transaction_id: str,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    if not await ledger.complete_display(gs, store.id, transaction_id):
        raise HTTPException(404, detail="Display session not found")
    return {"success": True}


# ----------------------------
# Song requests
# ----------------------------
@router.post("/public/song-requests", status_code=201)
async def create_song_request(
    payload: dict,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    req = checkout.parse_song_request(payload)
    txn = await checkout.create_checkout(
        gs, adapter, store, req,
        actor="customer",
        timeout=settings.provider_timeout_seconds,
        success_url=(f"{settings.public_base_url}/{store.slug}"
                     "/song-request/success"),
        cancel_url=f"{settings.public_base_url}/{store.slug}/song-request",
    )
    sr, txn = await songrequests.get_by_transaction(gs, store.id, txn.id)
    return {
        **checkout_response(txn),
        "requestId": sr.id,
        "transactionId": txn.id,
        "songTitle": sr.song_title,
    }


@router.post("/public/song-requests/check-status")
async def song_request_check_status(
    payload: dict,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    found = await songrequests.get_song_request(
        gs, store.id, _required_id(payload, "requestId")
    )
    if found is None:
        raise HTTPException(404, detail="Song request not found")
    sr, txn = found
    result = await reconciler.check_status(
        gs, adapter, txn.id, store.id,
        actor="customer", timeout=settings.provider_timeout_seconds,
    )
    return {
        **result.to_dict(),
        "requestId": sr.id,
        "playbackState": sr.playback_state,
    }


@router.get("/public/song-requests-paid")
async def paid_song_requests(
    limit: int = 10,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
    settings: Settings = Depends(get_settings),
):
    rows = await songrequests.visible_song_requests(
        gs, store.id, settings.song_display_window_seconds, limit
    )
    return {
        "songRequests": [songrequests.song_to_dict(sr, t) for sr, t in rows]
    }


@router.get("/public/song-requests/{request_id}")
async def get_song_request(
    request_id: str,
    store: Store = Depends(public_store),
    gs: GatedAsyncSession = Depends(get_gs),
):
    found = await songrequests.get_song_request(gs, store.id, request_id)
    if found is None:
        raise HTTPException(404, detail="Song request not found")
    sr, txn = found
    return {
        "id": sr.id,
        "songTitle": sr.song_title,
        "artistName": sr.artist_name,
        "requesterName": sr.requester_name,
        "amount": txn.amount,
        "status": txn.status,
        "playbackState": sr.playback_state,
        "createdAt": to_iso(sr.created_at),
    }
