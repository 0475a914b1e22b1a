# meewarp/checkout.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from .adapters import PaymentAdapter
from .config import DEFAULT_CURRENCY, MIN_SONG_REQUEST_AMOUNT
from .errors import CheckoutFailed, InvalidRequest, ProviderError
from .helpers import clean_str, as_positive_int, is_valid_email
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import packages, profiles
from .model import transactions as ledger
from .model.db import Store, Transaction, FAILED, KIND_WARP, KIND_SONG_REQUEST

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("checkout", "promptpay")


@dataclass
class CheckoutRequest:
    kind: str
    code: str
    customer_name: str
    amount: Optional[int]
    payment_method: str = "checkout"
    display_seconds: Optional[int] = None
    package_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_avatar: Optional[str] = None
    social_link: Optional[str] = None
    quote: Optional[str] = None
    song: Optional[Dict[str, Any]] = None


def _payment_method(value, default: str) -> str:
    method = (clean_str(value) or default).lower()
    if method not in PAYMENT_METHODS:
        raise InvalidRequest(
            f"paymentMethod must be one of {', '.join(PAYMENT_METHODS)}"
        )
    return method


def _email(value) -> Optional[str]:
    email = clean_str(value, 254)
    if email and not is_valid_email(email):
        raise InvalidRequest("customerEmail must be a valid email address")
    return email


def parse_warp(payload: Dict[str, Any]) -> CheckoutRequest:
    code = clean_str(payload.get("code"), 64)
    name = clean_str(payload.get("customerName"), 120)
    social = clean_str(payload.get("socialLink"), 500)
    if not code or not name or not social:
        raise InvalidRequest("code, customerName, and socialLink are required")
    return CheckoutRequest(
        kind=KIND_WARP,
        code=code,
        customer_name=name,
        social_link=social,
        amount=as_positive_int(payload.get("amount")),
        display_seconds=as_positive_int(payload.get("displaySeconds")),
        package_id=clean_str(payload.get("packageId")),
        payment_method=_payment_method(payload.get("paymentMethod"),
                                       "checkout"),
        customer_email=_email(payload.get("customerEmail")),
        customer_avatar=clean_str(payload.get("customerAvatar"), 1000),
        quote=clean_str(payload.get("quote"), 280),
    )


def parse_song_request(payload: Dict[str, Any]) -> CheckoutRequest:
    title = clean_str(payload.get("songTitle"), 200)
    requester = clean_str(payload.get("requesterName"), 120)
    if not title:
        raise InvalidRequest("Song title is required")
    if not requester:
        raise InvalidRequest("Requester name is required")
    amount = as_positive_int(payload.get("amount"))
    if amount is None or amount < MIN_SONG_REQUEST_AMOUNT:
        raise InvalidRequest(
            f"Amount must be at least {MIN_SONG_REQUEST_AMOUNT} "
            f"{DEFAULT_CURRENCY}"
        )
    instagram = clean_str(payload.get("requesterInstagram"), 120)
    return CheckoutRequest(
        kind=KIND_SONG_REQUEST,
        code="song-request",
        customer_name=requester,
        amount=amount,
        payment_method=_payment_method(payload.get("paymentMethod"),
                                       "promptpay"),
        customer_email=_email(payload.get("requesterEmail")),
        social_link=instagram,
        song={
            "song_title": title,
            "artist_name": clean_str(payload.get("artistName"), 200),
            "message": clean_str(payload.get("message"), 500),
            "requester_name": requester,
            "requester_instagram": instagram,
        },
    )


def _description(store: Store, req: CheckoutRequest) -> str:
    if req.kind == KIND_SONG_REQUEST:
        return f"Song Request: {req.song['song_title']}"
    return f"Warp for {store.name} ({req.code})"


async def create_checkout(
    gs: GatedAsyncSession,
    adapter: PaymentAdapter,
    store: Store,
    req: CheckoutRequest,
    *,
    actor: str = "customer",
    timeout: float = 5.0,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Transaction:
    """
    Insert a pending transaction and open a provider session for it.

    Raises InvalidRequest before anything is written, and CheckoutFailed
    after the transaction was moved to `failed` because the provider
    couldn't open a session.
    """
    amount, seconds = req.amount, req.display_seconds
    if req.package_id:
        pkg = await packages.get_active_package(gs, store.id, req.package_id)
        if pkg is None:
            raise InvalidRequest("Invalid packageId")
        amount, seconds = pkg.price, pkg.seconds

    if req.kind == KIND_WARP and (not seconds or not amount):
        raise InvalidRequest("displaySeconds and amount are required")

    profile = None
    if req.kind == KIND_WARP:
        profile = await profiles.get_profile_by_code(gs, store.id, req.code)

    txn = await ledger.create_pending(
        gs,
        store_id=store.id,
        kind=req.kind,
        code=req.code,
        profile_id=profile.id if profile is not None else None,
        customer_name=req.customer_name,
        customer_email=req.customer_email,
        customer_avatar=req.customer_avatar,
        social_link=req.social_link,
        quote=req.quote,
        display_seconds=seconds or 0,
        package_id=req.package_id,
        amount=amount,
        currency=DEFAULT_CURRENCY,
        provider=adapter.name,
        payment_method=req.payment_method,
        song=req.song,
        actor=actor,
    )

    try:
        async with timeit("provider.create_session"):
            session = await asyncio.wait_for(
                adapter.create_session(
                    txn, description=_description(store, req),
                    success_url=success_url, cancel_url=cancel_url,
                ),
                timeout,
            )
    except (ProviderError, asyncio.TimeoutError) as e:
        reason = str(e) or "provider timed out"
        logger.warning("checkout %s: payment session failed: %s",
                       txn.id, reason)
        await ledger.transition(
            gs, txn.id, FAILED,
            actor="system",
            action="payment_link_failed",
            description=f"Payment initialization failed: {reason}",
        )
        raise CheckoutFailed(txn.id, reason) from e

    await ledger.attach_provider_session(
        gs, txn.id,
        provider_ref=session["provider_ref"],
        checkout_url=session["redirect_url"],
        provider_status=session["provider_status"],
        promptpay=session["promptpay"],
    )
    return await ledger.get_transaction(gs, txn.id)
