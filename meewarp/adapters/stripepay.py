from __future__ import annotations
import asyncio
import json
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any

import stripe
from fastapi import HTTPException

from ..errors import ProviderError, ProviderUnavailable, ProviderNotConfigured
from ..model.db import Transaction, PAID, FAILED, EXPIRED, PENDING
from .base import PaymentAdapter, CreateSessionResult, ProviderStatus

PAID_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
}
FAILED_EVENTS = {
    "payment_intent.payment_failed",
    "checkout.session.async_payment_failed",
}
EXPIRED_EVENTS = {
    "checkout.session.expired",
    "payment_intent.canceled",
}

# Stripe caps metadata values at 500 chars
METADATA_MAX_LEN = 500


def _field(obj, name: str):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def to_stripe_amount(amount) -> int:
    value = float(amount)
    if value <= 0:
        raise ValueError("Amount must be a positive number")
    return int(round(value * 100))


def to_stripe_metadata(metadata: Dict[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, separators=(",", ":"))
        value = str(value)
        if not value or len(value) > METADATA_MAX_LEN:
            continue
        out[key] = value
    return out


def session_outcome(session) -> str:
    if _field(session, "payment_status") in ("paid", "no_payment_required"):
        return PAID
    if _field(session, "status") == "expired":
        return EXPIRED
    return PENDING


def intent_outcome(intent) -> str:
    status = _field(intent, "status")
    if status == "succeeded":
        return PAID
    if status == "canceled":
        return EXPIRED
    # requires_payment_method after a declined attempt: customer may retry
    return PENDING


def extract_promptpay(
    intent, fallback: Optional[Dict[str, Any]] = None
) -> Optional[Dict[str, Any]]:
    details: Dict[str, Any] = dict(fallback or {})
    if intent is None:
        return details or None

    if _field(intent, "id"):
        details["paymentIntentId"] = _field(intent, "id")
    if isinstance(_field(intent, "amount"), int):
        details["amount"] = _field(intent, "amount") / 100
    if _field(intent, "currency"):
        details["currency"] = _field(intent, "currency").upper()
    if _field(intent, "status"):
        details["status"] = _field(intent, "status")

    qr = _field(_field(intent, "next_action"), "promptpay_display_qr_code")
    if qr is not None:
        if _field(qr, "image_url_png"):
            details["qrImageUrl"] = _field(qr, "image_url_png")
        if _field(qr, "image_url_svg"):
            details["qrImageUrlSvg"] = _field(qr, "image_url_svg")
        expires_at = _field(qr, "expires_at")
        if isinstance(expires_at, (int, float)):
            details["expiresAt"] = datetime.fromtimestamp(
                expires_at, tz=timezone.utc
            ).isoformat()
        refs = _field(qr, "references") or {}
        details["referenceNumber"] = (
            _field(refs, "number")
            or _field(refs, "transaction")
            or _field(refs, "reference_number")
            or details.get("referenceNumber")
        )
    return details if any(v is not None for v in details.values()) else None


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str,
                 success_url: str = "", cancel_url: str = "") -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url

    async def _call(self, fn, *args, **kw):
        if not self.secret_key:
            raise ProviderNotConfigured("Stripe secret key is not configured")
        try:
            # stripe-python is blocking; keep it off the event loop
            return await asyncio.to_thread(
                fn, *args, api_key=self.secret_key, **kw
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise ProviderUnavailable(f"Stripe unreachable: {e}") from e
        except stripe.APIError as e:
            raise ProviderUnavailable(f"Stripe error: {e}") from e
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe rejected request: {e}") from e

    async def create_session(
            self, txn: Transaction, *, description: str,
            success_url: Optional[str] = None,
            cancel_url: Optional[str] = None,
    ) -> CreateSessionResult:
        metadata = to_stripe_metadata({
            "transactionId": txn.id,
            "storeId": txn.store_id,
            "code": txn.code,
            "type": txn.kind,
        })
        amount = to_stripe_amount(txn.amount)
        currency = txn.currency.lower()

        if txn.payment_method == "promptpay":
            billing: Dict[str, str] = {}
            if txn.customer_email:
                billing["email"] = txn.customer_email
            if txn.customer_name:
                billing["name"] = txn.customer_name
            method_data: Dict[str, Any] = {"type": "promptpay"}
            if billing:
                method_data["billing_details"] = billing
            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency,
                description=description,
                metadata=metadata,
                payment_method_types=["promptpay"],
                payment_method_data=method_data,
                receipt_email=txn.customer_email or None,
                confirm=True,
            )
            return {
                "provider_ref": _field(intent, "id"),
                "redirect_url": None,
                "provider_status": _field(intent, "status"),
                "promptpay": extract_promptpay(intent),
            }

        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": currency,
                    "unit_amount": amount,
                    "product_data": {"name": description},
                },
            }],
            metadata=metadata,
            customer_email=txn.customer_email or None,
            success_url=success_url or self.success_url or None,
            cancel_url=cancel_url or self.cancel_url or None,
        )
        return {
            "provider_ref": _field(session, "id"),
            "redirect_url": _field(session, "url"),
            "provider_status": _field(session, "payment_status"),
            "promptpay": None,
        }

    async def fetch_status(self, provider_ref: str) -> ProviderStatus:
        if provider_ref.startswith("cs_"):
            session = await self._call(
                stripe.checkout.Session.retrieve, provider_ref
            )
            return ProviderStatus(
                outcome=session_outcome(session),
                raw=_field(session, "payment_status")
                or _field(session, "status"),
            )
        intent = await self._call(stripe.PaymentIntent.retrieve, provider_ref)
        return ProviderStatus(
            outcome=intent_outcome(intent),
            raw=_field(intent, "status"),
            promptpay=extract_promptpay(intent),
        )

    async def cancel(self, provider_ref: str) -> ProviderStatus:
        if provider_ref.startswith("cs_"):
            session = await self._call(
                stripe.checkout.Session.expire, provider_ref
            )
            return ProviderStatus(
                outcome=session_outcome(session),
                raw=_field(session, "status"),
            )
        intent = await self._call(stripe.PaymentIntent.cancel, provider_ref)
        return ProviderStatus(
            outcome=intent_outcome(intent),
            raw=_field(intent, "status"),
            promptpay=extract_promptpay(intent),
        )

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature")
        if not sig:
            raise HTTPException(status_code=400,
                                detail="Missing stripe-signature header")
        if not self.webhook_secret:
            raise HTTPException(status_code=400,
                                detail="Stripe webhook secret not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), sig, self.webhook_secret
            )
        except stripe.SignatureVerificationError:
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def _object(self, event: dict) -> dict:
        return (event.get("data") or {}).get("object") or {}

    def event_outcome(self, event: dict) -> Optional[str]:
        kind = event.get("type", "")
        obj = self._object(event)
        if kind in PAID_EVENTS:
            if obj.get("object") == "checkout.session":
                # completed with an async method (e.g. promptpay) is not
                # paid until async_payment_succeeded
                return PAID if session_outcome(obj) == PAID else None
            return PAID
        if kind in FAILED_EVENTS:
            return FAILED
        if kind in EXPIRED_EVENTS:
            return EXPIRED
        return None

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        metadata = self._object(event).get("metadata") or {}
        return metadata.get("transactionId", ""), event.get("id")

    def event_status(self, event: dict) -> ProviderStatus:
        obj = self._object(event)
        promptpay = None
        if obj.get("object") == "payment_intent":
            promptpay = extract_promptpay(obj)
        return ProviderStatus(
            outcome=self.event_outcome(event) or PENDING,
            raw=obj.get("payment_status") or obj.get("status")
            or event.get("type"),
            promptpay=promptpay,
        )
