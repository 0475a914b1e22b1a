from __future__ import annotations
import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request

from .. import reconciler
from ..adapters import MockPay, PaymentAdapter
from ..adapters.mockpay import EMIT_KINDS
from ..config import Settings
from ..deps import get_adapter, get_events, get_gs, get_settings
from ..errors import ProviderError
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from ..model.events import WebhookEventStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@router.post("/api/v1/payments/webhook")
async def payments_webhook(
    request: Request,
    gs: GatedAsyncSession = Depends(get_gs),
    adapter: PaymentAdapter = Depends(get_adapter),
    events: WebhookEventStore = Depends(get_events),
):
    payload = await request.body()
    headers = dict(request.headers)
    async with timeit("webhook.handle"):
        return await reconciler.handle_webhook(
            gs, adapter, events, payload, headers
        )


# ----------------------------
# MockPay: settle a session and deliver its webhook
# ----------------------------
@router.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    payload: dict,
    request: Request,
    adapter: PaymentAdapter = Depends(get_adapter),
    settings: Settings = Depends(get_settings),
):
    if not isinstance(adapter, MockPay):
        raise HTTPException(404, detail="mock provider not enabled")
    kind = payload.get("kind") or payload.get("t")  # succeeded|failed|...
    if kind not in EMIT_KINDS:
        raise HTTPException(400, detail="invalid kind")
    try:
        body, sig = adapter.emit(psid, kind)
    except ProviderError:
        raise HTTPException(404, detail="payment session not found")

    client_http: httpx.AsyncClient = request.app.state.http
    delivered = False
    try:
        resp = await client_http.post(
            settings.mock_webhook_url,
            content=body,
            headers={
                "x-mockpay-signature": sig,
                "content-type": "application/json",
            },
        )
        delivered = resp.status_code < 300
    except httpx.HTTPError as e:
        # the poller or a status check still settles the transaction
        logger.warning("mockpay webhook delivery for %s failed: %s", psid, e)

    return {
        "ok": True,
        "kind": kind,
        "transactionId": adapter.transaction_for(psid),
        "delivered": delivered,
    }
