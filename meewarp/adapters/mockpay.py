import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Optional, Tuple, Dict

from fastapi import HTTPException

from ..errors import ProviderError
from ..model.db import Transaction, PAID, FAILED, EXPIRED, PENDING
from .base import PaymentAdapter, CreateSessionResult, ProviderStatus

EMIT_KINDS = ("succeeded", "failed", "canceled", "expired")

_OUTCOMES = {
    "succeeded": PAID,
    "failed": FAILED,
    "canceled": EXPIRED,
    "expired": EXPIRED,
}


def sign(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for a payment provider. Sessions live in memory;
    `/mockpay/{ref}/emit` flips their state and posts a signed webhook.
    """
    name = "mock"

    def __init__(self, secret: str) -> None:
        self.secret = secret
        # psid -> open | succeeded | failed | canceled | expired
        self._sessions: Dict[str, str] = {}
        self._txn_by_psid: Dict[str, str] = {}

    async def create_session(
            self, txn: Transaction, *, description: str,
            success_url: Optional[str] = None,
            cancel_url: Optional[str] = None,
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        self._sessions[psid] = "open"
        self._txn_by_psid[psid] = txn.id
        return {
            "provider_ref": psid,
            "redirect_url": f"/mockpay/{psid}",
            "provider_status": "open",
            "promptpay": None,
        }

    async def fetch_status(self, provider_ref: str) -> ProviderStatus:
        state = self._sessions.get(provider_ref)
        if state is None:
            raise ProviderError(f"unknown mock session {provider_ref}")
        return ProviderStatus(outcome=_OUTCOMES.get(state, PENDING), raw=state)

    async def cancel(self, provider_ref: str) -> ProviderStatus:
        state = self._sessions.get(provider_ref)
        if state is None:
            raise ProviderError(f"unknown mock session {provider_ref}")
        if state == "open":
            self._sessions[provider_ref] = "expired"
        return await self.fetch_status(provider_ref)

    def transaction_for(self, psid: str) -> Optional[str]:
        return self._txn_by_psid.get(psid)

    def emit(self, psid: str, kind: str) -> Tuple[bytes, str]:
        """Settle a session and build the signed webhook body for it."""
        if kind not in EMIT_KINDS:
            raise ValueError(f"invalid kind: {kind}")
        if psid not in self._sessions:
            raise ProviderError(f"unknown mock session {psid}")
        self._sessions[psid] = kind
        event = {
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "transaction_id": self._txn_by_psid[psid],
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        }
        payload = json.dumps(event).encode()
        return payload, sign(self.secret, payload)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = sign(self.secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_outcome(self, event: dict) -> Optional[str]:
        return _OUTCOMES.get(event.get("type", "").split(".")[-1])

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("transaction_id", ""),
                event.get("idempotency_key")
        )
