from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple, TypedDict, Dict, Any

from ..model.db import Transaction, PENDING


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    provider_ref: str
    redirect_url: Optional[str]
    provider_status: Optional[str]
    promptpay: Optional[Dict[str, Any]]


@dataclass
class ProviderStatus:
    # pending | paid | failed | expired
    outcome: str = PENDING
    # whatever the provider calls it, for the ledger and the admin view
    raw: Optional[str] = None
    promptpay: Optional[Dict[str, Any]] = None


class PaymentAdapter(ABC):
    name: str = ""

    @abstractmethod
    async def create_session(
            self, txn: Transaction, *, description: str,
            success_url: Optional[str] = None,
            cancel_url: Optional[str] = None,
    ) -> CreateSessionResult: ...

    # authoritative status for a stored provider reference
    @abstractmethod
    async def fetch_status(self, provider_ref: str) -> ProviderStatus: ...

    # give up on a session; returns the provider status after the attempt
    @abstractmethod
    async def cancel(self, provider_ref: str) -> ProviderStatus: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # pending | paid | failed | expired, None for events we don't act on
    @abstractmethod
    def event_outcome(self, event: dict) -> Optional[str]:
        ...

    # (transaction_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    def event_status(self, event: dict) -> ProviderStatus:
        return ProviderStatus(
            outcome=self.event_outcome(event) or PENDING,
            raw=event.get("type"),
        )
