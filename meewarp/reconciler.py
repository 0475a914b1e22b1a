# meewarp/reconciler.py
"""
Payment-status reconciliation.

Three paths observe provider status: the customer polling check-status, the
provider's webhook, and the background poller. All of them end in
`apply_observation`, which only ever moves a transaction through the guarded
`pending -> terminal` update in the ledger. Whoever loses that race reads the
stored terminal state back and reports it; no side effect is applied twice.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from .adapters import PaymentAdapter, ProviderStatus
from .errors import NotFound, ProviderUnavailable
from .helpers import to_iso
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import transactions as ledger
from .model.db import Transaction, PENDING, PAID, EXPIRED, TERMINAL_STATUSES
from .model.events import WebhookEventStore

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 5.0


@dataclass
class CheckResult:
    found: bool
    status: Optional[str]
    is_already_paid: bool
    note: str
    transaction: Optional[Transaction] = None
    # True only for the call that moved the transaction out of pending
    changed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.found,
            "message": self.note,
            "status": self.status,
            "isAlreadyPaid": self.is_already_paid,
        }
        t = self.transaction
        if t is not None:
            out["transaction"] = {
                "id": t.id,
                "status": t.status,
                "amount": t.amount,
                "currency": t.currency,
                "paidAt": to_iso(t.paid_at),
                "customerName": t.customer_name,
                "socialLink": t.social_link,
                "quote": t.quote,
            }
            out["providerStatus"] = t.provider_status
            out["promptPay"] = t.promptpay
        return out


NOT_FOUND = CheckResult(
    found=False, status=None, is_already_paid=False,
    note="Transaction not found",
)


def _settled(txn: Transaction, note: str, changed: bool = False) -> CheckResult:
    return CheckResult(
        found=True,
        status=txn.status,
        is_already_paid=txn.status == PAID and not changed,
        note=note,
        transaction=txn,
        changed=changed,
    )


_NOTES = {
    PAID: "Payment completed",
    "failed": "Payment failed",
    "expired": "Payment expired or canceled",
}


async def fetch_provider_status(
    adapter: PaymentAdapter, provider_ref: str, timeout: float
) -> ProviderStatus:
    try:
        async with timeit("provider.fetch_status"):
            return await asyncio.wait_for(
                adapter.fetch_status(provider_ref), timeout
            )
    except asyncio.TimeoutError as e:
        raise ProviderUnavailable(
            f"{adapter.name} did not answer within {timeout:.1f}s"
        ) from e


async def apply_observation(
    gs: GatedAsyncSession,
    txn: Transaction,
    observed: ProviderStatus,
    *,
    actor: str,
    source: str,
) -> CheckResult:
    if observed.outcome == PENDING:
        await ledger.record_sync(
            gs, txn.id, observed.raw, promptpay=observed.promptpay
        )
        fresh = await ledger.get_transaction(gs, txn.id)
        # a concurrent caller may have settled it meanwhile
        if fresh.status in TERMINAL_STATUSES:
            return _settled(fresh, _NOTES.get(fresh.status, fresh.status))
        return CheckResult(
            found=True, status=PENDING, is_already_paid=False,
            note="Awaiting payment", transaction=fresh,
        )

    moved = await ledger.transition(
        gs, txn.id, observed.outcome,
        actor=actor,
        description=(
            f"Payment marked as {observed.outcome} via {source} "
            f"({observed.raw or observed.outcome})"
        ),
        provider_status=observed.raw,
        promptpay=observed.promptpay,
    )
    fresh = await ledger.get_transaction(gs, txn.id)
    if moved:
        logger.info("transaction %s: pending -> %s via %s",
                    txn.id, observed.outcome, source)
    else:
        logger.debug("transaction %s already %s, %s ignored",
                     txn.id, fresh.status, source)
    return _settled(fresh, _NOTES.get(fresh.status, fresh.status),
                    changed=moved)


async def check_status(
    gs: GatedAsyncSession,
    adapter: PaymentAdapter,
    transaction_id: str,
    store_id: Optional[str],
    *,
    actor: str = "customer",
    timeout: float = DEFAULT_PROVIDER_TIMEOUT,
) -> CheckResult:
    """
    Reconcile one transaction against the provider.

    Terminal transactions short-circuit without a provider call. Raises
    ProviderUnavailable when the provider can't be reached in `timeout`;
    nothing is written in that case.
    """
    txn = await ledger.get_transaction(gs, transaction_id, store_id)
    if txn is None:
        return NOT_FOUND

    if txn.status in TERMINAL_STATUSES:
        note = ("Payment already completed" if txn.status == PAID
                else _NOTES.get(txn.status, txn.status))
        return _settled(txn, note)

    if not txn.provider_ref:
        return CheckResult(
            found=True, status=txn.status, is_already_paid=False,
            note="No payment session recorded for this transaction",
            transaction=txn,
        )

    observed = await fetch_provider_status(adapter, txn.provider_ref, timeout)
    return await apply_observation(
        gs, txn, observed, actor=actor, source=f"{adapter.name} status check"
    )


async def expire_pending(
    gs: GatedAsyncSession,
    adapter: PaymentAdapter,
    txn: Transaction,
    *,
    timeout: float = DEFAULT_PROVIDER_TIMEOUT,
) -> CheckResult:
    """
    Give up on a pending transaction. The provider session is cancelled
    first so a late payment can't land on an expired ledger row; whatever
    the provider reports afterwards (possibly `paid`) is what gets applied.
    """
    try:
        async with timeit("provider.cancel"):
            observed = await asyncio.wait_for(
                adapter.cancel(txn.provider_ref), timeout
            )
    except asyncio.TimeoutError as e:
        raise ProviderUnavailable(
            f"{adapter.name} did not answer within {timeout:.1f}s"
        ) from e
    return await apply_observation(
        gs, txn, observed, actor="poller", source="expiry"
    )


async def abandon_pending(
    gs: GatedAsyncSession, txn: Transaction, reason: str
) -> CheckResult:
    """Expire without the provider's word, for sessions it keeps rejecting."""
    moved = await ledger.transition(
        gs, txn.id, EXPIRED,
        actor="poller",
        description=f"Payment marked as expired after failed lookups ({reason})",
    )
    fresh = await ledger.get_transaction(gs, txn.id)
    if moved:
        logger.warning("transaction %s: pending -> expired, provider lookup "
                       "keeps failing: %s", txn.id, reason)
    return _settled(fresh, _NOTES.get(fresh.status, fresh.status),
                    changed=moved)


# ----------------------------
# Webhooks
# ----------------------------
async def handle_webhook(
    gs: GatedAsyncSession,
    adapter: PaymentAdapter,
    events: WebhookEventStore,
    payload: bytes,
    headers: dict,
) -> Dict[str, Any]:
    event = adapter.verify_webhook(payload, headers)
    outcome = adapter.event_outcome(event)
    txn_id, idem = adapter.event_ids(event)

    if outcome is None or not txn_id:
        # verified, but nothing for the ledger (other event types, foreign
        # objects without our metadata)
        return {"received": True, "handled": False}

    async with timeit("events.mark_seen"):
        fresh = await events.mark_event_seen(idem)
    if not fresh:
        return {"received": True, "handled": False, "idempotent": True}

    try:
        txn = await ledger.get_transaction(gs, txn_id)
        if txn is None:
            raise NotFound(f"transaction {txn_id} not found")
        if txn.status in TERMINAL_STATUSES:
            return {"received": True, "handled": False, "idempotent": True,
                    "status": txn.status}
        result = await apply_observation(
            gs, txn, adapter.event_status(event),
            actor=f"{adapter.name}-webhook", source=f"{adapter.name} webhook",
        )
    except BaseException:
        # let the provider's redelivery try again
        await events.forget(idem)
        raise

    return {
        "received": True,
        "handled": result.changed,
        "idempotent": not result.changed,
        "status": result.status,
    }
