# model/transactions.py
"""
Transaction ledger.

A transaction is inserted as `pending` when a checkout starts and leaves
`pending` exactly once. Every write that moves the status is a conditional
UPDATE keyed on `status = 'pending'`; the caller that gets rowcount == 1 owns
the transition and appends the activity entry in the same DB transaction.
Everybody else observes the stored terminal state and does nothing.

Display progress (`display_state`) is tracked separately so that the payment
status stays immutable once terminal.
"""
from __future__ import annotations
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import (
    ActivityEntry, SongRequest, Transaction,
    PENDING, PAID, TERMINAL_STATUSES,
    DISPLAY_QUEUED, DISPLAY_DISPLAYING, DISPLAY_DISPLAYED, KIND_WARP,
)


def txn_to_dict(t: Transaction) -> Dict[str, Any]:
    return {
        "id": t.id,
        "kind": t.kind,
        "code": t.code,
        "customerName": t.customer_name,
        "customerAvatar": t.customer_avatar,
        "socialLink": t.social_link,
        "quote": t.quote,
        "displaySeconds": t.display_seconds,
        "packageId": t.package_id,
        "amount": t.amount,
        "currency": t.currency,
        "status": t.status,
        "paymentMethod": t.payment_method,
        "provider": t.provider,
        "providerStatus": t.provider_status,
        "checkoutUrl": t.checkout_url,
        "promptPay": t.promptpay,
        "createdAt": to_iso(t.created_at),
        "paidAt": to_iso(t.paid_at),
        "displayState": t.display_state,
    }


def _activity(
    t_id: str, store_id: str, action: str, description: str, actor: str,
    ts: float,
) -> ActivityEntry:
    return ActivityEntry(
        store_id=store_id,
        transaction_id=t_id,
        action=action,
        description=description,
        actor=actor or "system",
        created_at=ts,
    )


# ----------------------------
# Create / read
# ----------------------------
async def create_pending(
    gs: GatedAsyncSession,
    *,
    store_id: str,
    code: str,
    customer_name: str,
    amount: int,
    currency: str,
    provider: str,
    payment_method: str = "checkout",
    kind: str = KIND_WARP,
    profile_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    customer_avatar: Optional[str] = None,
    social_link: Optional[str] = None,
    quote: Optional[str] = None,
    display_seconds: int = 0,
    package_id: Optional[str] = None,
    song: Optional[Dict[str, Any]] = None,
    actor: str = "customer",
) -> Transaction:
    ts = now_ts()
    txn = Transaction(
        id=new_id(),
        store_id=store_id,
        kind=kind,
        code=code,
        profile_id=profile_id,
        customer_name=customer_name,
        customer_email=customer_email,
        customer_avatar=customer_avatar,
        social_link=social_link,
        quote=quote,
        display_seconds=int(display_seconds or 0),
        package_id=package_id,
        amount=int(amount),
        currency=currency.upper(),
        status=PENDING,
        created_at=ts,
        updated_at=ts,
        provider=provider,
        payment_method=payment_method,
        display_state=DISPLAY_QUEUED,
    )
    async with timeit("ledger.create"):
        async with gs.begin() as db:
            db.add(txn)
            # the FK from song_requests / activity_log needs the row first
            await db.flush()
            if song is not None:
                db.add(SongRequest(
                    id=new_id(),
                    store_id=store_id,
                    transaction_id=txn.id,
                    created_at=ts,
                    updated_at=ts,
                    playback_state="queued",
                    **song,
                ))
            db.add(_activity(
                txn.id, store_id, "created",
                f"Transaction created for {customer_name}", actor, ts,
            ))
    return txn


async def get_transaction(
    gs: GatedAsyncSession, txn_id: str, store_id: Optional[str] = None
) -> Optional[Transaction]:
    stmt = (
        select(Transaction)
        .where(Transaction.id == txn_id)
        # rows may have moved under a conditional UPDATE since last load
        .execution_options(populate_existing=True)
    )
    if store_id is not None:
        stmt = stmt.where(Transaction.store_id == store_id)
    async with timeit("ledger.get"):
        async with gs.begin() as db:
            return (await db.execute(stmt)).scalar_one_or_none()


async def list_transactions(
    gs: GatedAsyncSession, store_id: str, status: Optional[str] = None,
    limit: int = 100,
) -> List[Transaction]:
    stmt = select(Transaction).where(Transaction.store_id == store_id)
    if status:
        stmt = stmt.where(Transaction.status == status)
    stmt = stmt.order_by(Transaction.created_at.desc()).limit(
        max(1, min(limit, 500))
    )
    async with gs.begin() as db:
        return list((await db.execute(stmt)).scalars().all())


async def list_stale_pending(
    gs: GatedAsyncSession, older_than: float, limit: int
) -> List[Transaction]:
    """
    Pending transactions created before `older_than`, any store.

    Least recently synced first, so rows whose lookups keep failing don't
    hold the head of every batch.
    """
    stmt = (
        select(Transaction)
        .where(
            Transaction.status == PENDING,
            Transaction.created_at <= older_than,
            Transaction.provider_ref.is_not(None),
        )
        .order_by(
            Transaction.last_synced_at.asc().nulls_first(),
            Transaction.created_at.asc(),
        )
        .limit(max(1, limit))
    )
    async with gs.begin() as db:
        return list((await db.execute(stmt)).scalars().all())


# ----------------------------
# Provider bookkeeping (pending only, not a status change)
# ----------------------------
async def attach_provider_session(
    gs: GatedAsyncSession,
    txn_id: str,
    *,
    provider_ref: str,
    checkout_url: Optional[str] = None,
    provider_status: Optional[str] = None,
    promptpay: Optional[Dict[str, Any]] = None,
    actor: str = "system",
) -> bool:
    ts = now_ts()
    async with gs.begin() as db:
        res = await db.execute(
            update(Transaction)
            .where(Transaction.id == txn_id, Transaction.status == PENDING)
            .values(
                provider_ref=provider_ref,
                checkout_url=checkout_url,
                provider_status=provider_status,
                promptpay=promptpay,
                last_synced_at=ts,
                updated_at=ts,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            return False
        store_id = (await db.execute(
            select(Transaction.store_id).where(Transaction.id == txn_id)
        )).scalar_one()
        db.add(_activity(
            txn_id, store_id, "payment_session_created",
            f"Payment session {provider_ref} opened", actor, ts,
        ))
    return True


async def record_sync(
    gs: GatedAsyncSession, txn_id: str, provider_status: Optional[str],
    promptpay: Optional[Dict[str, Any]] = None,
) -> None:
    ts = now_ts()
    values: Dict[str, Any] = {
        "provider_status": provider_status,
        "last_synced_at": ts,
    }
    if promptpay is not None:
        values["promptpay"] = promptpay
    async with gs.begin() as db:
        await db.execute(
            update(Transaction)
            .where(Transaction.id == txn_id, Transaction.status == PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )


async def mark_sync_attempt(gs: GatedAsyncSession, txn_id: str) -> None:
    """Stamp a failed provider lookup so the poller moves on to other rows."""
    async with gs.begin() as db:
        await db.execute(
            update(Transaction)
            .where(Transaction.id == txn_id, Transaction.status == PENDING)
            .values(last_synced_at=now_ts())
            .execution_options(synchronize_session=False)
        )


# ----------------------------
# The guarded transition
# ----------------------------
async def transition(
    gs: GatedAsyncSession,
    txn_id: str,
    new_status: str,
    *,
    actor: str,
    description: str,
    provider_status: Optional[str] = None,
    promptpay: Optional[Dict[str, Any]] = None,
    action: str = "status_changed",
) -> bool:
    """
    Compare-and-swap `pending -> new_status`.

    Returns True if this call moved the transaction; False if it was no
    longer pending (someone else won, or it never existed). The activity
    entry is written in the same DB transaction, so a failed commit leaves
    neither behind.
    """
    if new_status not in TERMINAL_STATUSES:
        raise ValueError(f"not a terminal status: {new_status}")

    ts = now_ts()
    values: Dict[str, Any] = {
        "status": new_status,
        "updated_at": ts,
        "last_synced_at": ts,
    }
    if new_status == PAID:
        values["paid_at"] = ts
    if provider_status is not None:
        values["provider_status"] = provider_status
    if promptpay is not None:
        values["promptpay"] = promptpay

    async with timeit("ledger.transition"):
        async with gs.begin() as db:
            # UPDATE first: on sqlite this takes the write lock up front
            res = await db.execute(
                update(Transaction)
                .where(
                    Transaction.id == txn_id, Transaction.status == PENDING
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                return False
            store_id = (await db.execute(
                select(Transaction.store_id).where(Transaction.id == txn_id)
            )).scalar_one()
            db.add(_activity(
                txn_id, store_id, action, description, actor, ts
            ))
    return True


async def append_activity(
    db: AsyncSession, txn: Transaction, action: str, description: str,
    actor: str,
) -> None:
    db.add(_activity(
        txn.id, txn.store_id, action, description, actor, now_ts()
    ))


# ----------------------------
# Display queue
# ----------------------------
async def claim_next_display(
    gs: GatedAsyncSession, store_id: str
) -> Optional[Transaction]:
    async with gs.begin() as db:
        current = (await db.execute(
            select(Transaction)
            .where(
                Transaction.store_id == store_id,
                Transaction.kind == KIND_WARP,
                Transaction.display_state == DISPLAY_DISPLAYING,
            )
            .order_by(Transaction.display_started_at.desc())
            .limit(1)
        )).scalar_one_or_none()
    if current is not None:
        return current

    # a couple of rounds in case another screen grabs the same candidate
    for _ in range(3):
        async with gs.begin() as db:
            candidate = (await db.execute(
                select(Transaction.id)
                .where(
                    Transaction.store_id == store_id,
                    Transaction.kind == KIND_WARP,
                    Transaction.status == PAID,
                    Transaction.display_state == DISPLAY_QUEUED,
                )
                .order_by(Transaction.paid_at.asc())
                .limit(1)
            )).scalar_one_or_none()
        if candidate is None:
            return None

        ts = now_ts()
        async with gs.begin() as db:
            res = await db.execute(
                update(Transaction)
                .where(
                    Transaction.id == candidate,
                    Transaction.display_state == DISPLAY_QUEUED,
                )
                .values(display_state=DISPLAY_DISPLAYING,
                        display_started_at=ts, updated_at=ts)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                continue
            txn = (await db.execute(
                select(Transaction)
                .where(Transaction.id == candidate)
                .execution_options(populate_existing=True)
            )).scalar_one()
            await append_activity(
                db, txn, "display_started",
                f"Warp display started for {txn.customer_name}",
                "display-system",
            )
        return txn
    return None


async def complete_display(
    gs: GatedAsyncSession, store_id: str, txn_id: str
) -> bool:
    ts = now_ts()
    async with gs.begin() as db:
        res = await db.execute(
            update(Transaction)
            .where(
                Transaction.id == txn_id,
                Transaction.store_id == store_id,
                Transaction.display_state == DISPLAY_DISPLAYING,
            )
            .values(display_state=DISPLAY_DISPLAYED,
                    display_completed_at=ts, updated_at=ts)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            return False
        db.add(_activity(
            txn_id, store_id, "display_completed",
            "Warp display marked as completed", "display-system", ts,
        ))
    return True
