from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import select

from ..errors import NotFound
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .db import SongRequest, Transaction, PAID, PLAYBACK_STATES
from .transactions import append_activity


def song_to_dict(sr: SongRequest, txn: Transaction) -> Dict[str, Any]:
    return {
        "id": sr.id,
        "transactionId": txn.id,
        "songTitle": sr.song_title,
        "artistName": sr.artist_name,
        "message": sr.message,
        "customerName": sr.requester_name,
        "requesterInstagram": sr.requester_instagram,
        "amount": txn.amount,
        "currency": txn.currency,
        "status": txn.status,
        "playbackState": sr.playback_state,
        "paidAt": to_iso(txn.paid_at),
        "createdAt": to_iso(sr.created_at),
    }


async def get_song_request(
    gs: GatedAsyncSession, store_id: str, request_id: str
) -> Optional[Tuple[SongRequest, Transaction]]:
    async with gs.begin() as db:
        row = (await db.execute(
            select(SongRequest, Transaction)
            .join(Transaction, Transaction.id == SongRequest.transaction_id)
            .where(SongRequest.id == request_id,
                   SongRequest.store_id == store_id)
            .execution_options(populate_existing=True)
        )).first()
    return (row[0], row[1]) if row else None


async def visible_song_requests(
    gs: GatedAsyncSession, store_id: str, window_seconds: float,
    limit: int = 10, now: Optional[float] = None,
) -> List[Tuple[SongRequest, Transaction]]:
    """
    What the TV shows: paid, still queued, and paid less than
    `window_seconds` ago. Highest amount first, then oldest payment.
    """
    now = now_ts() if now is None else now
    async with gs.begin() as db:
        rows = (await db.execute(
            select(SongRequest, Transaction)
            .join(Transaction, Transaction.id == SongRequest.transaction_id)
            .where(
                SongRequest.store_id == store_id,
                SongRequest.playback_state == "queued",
                Transaction.status == PAID,
                Transaction.paid_at > now - window_seconds,
            )
            .order_by(Transaction.amount.desc(), Transaction.paid_at.asc())
            .limit(max(1, min(limit, 100)))
        )).all()
    return [(r[0], r[1]) for r in rows]


async def list_song_requests(
    gs: GatedAsyncSession, store_id: str, status: Optional[str] = None,
    limit: int = 100,
) -> List[Tuple[SongRequest, Transaction]]:
    stmt = (
        select(SongRequest, Transaction)
        .join(Transaction, Transaction.id == SongRequest.transaction_id)
        .where(SongRequest.store_id == store_id)
    )
    if status:
        stmt = stmt.where(Transaction.status == status)
    stmt = stmt.order_by(SongRequest.created_at.desc()).limit(
        max(1, min(limit, 500))
    )
    async with gs.begin() as db:
        rows = (await db.execute(stmt)).all()
    return [(r[0], r[1]) for r in rows]


async def set_playback_state(
    gs: GatedAsyncSession, store_id: str, request_id: str, state: str,
    actor: str,
) -> Tuple[SongRequest, Transaction]:
    if state not in PLAYBACK_STATES:
        raise ValueError(f"invalid playback state: {state}")
    async with gs.begin() as db:
        row = (await db.execute(
            select(SongRequest, Transaction)
            .join(Transaction, Transaction.id == SongRequest.transaction_id)
            .where(SongRequest.id == request_id,
                   SongRequest.store_id == store_id)
        )).first()
        if row is None:
            raise NotFound("song request not found")
        sr, txn = row[0], row[1]
        if sr.playback_state != state:
            sr.playback_state = state
            sr.updated_at = now_ts()
            await append_activity(
                db, txn, "playback_changed",
                f"Song request marked as {state}", actor,
            )
    return sr, txn


async def get_by_transaction(
    gs: GatedAsyncSession, store_id: str, transaction_id: str
) -> Optional[Tuple[SongRequest, Transaction]]:
    async with gs.begin() as db:
        row = (await db.execute(
            select(SongRequest, Transaction)
            .join(Transaction, Transaction.id == SongRequest.transaction_id)
            .where(SongRequest.transaction_id == transaction_id,
                   SongRequest.store_id == store_id)
            .execution_options(populate_existing=True)
        )).first()
    return (row[0], row[1]) if row else None


async def delete_song_request(
    gs: GatedAsyncSession, store_id: str, request_id: str, actor: str
) -> None:
    """Drop the request from the queue. The payment record stays."""
    async with gs.begin() as db:
        row = (await db.execute(
            select(SongRequest, Transaction)
            .join(Transaction, Transaction.id == SongRequest.transaction_id)
            .where(SongRequest.id == request_id,
                   SongRequest.store_id == store_id)
        )).first()
        if row is None:
            raise NotFound("song request not found")
        sr, txn = row[0], row[1]
        await db.delete(sr)
        await append_activity(
            db, txn, "song_request_deleted",
            f"Song request '{sr.song_title}' deleted", actor,
        )
