# meewarp/leaderboard.py
"""
Read-side aggregates over paid transactions. Nothing here is cached or
persisted; every call recomputes from the ledger, so a transaction counts
exactly as many times as it was moved to `paid` (once).
"""
from __future__ import annotations
from datetime import date, datetime, time, timedelta, tzinfo
from typing import List, Dict, Any, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select, func, case, or_

from .errors import InvalidRequest
from .helpers import now_ts, to_iso
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model.db import (
    ActivityEntry, Transaction, PAID, PENDING, TERMINAL_STATUSES,
)
from .model.transactions import txn_to_dict

STAT_RANGES = {"7d": 7, "30d": 30, "90d": 90}
MAX_STAT_DAYS = 366
MAX_PAGE_SIZE = 100


async def top_supporters(
    gs: GatedAsyncSession, store_id: str, limit: int = 3
) -> List[Dict[str, Any]]:
    total = func.sum(Transaction.amount).label("total")
    first_paid = func.min(Transaction.paid_at).label("first_paid")
    stmt = (
        select(
            Transaction.customer_name,
            total,
            func.count(Transaction.id).label("n"),
            first_paid,
            func.max(Transaction.customer_avatar).label("avatar"),
        )
        .where(Transaction.store_id == store_id, Transaction.status == PAID)
        .group_by(Transaction.customer_name)
        .order_by(total.desc(), first_paid.asc(),
                  Transaction.customer_name.asc())
        .limit(max(1, min(limit, 100)))
    )
    async with timeit("leaderboard.top"):
        async with gs.begin() as db:
            rows = (await db.execute(stmt)).all()
    return [
        {
            "customerName": r.customer_name,
            "customerAvatar": r.avatar,
            "totalAmount": int(r.total or 0),
            "transactions": int(r.n),
            "firstPaidAt": to_iso(r.first_paid),
        }
        for r in rows
    ]


async def activity_log(
    gs: GatedAsyncSession, store_id: str, limit: int = 20
) -> List[Dict[str, Any]]:
    """Latest `limit` entries of paid transactions, oldest first."""
    stmt = (
        select(ActivityEntry, Transaction)
        .join(Transaction, Transaction.id == ActivityEntry.transaction_id)
        .where(ActivityEntry.store_id == store_id, Transaction.status == PAID)
        .order_by(ActivityEntry.created_at.desc(), ActivityEntry.id.desc())
        .limit(max(1, min(limit, 200)))
    )
    async with gs.begin() as db:
        rows = (await db.execute(stmt)).all()
    rows.reverse()
    return [
        {
            "id": entry.id,
            "transactionId": txn.id,
            "action": entry.action,
            "description": entry.description,
            "actor": entry.actor,
            "createdAt": to_iso(entry.created_at),
            "customerName": txn.customer_name,
            "amount": txn.amount,
            "currency": txn.currency,
        }
        for entry, txn in rows
    ]


def _zone(tz_name: Optional[str]) -> tzinfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def start_of_day(ts: float, tz_name: Optional[str]) -> float:
    local = datetime.fromtimestamp(ts, tz=_zone(tz_name))
    return local.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


def _day_start(day: date, tz: tzinfo) -> float:
    return datetime.combine(day, time.min, tzinfo=tz).timestamp()


def _parse_day(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError):
        raise InvalidRequest(f"{name} must be a date (YYYY-MM-DD)")


def _like(term: str) -> str:
    escaped = (term.replace("\\", "\\\\")
               .replace("%", "\\%").replace("_", "\\_"))
    return f"%{escaped}%"


def _page(page: int, limit: int) -> Tuple[int, int, int]:
    page = max(1, page)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return page, limit, (page - 1) * limit


async def revenue_overview(
    gs: GatedAsyncSession, store_id: str, tz_name: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    now = now_ts() if now is None else now
    midnight = start_of_day(now, tz_name)
    is_paid = Transaction.status == PAID
    stmt = (
        select(
            func.count(Transaction.id),
            func.sum(case((is_paid, 1), else_=0)),
            func.sum(case((Transaction.status == PENDING, 1), else_=0)),
            func.sum(case((is_paid, Transaction.amount), else_=0)),
            func.sum(case(
                (is_paid & (Transaction.paid_at >= midnight),
                 Transaction.amount),
                else_=0,
            )),
        )
        .where(Transaction.store_id == store_id)
    )
    async with gs.begin() as db:
        total, paid, pending, revenue, today = (
            await db.execute(stmt)
        ).one()
    return {
        "totalTransactions": int(total or 0),
        "paidTransactions": int(paid or 0),
        "pendingTransactions": int(pending or 0),
        "totalRevenue": int(revenue or 0),
        "todayRevenue": int(today or 0),
        "timezone": tz_name or "UTC",
    }


# ----------------------------
# Reports
# ----------------------------
def stat_window(
    tz: tzinfo, now: float, range_: Optional[str] = None,
    date_from: Optional[str] = None, date_to: Optional[str] = None,
) -> Tuple[str, date, date]:
    """Resolve the query into (label, first day, last day), both inclusive."""
    today = datetime.fromtimestamp(now, tz=tz).date()
    if date_from or date_to:
        last = _parse_day(date_to, "to") if date_to else today
        first = (_parse_day(date_from, "from") if date_from
                 else last - timedelta(days=6))
        if first > last:
            raise InvalidRequest("from must not be after to")
        if (last - first).days + 1 > MAX_STAT_DAYS:
            raise InvalidRequest(
                f"date range is limited to {MAX_STAT_DAYS} days"
            )
        return "custom", first, last
    label = range_ or "7d"
    if label not in STAT_RANGES:
        raise InvalidRequest(
            f"range must be one of {', '.join(STAT_RANGES)}"
        )
    return label, today - timedelta(days=STAT_RANGES[label] - 1), today


async def statistics(
    gs: GatedAsyncSession, store_id: str, tz_name: Optional[str] = None,
    *, range_: Optional[str] = None, date_from: Optional[str] = None,
    date_to: Optional[str] = None, now: Optional[float] = None,
) -> Dict[str, Any]:
    """Paid revenue per local day, every day of the window present."""
    now = now_ts() if now is None else now
    tz = _zone(tz_name)
    label, first, last = stat_window(tz, now, range_, date_from, date_to)
    stmt = (
        select(Transaction.paid_at, Transaction.amount)
        .where(
            Transaction.store_id == store_id,
            Transaction.status == PAID,
            Transaction.paid_at >= _day_start(first, tz),
            Transaction.paid_at < _day_start(last + timedelta(days=1), tz),
        )
    )
    async with timeit("reports.statistics"):
        async with gs.begin() as db:
            rows = (await db.execute(stmt)).all()

    days = (last - first).days + 1
    buckets = {
        (first + timedelta(days=i)).isoformat(): [0, 0] for i in range(days)
    }
    for paid_at, amount in rows:
        key = datetime.fromtimestamp(paid_at, tz=tz).date().isoformat()
        bucket = buckets.get(key)
        if bucket is not None:
            bucket[0] += amount
            bucket[1] += 1

    revenue = sum(b[0] for b in buckets.values())
    paid = sum(b[1] for b in buckets.values())
    return {
        "range": label,
        "from": first.isoformat(),
        "to": last.isoformat(),
        "timezone": tz_name or "UTC",
        "totalRevenue": revenue,
        "paidTransactions": paid,
        "averageAmount": round(revenue / paid, 2) if paid else 0,
        "daily": [
            {"date": day, "revenue": b[0], "transactions": b[1]}
            for day, b in buckets.items()
        ],
    }


async def customer_directory(
    gs: GatedAsyncSession, store_id: str, *, page: int = 1, limit: int = 20,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    page, limit, offset = _page(page, limit)
    total = func.sum(Transaction.amount).label("total")
    last_paid = func.max(Transaction.paid_at).label("last_paid")
    grouped = (
        select(
            Transaction.customer_name,
            total,
            func.count(Transaction.id).label("n"),
            func.min(Transaction.paid_at).label("first_paid"),
            last_paid,
            func.max(Transaction.customer_avatar).label("avatar"),
        )
        .where(Transaction.store_id == store_id, Transaction.status == PAID)
        .group_by(Transaction.customer_name)
    )
    if search and search.strip():
        grouped = grouped.where(Transaction.customer_name.ilike(
            _like(search.strip()), escape="\\"
        ))
    async with gs.begin() as db:
        count = (await db.execute(
            select(func.count()).select_from(grouped.subquery())
        )).scalar_one()
        rows = (await db.execute(
            grouped
            .order_by(total.desc(), last_paid.desc(),
                      Transaction.customer_name.asc())
            .offset(offset)
            .limit(limit)
        )).all()
    return {
        "customers": [
            {
                "customerName": r.customer_name,
                "customerAvatar": r.avatar,
                "totalAmount": int(r.total or 0),
                "transactions": int(r.n),
                "firstPaidAt": to_iso(r.first_paid),
                "lastPaidAt": to_iso(r.last_paid),
            }
            for r in rows
        ],
        "page": page,
        "limit": limit,
        "total": int(count),
    }


async def list_orders(
    gs: GatedAsyncSession, store_id: str, tz_name: Optional[str] = None, *,
    page: int = 1, limit: int = 20, status: Optional[str] = None,
    search: Optional[str] = None, date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> Dict[str, Any]:
    """Every transaction of the store, newest first. Dates are local days."""
    page, limit, offset = _page(page, limit)
    conds = [Transaction.store_id == store_id]
    if status:
        if status != PENDING and status not in TERMINAL_STATUSES:
            raise InvalidRequest(f"unknown status {status!r}")
        conds.append(Transaction.status == status)
    if search and search.strip():
        term = search.strip()
        conds.append(or_(
            Transaction.customer_name.ilike(_like(term), escape="\\"),
            Transaction.code.ilike(_like(term), escape="\\"),
            Transaction.id == term,
        ))
    tz = _zone(tz_name)
    first = _parse_day(date_from, "from") if date_from else None
    last = _parse_day(date_to, "to") if date_to else None
    if first and last and first > last:
        raise InvalidRequest("from must not be after to")
    if first:
        conds.append(Transaction.created_at >= _day_start(first, tz))
    if last:
        conds.append(Transaction.created_at
                     < _day_start(last + timedelta(days=1), tz))

    async with gs.begin() as db:
        count = (await db.execute(
            select(func.count(Transaction.id)).where(*conds)
        )).scalar_one()
        rows = (await db.execute(
            select(Transaction)
            .where(*conds)
            .order_by(Transaction.created_at.desc(), Transaction.id.asc())
            .offset(offset)
            .limit(limit)
        )).scalars().all()
    return {
        "orders": [txn_to_dict(t) for t in rows],
        "page": page,
        "limit": limit,
        "total": int(count),
    }
