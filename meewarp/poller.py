# meewarp/poller.py
from __future__ import annotations
import asyncio
import logging
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from .adapters import PaymentAdapter
from .errors import (
    ProviderError, ProviderNotConfigured, ProviderUnavailable,
)
from .helpers import now_ts
from .infra.sql import Gated, GatedAsyncSession
from .infra.timings import timeit
from .model import transactions as ledger
from .model.db import EXPIRED, PENDING
from . import reconciler

logger = logging.getLogger(__name__)


class PendingPoller:
    """
    Re-checks stale pending transactions on a fixed interval, so a lost
    webhook or an abandoned checkout page still ends in a terminal state.
    """

    def __init__(
        self,
        SessionAsync: async_sessionmaker,
        gated: Gated,
        adapter: PaymentAdapter,
        *,
        interval: float = 30.0,
        min_age: float = 15.0,
        batch_size: int = 50,
        expire_after: float = 30 * 60,
        timeout: float = 5.0,
    ) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.adapter = adapter
        self.interval = interval
        self.min_age = min_age
        self.batch_size = batch_size
        self.expire_after = expire_after
        self.timeout = timeout
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def _check_one(
        self, gs: GatedAsyncSession, txn, now: float
    ) -> Optional[str]:
        overdue = now - txn.created_at >= self.expire_after
        try:
            async with timeit("poller.item"):
                result = await reconciler.check_status(
                    gs, self.adapter, txn.id, None,
                    actor="poller", timeout=self.timeout,
                )
                if result.status == PENDING and overdue:
                    result = await reconciler.expire_pending(
                        gs, self.adapter, result.transaction,
                        timeout=self.timeout,
                    )
        except ProviderError as e:
            await ledger.mark_sync_attempt(gs, txn.id)
            # only a session the provider keeps rejecting is given up on
            if (not overdue or isinstance(
                    e, (ProviderUnavailable, ProviderNotConfigured))):
                raise
            result = await reconciler.abandon_pending(gs, txn, str(e))
        if not result.changed or result.status == PENDING:
            return None
        return "expired" if result.status == EXPIRED else "settled"

    async def run_once(self, now: Optional[float] = None) -> Dict[str, int]:
        """One pass over the least recently synced stale pending rows."""
        now = now_ts() if now is None else now
        counts = {"checked": 0, "settled": 0, "expired": 0, "errors": 0}
        async with self.SessionAsync() as session:
            gs = GatedAsyncSession(session=session, gated=self.gated)
            batch = await ledger.list_stale_pending(
                gs, now - self.min_age, self.batch_size
            )
            for txn in batch:
                counts["checked"] += 1
                try:
                    outcome = await self._check_one(gs, txn, now)
                except asyncio.CancelledError:
                    raise
                except ProviderError as e:
                    counts["errors"] += 1
                    logger.warning("poller: transaction %s: %s", txn.id, e)
                    continue
                except Exception:
                    counts["errors"] += 1
                    logger.exception("poller: transaction %s failed", txn.id)
                    continue
                if outcome:
                    counts[outcome] += 1
        if counts["checked"]:
            logger.info("poller pass: %s", counts)
        return counts

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("poller pass failed")
            try:
                await asyncio.wait_for(self._stop.wait(), self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(
                self._loop(), name="pending-poller"
            )

    async def stop(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
