from __future__ import annotations
import asyncio
import json

from _support import LedgerTestCase

from meewarp import leaderboard, reconciler
from meewarp.errors import NotFound, ProviderUnavailable
from meewarp.model import transactions as ledger
from meewarp.model.db import PAID, EXPIRED, FAILED, PENDING
from meewarp.model.events import new_store
from meewarp.poller import PendingPoller


class CheckStatusTests(LedgerTestCase):
    async def test_paid_transaction_counts_once_on_leaderboard(self) -> None:
        txn = await self.pending_warp(amount=1200, code="DJ001")
        self.adapter.set_outcome(txn.provider_ref, PAID, "succeeded")

        first = await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        self.assertTrue(first.found)
        self.assertEqual(first.status, PAID)
        self.assertTrue(first.changed)
        self.assertFalse(first.is_already_paid)
        first_paid_at = first.transaction.paid_at

        top = await leaderboard.top_supporters(self.gs, self.store.id)
        self.assertEqual(top[0]["customerName"], "Alice")
        self.assertEqual(top[0]["totalAmount"], 1200)

        second = await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        self.assertEqual(second.status, PAID)
        self.assertFalse(second.changed)
        self.assertTrue(second.is_already_paid)
        self.assertEqual(second.transaction.paid_at, first_paid_at)

        top = await leaderboard.top_supporters(self.gs, self.store.id)
        self.assertEqual(top[0]["totalAmount"], 1200)

    async def test_terminal_transaction_skips_provider(self) -> None:
        txn = await self.pending_warp()
        self.adapter.set_outcome(txn.provider_ref, PAID)
        await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        self.assertEqual(self.adapter.fetch_calls, [txn.provider_ref])

    async def test_unknown_transaction_is_not_found(self) -> None:
        await self.pending_warp()
        before = await self.count_transactions()
        result = await reconciler.check_status(
            self.gs, self.adapter, "does-not-exist", self.store.id
        )
        self.assertFalse(result.found)
        self.assertFalse(result.to_dict()["success"])
        self.assertEqual(await self.count_transactions(), before)
        self.assertEqual(self.adapter.fetch_calls, [])

    async def test_other_store_cannot_see_transaction(self) -> None:
        txn = await self.pending_warp()
        result = await reconciler.check_status(
            self.gs, self.adapter, txn.id, "another-store"
        )
        self.assertFalse(result.found)

    async def test_concurrent_checks_apply_once(self) -> None:
        txn = await self.pending_warp(amount=1200)
        self.adapter.set_outcome(txn.provider_ref, PAID)

        results = await asyncio.gather(*(
            reconciler.check_status(
                self.new_gs(), self.adapter, txn.id, self.store.id
            )
            for _ in range(5)
        ))
        self.assertEqual(sum(1 for r in results if r.changed), 1)
        self.assertTrue(all(r.status == PAID for r in results))
        self.assertEqual(await self.count_activity(txn.id, "status_changed"),
                         1)
        top = await leaderboard.top_supporters(self.gs, self.store.id)
        self.assertEqual(top[0]["totalAmount"], 1200)

    async def test_provider_unavailable_leaves_ledger_alone(self) -> None:
        txn = await self.pending_warp()
        self.adapter.fail_fetch = ProviderUnavailable("connection reset")
        with self.assertRaises(ProviderUnavailable):
            await reconciler.check_status(
                self.gs, self.adapter, txn.id, self.store.id
            )
        stored = await ledger.get_transaction(self.gs, txn.id)
        self.assertEqual(stored.status, PENDING)
        self.assertEqual(await self.count_activity(txn.id, "status_changed"),
                         0)

    async def test_slow_provider_times_out(self) -> None:
        txn = await self.pending_warp()
        self.adapter.fetch_delay = 0.5
        with self.assertRaises(ProviderUnavailable):
            await reconciler.check_status(
                self.gs, self.adapter, txn.id, self.store.id, timeout=0.05
            )
        stored = await ledger.get_transaction(self.gs, txn.id)
        self.assertEqual(stored.status, PENDING)

    async def test_failed_payment(self) -> None:
        txn = await self.pending_warp()
        self.adapter.set_outcome(txn.provider_ref, FAILED, "payment_failed")
        result = await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        self.assertEqual(result.status, FAILED)
        self.assertIsNone(result.transaction.paid_at)
        self.assertEqual(
            await leaderboard.top_supporters(self.gs, self.store.id), []
        )

    async def test_still_pending_records_provider_status(self) -> None:
        txn = await self.pending_warp()
        self.adapter.set_outcome(txn.provider_ref, PENDING,
                                 "requires_payment_method")
        result = await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        self.assertEqual(result.status, PENDING)
        self.assertFalse(result.changed)
        self.assertEqual(result.transaction.provider_status,
                         "requires_payment_method")
        self.assertIsNotNone(result.transaction.last_synced_at)


class WebhookTests(LedgerTestCase):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.events = new_store("sql", db=self.SessionAsync(),
                                gated=self.gated)
        self._sessions.append(self.events.db)

    def event(self, txn_id: str, outcome: str = PAID,
              evt_id: str = "evt_1") -> bytes:
        return json.dumps({
            "id": evt_id, "transaction_id": txn_id, "outcome": outcome,
            "type": f"fake.{outcome}",
        }).encode()

    async def deliver(self, body: bytes) -> dict:
        return await reconciler.handle_webhook(
            self.gs, self.adapter, self.events, body,
            {"x-fake-signature": "ok"},
        )

    async def test_duplicate_delivery_is_idempotent(self) -> None:
        txn = await self.pending_warp()
        first = await self.deliver(self.event(txn.id))
        self.assertTrue(first["handled"])
        self.assertEqual(first["status"], PAID)

        again = await self.deliver(self.event(txn.id))
        self.assertTrue(again["idempotent"])
        self.assertFalse(again["handled"])
        self.assertEqual(await self.count_activity(txn.id, "status_changed"),
                         1)

    async def test_new_event_for_settled_transaction(self) -> None:
        txn = await self.pending_warp()
        await self.deliver(self.event(txn.id))
        late = await self.deliver(self.event(txn.id, FAILED, "evt_2"))
        self.assertTrue(late["idempotent"])
        stored = await ledger.get_transaction(self.gs, txn.id)
        self.assertEqual(stored.status, PAID)

    async def test_unknown_transaction_releases_event(self) -> None:
        with self.assertRaises(NotFound):
            await self.deliver(self.event("missing", evt_id="evt_9"))
        # released, so a redelivery is processed again
        self.assertTrue(await self.events.mark_event_seen("evt_9"))

    async def test_ignored_event_type(self) -> None:
        txn = await self.pending_warp()
        body = json.dumps({"id": "evt_3", "transaction_id": txn.id}).encode()
        result = await self.deliver(body)
        self.assertEqual(result, {"received": True, "handled": False})
        stored = await ledger.get_transaction(self.gs, txn.id)
        self.assertEqual(stored.status, PENDING)

    async def test_webhook_and_poller_settle_once(self) -> None:
        txn = await self.pending_warp(amount=700)
        self.adapter.set_outcome(txn.provider_ref, PAID)
        self.adapter.fetch_delay = 0.01
        poller = PendingPoller(self.SessionAsync, self.gated, self.adapter,
                               min_age=15, expire_after=600, timeout=1.0)

        hook, counts = await asyncio.gather(
            reconciler.handle_webhook(
                self.new_gs(), self.adapter, self.events,
                self.event(txn.id), {"x-fake-signature": "ok"},
            ),
            poller.run_once(now=txn.created_at + 60),
        )
        self.assertEqual(hook["status"], PAID)
        self.assertEqual(int(hook["handled"]) + counts["settled"], 1)
        self.assertEqual(counts["errors"], 0)
        stored = await ledger.get_transaction(self.gs, txn.id)
        self.assertEqual(stored.status, PAID)
        self.assertEqual(await self.count_activity(txn.id, "status_changed"),
                         1)
        top = await leaderboard.top_supporters(self.gs, self.store.id)
        self.assertEqual(top[0]["totalAmount"], 700)

    async def test_webhook_racing_expiry_has_one_winner(self) -> None:
        txn = await self.pending_warp()
        self.adapter.fetch_delay = 0.01
        poller = PendingPoller(self.SessionAsync, self.gated, self.adapter,
                               min_age=15, expire_after=600, timeout=1.0)

        hook, counts = await asyncio.gather(
            reconciler.handle_webhook(
                self.new_gs(), self.adapter, self.events,
                self.event(txn.id), {"x-fake-signature": "ok"},
            ),
            poller.run_once(now=txn.created_at + 601),
        )
        stored = await ledger.get_transaction(self.gs, txn.id)
        self.assertIn(stored.status, (PAID, EXPIRED))
        self.assertEqual(hook["status"], stored.status)
        self.assertEqual(
            int(hook["handled"]) + counts["expired"] + counts["settled"], 1
        )
        self.assertEqual(await self.count_activity(txn.id, "status_changed"),
                         1)
