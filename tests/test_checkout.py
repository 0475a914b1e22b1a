from __future__ import annotations
import asyncio

from _support import LedgerTestCase

from meewarp import checkout, reconciler
from meewarp.errors import (
    CheckoutFailed, InvalidRequest, NotFound, ProviderError,
)
from meewarp.helpers import as_positive_int, now_ts
from meewarp.model import packages, songrequests
from meewarp.model import transactions as ledger
from meewarp.model.db import FAILED, PAID, PENDING


class CheckoutTests(LedgerTestCase):
    async def test_pending_transaction_with_provider_session(self) -> None:
        txn = await self.pending_warp(amount=1200)
        self.assertEqual(txn.status, PENDING)
        self.assertEqual(txn.provider_ref, f"fake_{txn.id}")
        self.assertEqual(txn.currency, "THB")
        self.assertEqual(await self.count_activity(txn.id, "created"), 1)
        self.assertEqual(
            await self.count_activity(txn.id, "payment_session_created"), 1
        )

    async def test_package_overrides_amount_and_seconds(self) -> None:
        pkg = await packages.create_package(
            self.gs, store_id=self.store.id, name="Long", seconds=60,
            price=900,
        )
        txn = await self.pending_warp(amount=1, display_seconds=5,
                                      package_id=pkg.id)
        self.assertEqual(txn.amount, 900)
        self.assertEqual(txn.display_seconds, 60)

    async def test_inactive_package_is_rejected(self) -> None:
        pkg = await packages.create_package(
            self.gs, store_id=self.store.id, name="Old", seconds=10,
            price=100, is_active=False,
        )
        with self.assertRaises(InvalidRequest):
            await self.pending_warp(package_id=pkg.id)
        self.assertEqual(await self.count_transactions(), 0)

    async def test_provider_failure_marks_failed(self) -> None:
        self.adapter.fail_create = ProviderError("declined")
        with self.assertRaises(CheckoutFailed) as ctx:
            await self.pending_warp()
        txn = await ledger.get_transaction(self.gs, ctx.exception.transaction_id)
        self.assertEqual(txn.status, FAILED)
        self.assertEqual(
            await self.count_activity(txn.id, "payment_link_failed"), 1
        )

    async def test_provider_timeout_marks_failed(self) -> None:
        async def hang(*args, **kw):
            await asyncio.sleep(1)

        self.adapter.create_session = hang
        req = checkout.parse_warp({
            "code": "DJ001", "customerName": "Alice",
            "socialLink": "https://instagram.com/alice",
            "amount": 100, "displaySeconds": 10,
        })
        with self.assertRaises(CheckoutFailed) as ctx:
            await checkout.create_checkout(
                self.gs, self.adapter, self.store, req, timeout=0.05
            )
        txn = await ledger.get_transaction(self.gs, ctx.exception.transaction_id)
        self.assertEqual(txn.status, FAILED)

    async def test_song_request_creates_linked_rows(self) -> None:
        req = checkout.parse_song_request({
            "songTitle": "Dancing Queen", "artistName": "ABBA",
            "requesterName": "Bob", "amount": "75",
        })
        txn = await checkout.create_checkout(
            self.gs, self.adapter, self.store, req
        )
        sr, linked = await songrequests.get_by_transaction(
            self.gs, self.store.id, txn.id
        )
        self.assertEqual(linked.id, txn.id)
        self.assertEqual(sr.song_title, "Dancing Queen")
        self.assertEqual(sr.playback_state, "queued")
        self.assertEqual(txn.amount, 75)
        self.assertEqual(txn.payment_method, "promptpay")


class ParseTests(LedgerTestCase):
    def test_warp_requires_identity(self) -> None:
        with self.assertRaises(InvalidRequest):
            checkout.parse_warp({"code": "DJ001", "customerName": "Alice"})

    def test_bad_payment_method(self) -> None:
        with self.assertRaises(InvalidRequest):
            checkout.parse_warp({
                "code": "DJ001", "customerName": "Alice",
                "socialLink": "x", "paymentMethod": "cash",
            })

    def test_bad_email(self) -> None:
        with self.assertRaises(InvalidRequest):
            checkout.parse_warp({
                "code": "DJ001", "customerName": "Alice",
                "socialLink": "x", "customerEmail": "nope",
            })

    def test_song_request_minimum(self) -> None:
        with self.assertRaises(InvalidRequest):
            checkout.parse_song_request({
                "songTitle": "Song", "requesterName": "Bob", "amount": 49,
            })
        req = checkout.parse_song_request({
            "songTitle": "Song", "requesterName": "Bob", "amount": 50,
        })
        self.assertEqual(req.amount, 50)
        self.assertEqual(req.code, "song-request")

    async def test_warp_without_amount(self) -> None:
        req = checkout.parse_warp({
            "code": "DJ001", "customerName": "Alice", "socialLink": "x",
        })
        with self.assertRaises(InvalidRequest):
            await checkout.create_checkout(
                self.gs, self.adapter, self.store, req
            )

    def test_non_finite_amounts_are_rejected(self) -> None:
        self.assertIsNone(as_positive_int(float("inf")))
        self.assertIsNone(as_positive_int("-inf"))
        self.assertIsNone(as_positive_int("nan"))
        self.assertEqual(as_positive_int("12.9"), 12)
        with self.assertRaises(InvalidRequest):
            checkout.parse_song_request({
                "songTitle": "Song", "requesterName": "Bob", "amount": "inf",
            })


class SongRequestQueueTests(LedgerTestCase):
    WINDOW = 60.0

    async def paid_song(self, title: str, amount: int = 100):
        req = checkout.parse_song_request({
            "songTitle": title, "requesterName": "Bob", "amount": amount,
        })
        txn = await checkout.create_checkout(
            self.gs, self.adapter, self.store, req
        )
        self.adapter.set_outcome(txn.provider_ref, PAID)
        await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        return await songrequests.get_by_transaction(
            self.gs, self.store.id, txn.id
        )

    async def visible_at(self, now: float):
        rows = await songrequests.visible_song_requests(
            self.gs, self.store.id, self.WINDOW, now=now
        )
        return [sr.song_title for sr, _ in rows]

    async def test_display_window_edges(self) -> None:
        _, txn = await self.paid_song("Dancing Queen")
        await self.set_times(txn.id, paid_at=1000.0)

        self.assertEqual(await self.visible_at(1000.0 + self.WINDOW - 1),
                         ["Dancing Queen"])
        self.assertEqual(await self.visible_at(1000.0 + self.WINDOW + 1), [])

    async def test_pending_requests_stay_hidden(self) -> None:
        req = checkout.parse_song_request({
            "songTitle": "Unpaid", "requesterName": "Eve", "amount": 500,
        })
        await checkout.create_checkout(self.gs, self.adapter, self.store, req)
        self.assertEqual(await self.visible_at(now_ts()), [])

    async def test_higher_amount_first(self) -> None:
        await self.paid_song("Small", 60)
        await self.paid_song("Big", 300)
        self.assertEqual(await self.visible_at(now_ts()), ["Big", "Small"])

    async def test_delete_keeps_the_payment(self) -> None:
        sr, txn = await self.paid_song("Dancing Queen")
        request_id = sr.id
        await songrequests.delete_song_request(
            self.gs, self.store.id, request_id, "admin@warp.dev"
        )
        self.assertIsNone(await songrequests.get_song_request(
            self.gs, self.store.id, request_id
        ))
        stored = await ledger.get_transaction(self.gs, txn.id)
        self.assertEqual(stored.status, PAID)
        self.assertEqual(
            await self.count_activity(txn.id, "song_request_deleted"), 1
        )
        with self.assertRaises(NotFound):
            await songrequests.delete_song_request(
                self.gs, self.store.id, request_id, "admin@warp.dev"
            )
