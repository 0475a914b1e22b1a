from __future__ import annotations
from datetime import datetime
from zoneinfo import ZoneInfo

from _support import LedgerTestCase

from meewarp import leaderboard, reconciler
from meewarp.errors import InvalidRequest
from meewarp.model.db import PAID, FAILED


class LeaderboardTests(LedgerTestCase):
    async def pay(self, txn, outcome: str = PAID) -> None:
        self.adapter.set_outcome(txn.provider_ref, outcome)
        await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )

    async def test_totals_per_supporter(self) -> None:
        for name, amount in (("Alice", 500), ("Bob", 800), ("Alice", 400)):
            await self.pay(await self.pending_warp(amount=amount, name=name))

        top = await leaderboard.top_supporters(self.gs, self.store.id)
        self.assertEqual(
            [(s["customerName"], s["totalAmount"], s["transactions"])
             for s in top],
            [("Alice", 900, 2), ("Bob", 800, 1)],
        )

    async def test_ties_go_to_the_earlier_payment(self) -> None:
        late = await self.pending_warp(amount=300, name="Zed")
        early = await self.pending_warp(amount=300, name="Yan")
        await self.pay(late)
        await self.pay(early)
        await self.set_times(late.id, paid_at=2000.0)
        await self.set_times(early.id, paid_at=1000.0)

        top = await leaderboard.top_supporters(self.gs, self.store.id)
        self.assertEqual([s["customerName"] for s in top], ["Yan", "Zed"])

    async def test_only_paid_and_only_this_store(self) -> None:
        await self.pay(await self.pending_warp(name="Alice"), FAILED)
        await self.pending_warp(name="Bob")
        self.assertEqual(
            await leaderboard.top_supporters(self.gs, self.store.id), []
        )
        self.assertEqual(
            await leaderboard.top_supporters(self.gs, "other-store"), []
        )

    async def test_limit(self) -> None:
        for i, name in enumerate(("A", "B", "C", "D")):
            await self.pay(await self.pending_warp(amount=100 + i, name=name))
        top = await leaderboard.top_supporters(self.gs, self.store.id, 3)
        self.assertEqual([s["customerName"] for s in top], ["D", "C", "B"])

    async def test_activity_log_is_chronological_and_paid_only(self) -> None:
        paid = await self.pending_warp(name="Alice")
        await self.pay(paid)
        await self.pending_warp(name="Bob")

        entries = await leaderboard.activity_log(self.gs, self.store.id)
        self.assertEqual({e["transactionId"] for e in entries}, {paid.id})
        self.assertEqual(
            [e["action"] for e in entries],
            ["created", "payment_session_created", "status_changed"],
        )

        latest = await leaderboard.activity_log(self.gs, self.store.id, 2)
        self.assertEqual([e["action"] for e in latest],
                         ["payment_session_created", "status_changed"])

    async def test_revenue_overview(self) -> None:
        today = await self.pending_warp(amount=1000, name="Alice")
        earlier = await self.pending_warp(amount=250, name="Bob")
        await self.pending_warp(amount=99, name="Carol")
        await self.pay(today)
        await self.pay(earlier)

        now = datetime(2024, 5, 2, 12, 0,
                       tzinfo=ZoneInfo("Asia/Bangkok")).timestamp()
        yesterday = datetime(2024, 5, 1, 23, 0,
                             tzinfo=ZoneInfo("Asia/Bangkok")).timestamp()
        await self.set_times(today.id, paid_at=now - 3600)
        await self.set_times(earlier.id, paid_at=yesterday)

        overview = await leaderboard.revenue_overview(
            self.gs, self.store.id, "Asia/Bangkok", now=now
        )
        self.assertEqual(overview["totalTransactions"], 3)
        self.assertEqual(overview["paidTransactions"], 2)
        self.assertEqual(overview["pendingTransactions"], 1)
        self.assertEqual(overview["totalRevenue"], 1250)
        self.assertEqual(overview["todayRevenue"], 1000)

    def test_start_of_day_uses_store_timezone(self) -> None:
        # 2024-05-01 20:00 UTC is already 2024-05-02 03:00 in Bangkok
        ts = datetime(2024, 5, 1, 20, 0, tzinfo=ZoneInfo("UTC")).timestamp()
        midnight = leaderboard.start_of_day(ts, "Asia/Bangkok")
        self.assertEqual(
            midnight,
            datetime(2024, 5, 2, tzinfo=ZoneInfo("Asia/Bangkok")).timestamp(),
        )
        self.assertEqual(
            leaderboard.start_of_day(ts, "Not/AZone"),
            datetime(2024, 5, 1, tzinfo=ZoneInfo("UTC")).timestamp(),
        )


class ReportTests(LedgerTestCase):
    BKK = ZoneInfo("Asia/Bangkok")

    async def paid_at(self, when: datetime, amount: int = 100,
                      name: str = "Alice"):
        txn = await self.pending_warp(amount=amount, name=name)
        self.adapter.set_outcome(txn.provider_ref, PAID)
        await reconciler.check_status(
            self.gs, self.adapter, txn.id, self.store.id
        )
        await self.set_times(txn.id, paid_at=when.timestamp(),
                             created_at=when.timestamp())
        return txn

    async def test_statistics_buckets_local_days(self) -> None:
        now = datetime(2024, 5, 7, 12, 0, tzinfo=self.BKK).timestamp()
        await self.paid_at(datetime(2024, 5, 7, 0, 30, tzinfo=self.BKK), 300)
        # 23:30 UTC on May 6 is May 7 in Bangkok
        await self.paid_at(
            datetime(2024, 5, 6, 23, 30, tzinfo=ZoneInfo("UTC")), 200
        )
        await self.paid_at(datetime(2024, 5, 1, 9, 0, tzinfo=self.BKK), 500)
        # outside the 7 day window
        await self.paid_at(datetime(2024, 4, 30, 23, 0, tzinfo=self.BKK), 900)
        await self.pending_warp(amount=77, name="Carol")

        stats = await leaderboard.statistics(
            self.gs, self.store.id, "Asia/Bangkok", now=now
        )
        self.assertEqual(stats["range"], "7d")
        self.assertEqual((stats["from"], stats["to"]),
                         ("2024-05-01", "2024-05-07"))
        self.assertEqual(len(stats["daily"]), 7)
        self.assertEqual(stats["daily"][0],
                         {"date": "2024-05-01", "revenue": 500,
                          "transactions": 1})
        self.assertEqual(stats["daily"][-1],
                         {"date": "2024-05-07", "revenue": 500,
                          "transactions": 2})
        self.assertEqual(stats["daily"][3]["revenue"], 0)
        self.assertEqual(stats["totalRevenue"], 1000)
        self.assertEqual(stats["paidTransactions"], 3)
        self.assertEqual(stats["averageAmount"], 333.33)

    async def test_statistics_custom_window(self) -> None:
        await self.paid_at(datetime(2024, 4, 30, 23, 0, tzinfo=self.BKK), 900)
        stats = await leaderboard.statistics(
            self.gs, self.store.id, "Asia/Bangkok",
            date_from="2024-04-30", date_to="2024-04-30",
        )
        self.assertEqual(stats["range"], "custom")
        self.assertEqual(stats["daily"],
                         [{"date": "2024-04-30", "revenue": 900,
                           "transactions": 1}])

    async def test_statistics_rejects_bad_windows(self) -> None:
        for kw in ({"range_": "1y"},
                   {"date_from": "2024-05-02", "date_to": "2024-05-01"},
                   {"date_from": "yesterday"},
                   {"date_from": "2020-01-01", "date_to": "2024-01-01"}):
            with self.subTest(**kw):
                with self.assertRaises(InvalidRequest):
                    await leaderboard.statistics(
                        self.gs, self.store.id, "Asia/Bangkok", **kw
                    )

    async def test_customer_directory(self) -> None:
        day = datetime(2024, 5, 1, 12, 0, tzinfo=self.BKK)
        await self.paid_at(day, 1200, "Alice")
        await self.paid_at(day.replace(hour=13), 300, "Alice")
        await self.paid_at(day, 500, "Bob")
        await self.paid_at(day, 100, "50%_off")
        await self.pending_warp(amount=9999, name="Carol")

        page = await leaderboard.customer_directory(self.gs, self.store.id)
        self.assertEqual(page["total"], 3)
        self.assertEqual(
            [(c["customerName"], c["totalAmount"], c["transactions"])
             for c in page["customers"]],
            [("Alice", 1500, 2), ("Bob", 500, 1), ("50%_off", 100, 1)],
        )
        self.assertEqual(page["customers"][0]["lastPaidAt"],
                         "2024-05-01T06:00:00+00:00")

        second = await leaderboard.customer_directory(
            self.gs, self.store.id, page=2, limit=1
        )
        self.assertEqual([c["customerName"] for c in second["customers"]],
                         ["Bob"])
        self.assertEqual(second["total"], 3)

        found = await leaderboard.customer_directory(
            self.gs, self.store.id, search="bO"
        )
        self.assertEqual([c["customerName"] for c in found["customers"]],
                         ["Bob"])
        # wildcards are matched literally
        found = await leaderboard.customer_directory(
            self.gs, self.store.id, search="%"
        )
        self.assertEqual([c["customerName"] for c in found["customers"]],
                         ["50%_off"])

    async def test_list_orders_filters(self) -> None:
        alice = await self.paid_at(
            datetime(2024, 5, 1, 12, 0, tzinfo=self.BKK), 1200, "Alice"
        )
        bob = await self.paid_at(
            datetime(2024, 5, 3, 12, 0, tzinfo=self.BKK), 500, "Bob"
        )
        pending = await self.pending_warp(name="Carol", code="DJ777")

        everything = await leaderboard.list_orders(
            self.gs, self.store.id, "Asia/Bangkok"
        )
        self.assertEqual(everything["total"], 3)
        self.assertEqual([o["id"] for o in everything["orders"]],
                         [pending.id, bob.id, alice.id])

        paid = await leaderboard.list_orders(
            self.gs, self.store.id, "Asia/Bangkok", status=PAID
        )
        self.assertEqual({o["id"] for o in paid["orders"]},
                         {alice.id, bob.id})

        by_code = await leaderboard.list_orders(
            self.gs, self.store.id, "Asia/Bangkok", search="dj777"
        )
        self.assertEqual([o["id"] for o in by_code["orders"]], [pending.id])
        by_id = await leaderboard.list_orders(
            self.gs, self.store.id, "Asia/Bangkok", search=bob.id
        )
        self.assertEqual([o["id"] for o in by_id["orders"]], [bob.id])

        first_days = await leaderboard.list_orders(
            self.gs, self.store.id, "Asia/Bangkok",
            date_from="2024-05-01", date_to="2024-05-02",
        )
        self.assertEqual([o["id"] for o in first_days["orders"]], [alice.id])

        with self.assertRaises(InvalidRequest):
            await leaderboard.list_orders(
                self.gs, self.store.id, "Asia/Bangkok", status="refunded"
            )
