from __future__ import annotations
import unittest

from meewarp.auth import LoginRateLimiter


class LoginRateLimiterTests(unittest.TestCase):
    def test_blocks_after_max_attempts(self) -> None:
        limiter = LoginRateLimiter(2, 60)
        self.assertTrue(limiter.hit("10.0.0.1", now=1000))
        self.assertTrue(limiter.hit("10.0.0.1", now=1001))
        with self.assertLogs("meewarp.auth", level="WARNING"):
            self.assertFalse(limiter.hit("10.0.0.1", now=1002))
        self.assertTrue(limiter.hit("10.0.0.2", now=1002))
        # next window
        self.assertTrue(limiter.hit("10.0.0.1", now=1061))

    def test_reset(self) -> None:
        limiter = LoginRateLimiter(1, 60)
        limiter.hit("10.0.0.1", now=1000)
        limiter.reset("10.0.0.1")
        self.assertTrue(limiter.hit("10.0.0.1", now=1001))

    def test_expired_keys_are_dropped(self) -> None:
        limiter = LoginRateLimiter(5, 60)
        for i in range(100):
            limiter.hit(f"10.0.1.{i}", now=1000 + i * 0.1)
        self.assertEqual(len(limiter._hits), 100)

        limiter.hit("10.0.2.1", now=1200)
        self.assertEqual(set(limiter._hits), {"10.0.2.1"})

    def test_live_keys_survive_pruning(self) -> None:
        limiter = LoginRateLimiter(5, 60)
        limiter.hit("old", now=1000)
        limiter.hit("recent", now=1050)
        limiter.hit("new", now=1070)
        self.assertEqual(set(limiter._hits), {"recent", "new"})
        self.assertEqual(limiter._hits["recent"], (1050, 1))
