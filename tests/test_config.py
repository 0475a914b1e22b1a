from __future__ import annotations
import os
import unittest
from unittest import mock

from meewarp.config import Settings
from meewarp.infra.sql import async_url, make_async_engine


class SettingsTests(unittest.TestCase):
    def test_db_pool_from_env(self) -> None:
        env = {"DB_POOL_SIZE": "4", "DB_MAX_OVERFLOW": "2",
               "DB_POOL_TIMEOUT": "7", "DB_GATE_LIMIT": "3"}
        with mock.patch.dict(os.environ, env):
            settings = Settings.from_env()
        self.assertEqual(settings.db_pool_size, 4)
        self.assertEqual(settings.db_max_overflow, 2)
        self.assertEqual(settings.db_pool_timeout, 7)
        self.assertEqual(settings.db_gate_limit, 3)

    def test_gate_limit_defaults_to_unset(self) -> None:
        with mock.patch.dict(os.environ, {"DB_GATE_LIMIT": ""}):
            self.assertIsNone(Settings.from_env().db_gate_limit)
        self.assertIsNone(Settings().db_gate_limit)


class EngineTests(unittest.IsolatedAsyncioTestCase):
    def test_async_url(self) -> None:
        self.assertEqual(async_url("sqlite:///./x.db"),
                         "sqlite+aiosqlite:///./x.db")
        self.assertEqual(async_url("postgres://u@h/db"),
                         "postgresql+asyncpg://u@h/db")
        self.assertEqual(async_url("postgresql+asyncpg://u@h/db"),
                         "postgresql+asyncpg://u@h/db")

    async def test_gate_follows_settings(self) -> None:
        db = make_async_engine("sqlite:///:memory:", pool_size=4)
        self.assertEqual(db.gate._value, 4)
        await db.engine.dispose()

        db = make_async_engine("sqlite:///:memory:", pool_size=4,
                               gate_limit=2)
        self.assertEqual(db.gate._value, 2)
        async with db.gated():
            self.assertEqual(db.gate._value, 1)
        self.assertEqual(db.gate._value, 2)
        await db.engine.dispose()
