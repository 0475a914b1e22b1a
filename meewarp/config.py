from __future__ import annotations
import os
from dataclasses import dataclass, replace
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(raw: Optional[str]) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    return int(raw)


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_DATABASE_URL = "sqlite:///./meewarp.db"
DEFAULT_CURRENCY = "THB"
MIN_SONG_REQUEST_AMOUNT = 50


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    # None: same as db_pool_size
    db_gate_limit: Optional[int] = None

    # 'sql' | 'redis'
    events_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64

    # 'mock' | 'stripe'
    payment_provider: str = "mock"
    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/api/v1/payments/webhook"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_success_url: str = ""
    stripe_cancel_url: str = ""
    public_base_url: str = "http://localhost:5173"

    admin_email: str = "admin@warp.dev"
    admin_password: str = "supasecret"
    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_seconds: int = 3600
    login_rate_limit_max: int = 10
    login_rate_limit_window_seconds: int = 5 * 60

    poll_enabled: bool = True
    poll_interval_seconds: float = 30.0
    poll_min_age_seconds: float = 15.0
    poll_batch_size: int = 50
    pending_expire_seconds: float = 30 * 60
    provider_timeout_seconds: float = 5.0

    song_display_window_seconds: float = 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ.get
        return cls(
            database_url=env("DATABASE_URL", DEFAULT_DATABASE_URL),
            db_pool_size=int(env("DB_POOL_SIZE", "10")),
            db_max_overflow=int(env("DB_MAX_OVERFLOW", "10")),
            db_pool_timeout=int(env("DB_POOL_TIMEOUT", "30")),
            db_gate_limit=_env_int(env("DB_GATE_LIMIT")),
            events_backend=env("EVENTS_BACKEND", "sql").lower(),
            redis_url=env("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(env("REDIS_MAX_CONN", "64")),
            payment_provider=env("PAYMENT_PROVIDER", "mock").lower(),
            mock_secret=env("MOCK_SECRET", "supersecret"),
            mock_webhook_url=env(
                "MOCK_WEBHOOK_URL",
                "http://localhost:8000/api/v1/payments/webhook"
            ),
            stripe_secret_key=env("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=env("STRIPE_WEBHOOK_SECRET", ""),
            stripe_success_url=env("STRIPE_SUCCESS_URL", ""),
            stripe_cancel_url=env("STRIPE_CANCEL_URL", ""),
            public_base_url=env("PUBLIC_BASE_URL", "http://localhost:5173"),
            admin_email=env("ADMIN_EMAIL", "admin@warp.dev"),
            admin_password=env("ADMIN_PASSWORD", "supasecret"),
            jwt_secret=env("ADMIN_JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_seconds=int(env("ADMIN_JWT_EXPIRES_SECONDS", "3600")),
            login_rate_limit_max=int(env("LOGIN_RATE_LIMIT_MAX", "10")),
            login_rate_limit_window_seconds=int(
                env("LOGIN_RATE_LIMIT_WINDOW_SECONDS", str(5 * 60))
            ),
            poll_enabled=_env_bool("POLL_ENABLED", True),
            poll_interval_seconds=float(env("POLL_INTERVAL_SECONDS", "30")),
            poll_min_age_seconds=float(env("POLL_MIN_AGE_SECONDS", "15")),
            poll_batch_size=int(env("POLL_BATCH_SIZE", "50")),
            pending_expire_seconds=float(
                env("PENDING_EXPIRE_SECONDS", str(30 * 60))
            ),
            provider_timeout_seconds=float(
                env("PROVIDER_TIMEOUT_SECONDS", "5")
            ),
            song_display_window_seconds=float(
                env("SONG_DISPLAY_WINDOW_SECONDS", "60")
            ),
            log_level=env("LOG_LEVEL", "INFO").upper(),
        )

    def with_overrides(self, **kw) -> "Settings":
        return replace(self, **kw)
