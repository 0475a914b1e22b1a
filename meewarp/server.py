from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from .adapters import PaymentAdapter, new_adapter
from .auth import LoginRateLimiter
from .config import Settings
from .errors import (
    CheckoutFailed, Conflict, InvalidRequest, NotFound, ProviderError,
    ProviderUnavailable,
)
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .model.db import Base
from .model.events import BACKENDS
from .poller import PendingPoller
from .routes import admin, payments, public

logger = logging.getLogger(__name__)


# ---
# startup / shutdown
# ---
async def startup(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    setup_logging(settings.log_level)
    if settings.events_backend not in BACKENDS:
        raise RuntimeError(
            f"unknown EVENTS_BACKEND {settings.events_backend!r}"
        )

    engine, SessionAsync, _, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )

    app.state.redis = None
    if settings.events_backend == "redis":
        app.state.redis = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    app.state.login_limiter = LoginRateLimiter(
        settings.login_rate_limit_max,
        settings.login_rate_limit_window_seconds,
    )

    app.state.poller = None
    if settings.poll_enabled:
        app.state.poller = PendingPoller(
            SessionAsync, gated, app.state.adapter,
            interval=settings.poll_interval_seconds,
            min_age=settings.poll_min_age_seconds,
            batch_size=settings.poll_batch_size,
            expire_after=settings.pending_expire_seconds,
            timeout=settings.provider_timeout_seconds,
        )
        app.state.poller.start()

    logger.info("=" * 50)
    logger.info("meeWarp is starting up...")
    logger.info("   - Payment provider: %s", app.state.adapter.name)
    logger.info("   - Webhook events backend: %s", settings.events_backend)
    logger.info("   - Pending poller: %s",
                "on" if settings.poll_enabled else "off")
    logger.info("=" * 50)


async def shutdown(app: FastAPI) -> None:
    poller: Optional[PendingPoller] = getattr(app.state, "poller", None)
    if poller is not None:
        await poller.stop()
        app.state.poller = None

    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None

    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None

    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup(app)
    try:
        yield
    finally:
        await shutdown(app)


# ----------------------------
# Domain errors -> HTTP
# ----------------------------
def _error(status_code: int, message: str, **extra) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code,
                          content={"message": message, **extra})


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return _error(404, str(exc) or "Not found")

    @app.exception_handler(Conflict)
    async def _conflict(request: Request, exc: Conflict):
        return _error(409, str(exc))

    @app.exception_handler(InvalidRequest)
    async def _invalid(request: Request, exc: InvalidRequest):
        return _error(400, str(exc))

    @app.exception_handler(CheckoutFailed)
    async def _checkout_failed(request: Request, exc: CheckoutFailed):
        return _error(502, "Failed to initialize payment",
                      details=str(exc), transactionId=exc.transaction_id)

    @app.exception_handler(ProviderUnavailable)
    async def _unavailable(request: Request, exc: ProviderUnavailable):
        logger.warning("%s %s: %s", request.method, request.url.path, exc)
        return _error(503, "Payment provider unavailable",
                      details=str(exc), retryable=True)

    @app.exception_handler(ProviderError)
    async def _provider(request: Request, exc: ProviderError):
        logger.warning("%s %s: %s", request.method, request.url.path, exc)
        return _error(502, "Payment provider error",
                      details=str(exc), retryable=False)


def create_app(
    settings: Optional[Settings] = None,
    adapter: Optional[PaymentAdapter] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="meeWarp",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.adapter = adapter or new_adapter(settings)
    install_error_handlers(app)
    app.include_router(public.router)
    app.include_router(admin.router)
    app.include_router(payments.router)
    return app


app = create_app()
