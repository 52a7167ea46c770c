"""
AuditChain — FastAPI application factory.

Application lifecycle:
  startup  → configure logging, run DB migrations, wire the activity store,
             appender and verifier onto ``app.state``
  shutdown → dispose DB engine pool
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import sqlalchemy as sa
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditchain.api.v1.router import build_router
from auditchain.config.logging_config import configure_logging
from auditchain.config.settings import Environment, Settings, get_settings
from auditchain.core.errors import AppError
from auditchain.core.middleware import (
    CorrelationIDMiddleware,
    SecurityHeadersMiddleware,
    app_error_handler,
    rate_limit_handler,
    unhandled_exception_handler,
)
from auditchain.core.security import EntrySigner
from auditchain.services.activity.appender import ChainAppender
from auditchain.services.activity.facade import ActivityLogger
from auditchain.services.activity.sql_store import SqlAlchemyEntryStore
from auditchain.services.activity.verifier import ChainVerifier

_log = structlog.get_logger(__name__)

_BACKEND_DIR = Path(__file__).resolve().parent.parent


def _create_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_default],
        enabled=settings.rate_limit_enabled,
    )


def run_migrations(settings: Settings) -> None:
    """Upgrade the configured database to the latest Alembic revision."""
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(_BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(_BACKEND_DIR / "alembic"))
    cfg.attributes["db_url"] = settings.database_url
    cfg.attributes["configure_logger"] = False
    command.upgrade(cfg, "head")
    _log.info("migrations_applied")


def wire_activity(
    app: FastAPI, settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    """Build the activity log components and attach them to ``app.state``."""
    signer = EntrySigner.from_settings(settings)
    store = SqlAlchemyEntryStore(session_factory)
    appender = ChainAppender(
        store,
        signer=signer,
        lock_timeout=settings.activity_append_lock_timeout_seconds,
    )
    app.state.session_factory = session_factory
    app.state.entry_store = store
    app.state.chain_appender = appender
    app.state.activity_logger = ActivityLogger(
        appender, login_failure_limit=settings.activity_login_failure_limit
    )
    app.state.chain_verifier = ChainVerifier(
        store,
        signer=signer,
        require_signatures=settings.activity_require_signatures,
        chunk_size=settings.activity_verify_chunk_size,
        timeout_seconds=settings.activity_verify_timeout_seconds,
    )
    if signer is None:
        _log.warning("activity_signing_disabled")


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """
    Application factory. Returns a configured FastAPI instance.

    When ``session_factory`` is given the activity components are wired
    immediately and startup neither migrates nor opens its own engine.
    """
    settings = settings or get_settings()
    is_production = settings.environment == Environment.PRODUCTION

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(log_level=settings.log_level.value, json_logs=settings.log_json)
        _log.info(
            "auditchain_starting",
            version=settings.app_version,
            environment=settings.environment.value,
        )
        engine = None
        if session_factory is None:
            from auditchain.db.session import build_session_factory, create_engine

            if settings.run_migrations_on_startup:
                run_migrations(settings)
            engine = create_engine(settings)
            wire_activity(app, settings, build_session_factory(engine))
        _log.info("auditchain_ready", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            if engine is not None:
                from auditchain.db.session import dispose_engine

                await dispose_engine()
            _log.info("auditchain_shutdown")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Tamper-evident activity log with hash-chain verification.",
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if session_factory is not None:
        wire_activity(app, settings, session_factory)

    # ── Rate Limiting ─────────────────────────────────────────────────── #
    limiter = _create_limiter(settings)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)  # type: ignore[arg-type]
    app.add_middleware(SlowAPIMiddleware)

    # ── CORS ──────────────────────────────────────────────────────────── #
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["Authorization", "X-Correlation-ID"],
        expose_headers=["X-Correlation-ID"],
    )

    # ── Custom Middleware (applied in reverse order) ───────────────────── #
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    # ── Exception Handlers ────────────────────────────────────────────── #
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routes ────────────────────────────────────────────────────────── #
    app.include_router(build_router(limiter, settings))

    # ── Health ────────────────────────────────────────────────────────── #
    @app.get("/health", tags=["health"], summary="Health check")
    async def health() -> dict[str, object]:
        """Returns service health including database reachability."""
        db_ok = False
        factory = getattr(app.state, "session_factory", None)
        if factory is not None:
            try:
                async with factory() as db:
                    await db.execute(sa.text("SELECT 1"))
                db_ok = True
            except SQLAlchemyError as exc:
                _log.warning("health_db_unreachable", error=str(exc))

        return {
            "status": "healthy" if db_ok else "degraded",
            "database": "ok" if db_ok else "unavailable",
            "signing": "enabled" if settings.activity_signing_key else "disabled",
            "version": settings.app_version,
        }

    # ── Metrics (Prometheus) ──────────────────────────────────────────── #
    @app.get("/metrics", tags=["observability"], summary="Prometheus metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
