"""
Entry point for the ClickStudio RBAC server.

This module creates the FastAPI application, wires the process-wide
components onto ``app.state`` and registers the startup and shutdown
hooks. Run with:

    uvicorn clickstudio.main:app --reload

"""

from __future__ import annotations

import logging
import threading
import uuid

from fastapi import FastAPI, Request

from .api import api_router
from .core.config import APP_VERSION, Settings, get_settings, validate_runtime_settings
from .core.db import build_engine, build_session_factory
from .core.errors import PoolError, log_exception
from .core.exception_handlers import setup_exception_handlers
from .core.logging_config import setup_logging
from .core.security import TokenSigner
from .core.vault import CredentialVault
from .models import Base
from .scripts.run_migrations import run_migrations_to_head
from .services.audit import AuditLogger
from .services.authenticator import Authenticator
from .services.client_manager import ClientFactory, ClientManager, clickhouse_client_factory, run_idle_cleanup
from .services.rbac_seed import seed_admin_user, seed_system_roles

REQUEST_ID_HEADER = "X-Request-ID"


def create_app(settings: Settings | None = None, client_factory: ClientFactory | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    validate_runtime_settings(settings)

    app = FastAPI(title="ClickStudio RBAC", version=APP_VERSION)
    app.include_router(api_router)
    setup_exception_handlers(app, hide_internal_messages=settings.is_prod)

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    audit = AuditLogger(session_factory)
    signer = TokenSigner(
        settings.signing_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        access_expiry=settings.jwt_access_expiry,
        refresh_expiry=settings.jwt_refresh_expiry,
    )
    factory = client_factory or clickhouse_client_factory(
        request_timeout_sec=settings.clickhouse_request_timeout_sec,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.vault = CredentialVault.from_secret(
        settings.encryption_key,
        settings.encryption_salt,
        settings.pbkdf2_iterations,
    )
    app.state.signer = signer
    app.state.audit = audit
    app.state.authenticator = Authenticator(signer, audit)
    app.state.client_factory = factory
    app.state.clients = ClientManager(factory, idle_timeout_sec=settings.pool_idle_timeout_sec)
    app.state.pool_cleanup_stop = None
    app.state.pool_cleanup_thread = None

    @app.middleware("http")
    async def _request_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.on_event("startup")
    def _startup() -> None:
        logger = logging.getLogger("startup")
        if settings.auto_create_db:
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                if settings.is_prod:
                    raise
        if settings.auto_run_migrations:
            try:
                run_migrations_to_head(settings.database_url)
            except Exception as exc:
                log_exception(logger, "DB migrations failed", exc=exc)
                if settings.is_prod:
                    raise
        if settings.auto_seed_rbac:
            try:
                with session_factory() as db:
                    seed_system_roles(db)
                    seed_admin_user(db, settings)
            except Exception as exc:
                log_exception(logger, "Seed RBAC failed", exc=exc)
                if settings.is_prod:
                    raise
        if settings.enable_pool_cleanup:
            stop_event = threading.Event()
            thread = threading.Thread(
                target=run_idle_cleanup,
                args=(app.state.clients, stop_event, settings.pool_cleanup_interval_sec),
                daemon=True,
                name="client-pool-cleanup",
            )
            thread.start()
            app.state.pool_cleanup_stop = stop_event
            app.state.pool_cleanup_thread = thread
        logger.info("ClickStudio RBAC %s started (env=%s)", APP_VERSION, settings.app_env)

    @app.on_event("shutdown")
    def _shutdown() -> None:
        logger = logging.getLogger("shutdown")
        stop_event = getattr(app.state, "pool_cleanup_stop", None)
        if stop_event:
            stop_event.set()
        thread = getattr(app.state, "pool_cleanup_thread", None)
        if thread:
            thread.join(timeout=5)
        try:
            closed = app.state.clients.close_all()
            logger.info("Closed %d pooled ClickHouse client(s)", closed)
        except PoolError as exc:
            log_exception(logger, "Closing pooled clients failed", extra={"failures": len(exc.failures)}, exc=exc)
        engine.dispose()

    return app


app = create_app()
