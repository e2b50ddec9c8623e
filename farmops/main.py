from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import sentry_sdk
import structlog
from fastapi import FastAPI
from sentry_sdk.integrations.starlette import StarletteIntegration
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.middleware.cors import CORSMiddleware

from farmops.api import errors
from farmops.api.routers.bulk_operations import router as bulk_operations_router
from farmops.api.routers.bulk_requests import router as bulk_requests_router
from farmops.api.routers.healthz import router as healthz_router
from farmops.api.routers.readyz import router as readyz_router
from farmops.core.clock import Clock, SystemClock
from farmops.core.config import Settings, get_settings
from farmops.core.startup import MigrationRunner
from farmops.db import build_engine, build_session_factory
from farmops.infra.unit_of_work import InMemoryUnitOfWork, SqlAlchemyUnitOfWork, UnitOfWork
from farmops.logging import setup_logging
from farmops.middleware.request_id import request_id_middleware
from farmops.repositories.interfaces import EntityStore, PermissionChecker
from farmops.repositories.memory import (
    InMemoryEntityStore,
    InMemoryOperationStore,
    StaticPermissionChecker,
)
from farmops.repositories.sqlalchemy import SqlAlchemyEntityStore, SqlAlchemyPermissionChecker


def _init_sentry(settings: Settings) -> None:
    if not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release=settings.release,
        integrations=[StarletteIntegration()],
        traces_sample_rate=settings.sentry_traces_rate,
        send_default_pii=False,
    )


def _memory_backend() -> tuple[Callable[[], UnitOfWork], EntityStore, PermissionChecker]:
    store = InMemoryOperationStore()
    return (lambda: InMemoryUnitOfWork(store)), InMemoryEntityStore(), StaticPermissionChecker()


def _sqlalchemy_backend(
    settings: Settings, engine: AsyncEngine, clock: Clock
) -> tuple[Callable[[], UnitOfWork], EntityStore, PermissionChecker]:
    session_factory = build_session_factory(engine)
    return (
        (lambda: SqlAlchemyUnitOfWork(session_factory)),
        SqlAlchemyEntityStore(session_factory),
        SqlAlchemyPermissionChecker(
            session_factory, elevated_roles=settings.elevated_role_set, clock=clock
        ),
    )


def create_app(
    settings: Settings | None = None,
    *,
    uow_factory: Callable[[], UnitOfWork] | None = None,
    entity_store: EntityStore | None = None,
    permissions: PermissionChecker | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the API.

    Collaborators left as None are derived from ``settings.storage_backend``;
    tests pass in-memory ones directly.
    """

    settings = settings or get_settings()
    setup_logging(app_env=settings.app_env)
    _init_sentry(settings)

    clock = clock or SystemClock()
    engine: AsyncEngine | None = None
    if settings.storage_backend == "memory":
        defaults = _memory_backend()
    else:
        engine = build_engine(settings.database_url)
        defaults = _sqlalchemy_backend(settings, engine, clock)

    migrations = MigrationRunner(exit_on_failure=settings.app_env == "prod")
    if settings.storage_backend == "memory":
        migrations.mark_completed("memory_backend")
    elif not settings.run_migrations_on_startup:
        migrations.mark_completed("disabled")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if not migrations.completed:
            migrations.start()
        structlog.get_logger(__name__).info(
            "app_startup", env=settings.app_env, storage_backend=settings.storage_backend
        )
        try:
            yield
        finally:
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="Farm Bulk Operations", lifespan=lifespan)
    app.state.settings = settings
    app.state.clock = clock
    app.state.uow_factory = uow_factory or defaults[0]
    app.state.entity_store = entity_store or defaults[1]
    app.state.permissions = permissions or defaults[2]
    app.state.migrations = migrations

    app.middleware("http")(request_id_middleware)
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS", "HEAD"],
            allow_headers=["*"],
        )

    errors.install(app)
    app.include_router(bulk_requests_router)
    app.include_router(bulk_operations_router)
    app.include_router(healthz_router)
    app.include_router(readyz_router)
    return app


app = create_app()
