from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.utils import get_openapi
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.apps.api.errors import install_exception_handlers
from notifypipe.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from notifypipe.apps.api.routes.health import router as health_router
from notifypipe.apps.api.routes.jobs import router as jobs_router
from notifypipe.apps.api.routes.ops import router as ops_router
from notifypipe.apps.api.routes.webhooks import router as webhooks_router
from notifypipe.core.config import Settings, get_settings
from notifypipe.core.logging import configure_logging
from notifypipe.persistence.db import dispose_default_engine, get_session_factory
from notifypipe.workers.notification_worker import NotificationPipeline


logger = logging.getLogger(__name__)

# Routes that authenticate by provider signature or not at all.
_PUBLIC_PATHS = {f"/{API_VERSION}/health", f"/{API_VERSION}/webhooks/sendgrid"}


def create_app(
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    pipeline: NotificationPipeline | None = None,
) -> FastAPI:
    configure_logging()
    resolved_settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Injected factories belong to the caller; only the default engine is owned here.
        owns_engine = app.state.session_factory is None
        if owns_engine:
            app.state.session_factory = get_session_factory()
        try:
            yield
        finally:
            if owns_engine:
                await dispose_default_engine()

    app = FastAPI(title=f"{resolved_settings.app_name} API", lifespan=lifespan)
    app.state.settings = resolved_settings
    app.state.session_factory = session_factory
    # A pipeline running in the same process reports queue health through the metrics route.
    app.state.pipeline = pipeline

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.info(
            "request completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    install_exception_handlers(app)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(jobs_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Mark every non-public route as bearer-authenticated in the schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
