from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from clawkeeper.apps.api.errors import (
    clawkeeper_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from clawkeeper.apps.api.routes.credits import router as credits_router
from clawkeeper.apps.api.routes.dashboard import router as dashboard_router
from clawkeeper.apps.api.routes.events import router as events_router
from clawkeeper.apps.api.routes.health import router as health_router
from clawkeeper.apps.api.routes.scans import router as scans_router
from clawkeeper.core.config import get_settings
from clawkeeper.core.errors import ClawkeeperError
from clawkeeper.core.logging import configure_logging
from clawkeeper.persistence.db import engine
from clawkeeper.services.side_effects import drain_background_tasks


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Let in-flight diffing and alerting finish before the pool closes.
    await drain_background_tasks()
    await engine.dispose()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Clawkeeper Ingestion API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(ClawkeeperError)
    async def _clawkeeper_exception_handler(request: Request, exc: ClawkeeperError):
        return await clawkeeper_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(health_router, prefix="/v1")
    app.include_router(scans_router, prefix="/v1")
    app.include_router(events_router, prefix="/v1")
    app.include_router(credits_router, prefix="/v1")
    app.include_router(dashboard_router, prefix="/v1")
    app.state.settings = get_settings()
    return app


app = create_app()
