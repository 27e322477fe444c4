from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from propdesk.apps.api.errors import (
    http_exception_handler,
    propdesk_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from propdesk.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from propdesk.apps.api.routes.dashboard import router as dashboard_router
from propdesk.apps.api.routes.health import router as health_router
from propdesk.apps.api.routes.leases import router as leases_router
from propdesk.apps.api.routes.maintenance import router as maintenance_router
from propdesk.core.config import get_settings
from propdesk.core.errors import PropdeskError
from propdesk.core.logging import configure_logging
from propdesk.persistence.db import dispose_engine, get_data_client
from propdesk.services.schema_probe import SchemaProbe, resolve_capabilities


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Record which optional lease columns this deployment carries.
    capabilities = await resolve_capabilities(SchemaProbe(get_data_client()))
    logger.info(
        "schema_capabilities deposit_column=%s notes=%s is_draft=%s status=%s probed=%s",
        capabilities.deposit_column,
        capabilities.has_notes,
        capabilities.has_is_draft,
        capabilities.has_status,
        capabilities.probed,
    )
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Propdesk API", version=API_VERSION, lifespan=lifespan, docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(PropdeskError)
    async def _propdesk_exception_handler(request: Request, exc: PropdeskError):
        return await propdesk_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(leases_router, prefix=f"/{API_VERSION}")
    app.include_router(maintenance_router, prefix=f"/{API_VERSION}")
    app.include_router(dashboard_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title=f"{settings.app_name} API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
