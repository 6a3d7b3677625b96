from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from licencegate.apps.api.errors import (
    concurrency_conflict_exception_handler,
    database_exception_handler,
    evaluation_timeout_exception_handler,
    http_exception_handler,
    not_found_exception_handler,
    starlette_http_exception_handler,
    structural_validation_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from licencegate.apps.api.response import API_VERSION
from licencegate.apps.api.routes.health import router as health_router
from licencegate.apps.api.routes.reclassifications import router as reclassifications_router
from licencegate.apps.api.routes.records import router as records_router
from licencegate.apps.api.routes.transactions import router as transactions_router
from licencegate.apps.api.routes.webhooks import router as webhooks_router
from licencegate.core.config import get_settings
from licencegate.core.errors import (
    ConcurrencyConflictError,
    DatabaseError,
    EvaluationTimeoutError,
    NotFoundError,
    StructuralValidationError,
)
from licencegate.core.logging import configure_logging
from licencegate.persistence.store import ComplianceStore
from licencegate.services.notifications.dispatcher import NotificationDispatcher
from licencegate.services.overrides import OverrideWorkflow
from licencegate.services.reclassification import ReclassificationService
from licencegate.services.records import RecordService
from licencegate.services.validation import ValidationService


logger = logging.getLogger(__name__)


def _default_store() -> ComplianceStore:
    # Served deployments default to the PostgreSQL-backed store.
    from licencegate.persistence.db import SessionLocal
    from licencegate.persistence.sql_store import SqlComplianceStore

    return SqlComplianceStore(SessionLocal)


def create_app(
    store: ComplianceStore | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="LicenceGate API")

    store = store or _default_store()
    dispatcher = dispatcher or NotificationDispatcher(store)
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.validation = ValidationService(store, dispatcher)
    app.state.overrides = OverrideWorkflow(store, dispatcher)
    app.state.records = RecordService(store)
    app.state.reclassifications = ReclassificationService(store, dispatcher)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
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

    @app.exception_handler(NotFoundError)
    async def _not_found_exception_handler(request: Request, exc: NotFoundError):
        return await not_found_exception_handler(request, exc)

    @app.exception_handler(ConcurrencyConflictError)
    async def _concurrency_conflict_exception_handler(request: Request, exc: ConcurrencyConflictError):
        return await concurrency_conflict_exception_handler(request, exc)

    @app.exception_handler(StructuralValidationError)
    async def _structural_validation_exception_handler(request: Request, exc: StructuralValidationError):
        return await structural_validation_exception_handler(request, exc)

    @app.exception_handler(EvaluationTimeoutError)
    async def _evaluation_timeout_exception_handler(request: Request, exc: EvaluationTimeoutError):
        return await evaluation_timeout_exception_handler(request, exc)

    @app.exception_handler(DatabaseError)
    async def _database_exception_handler(request: Request, exc: DatabaseError):
        return await database_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(transactions_router, prefix=f"/{API_VERSION}")
    app.include_router(records_router, prefix=f"/{API_VERSION}")
    app.include_router(reclassifications_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="LicenceGate API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Add version metadata and a server list to the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="LicenceGate API",
            version=API_VERSION,
            routes=app.routes,
            description=f"{settings.app_name}: pre-shipment compliance validation for controlled substances.",
        )
        schema["servers"] = [{"url": "http://localhost:8000"}]
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
