from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from accessreview.apps.api.errors import (
    access_review_exception_handler,
    database_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from accessreview.apps.api.response import API_VERSION
from accessreview.apps.api.routes.campaigns import router as campaigns_router
from accessreview.apps.api.routes.decisions import router as decisions_router
from accessreview.apps.api.routes.health import router as health_router
from accessreview.apps.api.routes.notifications import router as notifications_router
from accessreview.apps.api.routes.ops import router as ops_router
from accessreview.apps.api.routes.schedules import router as schedules_router
from accessreview.core.config import get_settings
from accessreview.core.errors import AccessReviewError
from accessreview.core.logging import configure_logging


PUBLIC_PATHS = frozenset({f"/{API_VERSION}/health"})

# FastAPI's HTTPException subclasses Starlette's, so one handler covers both.
_EXCEPTION_HANDLERS = (
    (AccessReviewError, access_review_exception_handler),
    (SQLAlchemyError, database_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (StarletteHTTPException, http_exception_handler),
    (Exception, unhandled_exception_handler),
)

_ROUTERS = (
    health_router,
    campaigns_router,
    decisions_router,
    schedules_router,
    notifications_router,
    ops_router,
)


def _install_openapi(app: FastAPI, title: str) -> None:
    def build_schema() -> dict:
        # Every route except health expects the gateway's X-User-Id header.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=title, version=API_VERSION, routes=app.routes)
        schema.setdefault("components", {}).setdefault("securitySchemes", {})["UserIdHeader"] = {
            "type": "apiKey",
            "in": "header",
            "name": "X-User-Id",
        }
        for path, operations in schema.get("paths", {}).items():
            if path in PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"UserIdHeader": []}])
        app.openapi_schema = schema
        return schema

    app.openapi = build_schema


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title=f"{settings.app_name} API",
        docs_url=f"/{API_VERSION}/docs",
        openapi_url=f"/{API_VERSION}/openapi.json",
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):  # type: ignore[override]
        # Echo the caller's X-Request-Id so gateway and service logs line up.
        request.state.request_id = request.headers.get("X-Request-Id") or str(uuid4())
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request.state.request_id)
        return response

    for exc_class, handler in _EXCEPTION_HANDLERS:
        app.add_exception_handler(exc_class, handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")

    _install_openapi(app, f"{settings.app_name} API")
    return app


app = create_app()
