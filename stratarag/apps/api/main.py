from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from stratarag.apps.api.errors import install_error_handlers
from stratarag.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from stratarag.apps.api.routes.documents import router as documents_router
from stratarag.apps.api.routes.health import router as health_router
from stratarag.apps.api.routes.ingestion import router as ingestion_router
from stratarag.apps.api.routes.profiles import router as profiles_router
from stratarag.apps.api.routes.query import router as query_router
from stratarag.core.config import get_settings
from stratarag.core.logging import configure_logging


_TITLE = "StrataRAG API"
_PREFIX = f"/{API_VERSION}"
_PUBLIC_PATHS = frozenset({f"{_PREFIX}/health"})
_CALLBACK_PATH = f"{_PREFIX}/ingestion/callback"


async def _request_id_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers.setdefault(REQUEST_ID_HEADER, request_id)
    return response


def _build_openapi(app: FastAPI) -> dict[str, Any]:
    # Callers authenticate by identity header; the vectorizer callback by shared secret.
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(title=_TITLE, version=API_VERSION, routes=app.routes)
    schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
    schemes["CallerId"] = {"type": "apiKey", "in": "header", "name": get_settings().auth_caller_header}
    schemes["CallbackSecret"] = {"type": "apiKey", "in": "header", "name": "X-Ingest-Callback-Secret"}
    for path, operations in schema.get("paths", {}).items():
        if path in _PUBLIC_PATHS:
            continue
        scheme = "CallbackSecret" if path == _CALLBACK_PATH else "CallerId"
        for operation in operations.values():
            operation.setdefault("security", [{scheme: []}])
    app.openapi_schema = schema
    return schema


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=_TITLE, docs_url=None, redoc_url=None, openapi_url=None)
    app.middleware("http")(_request_id_middleware)
    install_error_handlers(app)

    for router in (health_router, ingestion_router, documents_router, profiles_router, query_router):
        app.include_router(router, prefix=_PREFIX)

    @app.get(f"{_PREFIX}/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(f"{_PREFIX}/docs", include_in_schema=False)
    async def swagger_ui() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=f"{_PREFIX}/openapi.json", title=f"{_TITLE} {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=f"{_PREFIX}/docs")

    app.openapi = lambda: _build_openapi(app)
    return app


app = create_app()
