from __future__ import annotations

import logging
import os
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.db.factory import create_database_from_env
from app.errors import ApiError
from app.routes import availability_requests, customers, orders, products
from app.routes._deps import error_response, request_id_from_request, trace_id_from_request
from app.runtime_profile import trust_tenant_header
from app.schemas import success_envelope
from app.security import JwtSecurityConfig, authenticate_request, redact_sensitive
from app.services.notifications import Notifier, create_notifier_from_env
from app.services.orders import OrderLinks
from app.services.registry import build_services
from app.tenancy.middleware import install_tenant_rls_middleware
from app.tenancy.resolver import TENANT_HEADER, parse_tenant_id

logger = logging.getLogger(__name__)

SECURITY_CODES = frozenset({"AUTH_UNAUTHORIZED", "TENANT_SCOPE_VIOLATION"})


def _api_error_response(request: Request, exc: ApiError):
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
    )


def create_app(*, database: Any | None = None, notifier: Notifier | None = None) -> FastAPI:
    app = FastAPI(title="Storefront Orders API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    database = database if database is not None else create_database_from_env()
    notifier = notifier if notifier is not None else create_notifier_from_env()
    app.state.database = database
    app.state.services = build_services(database, notifier, links=OrderLinks.from_env())

    def _log_security_block(request: Request, exc: ApiError) -> None:
        headers_obj = dict(request.headers.items())
        headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
        logger.warning(
            "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
            exc.code,
            request.url.path,
            trace_id_from_request(request),
            exc.message,
            headers_payload,
        )

    # Registered first so it runs inside add_trace_id, after the caller is authenticated.
    install_tenant_rls_middleware(app, database=database, trust_tenant_header=trust_tenant_header())

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth = None
        try:
            auth_ctx = authenticate_request(authorization=request.headers.get("Authorization"), cfg=security_cfg)
            request.state.auth = auth_ctx
            if auth_ctx is not None:
                identity_tenant = parse_tenant_id(auth_ctx.tenant_id)
                header_tenant = parse_tenant_id(request.headers.get(TENANT_HEADER))
                if identity_tenant is not None and header_tenant is not None and header_tenant != identity_tenant:
                    raise ApiError(
                        code="TENANT_SCOPE_VIOLATION",
                        message="tenant mismatch",
                        error_class="security_sensitive",
                        retryable=False,
                        http_status=403,
                    )
            response = await call_next(request)
        except ApiError as exc:
            if exc.code in SECURITY_CODES:
                _log_security_block(request, exc)
            response = _api_error_response(request, exc)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    # Outermost: preflights skip tenant resolution and error responses still get CORS headers.
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_CODES:
            _log_security_block(request, exc)
        return _api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(products.router)
    app.include_router(customers.router)
    app.include_router(orders.router)
    app.include_router(availability_requests.router)
    return app


app = create_app()
