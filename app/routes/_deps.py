from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.errors import tenant_unresolved
from app.schemas import error_envelope, success_envelope
from app.services.registry import Services
from app.tenancy.context import current_tenant_id
from app.tenancy.resolver import normalize_tracking_tokens


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def services_from_request(request: Request) -> Services:
    return request.app.state.services


def tenant_id_from_request(request: Request) -> int:
    """Tenant bound by the RLS middleware for this request."""
    tenant_id = current_tenant_id()
    if tenant_id is None:
        raise tenant_unresolved()
    return tenant_id


def tracking_tokens_from_request(request: Request) -> list[str]:
    narrowed = getattr(request.state, "tracking_tokens", None)
    if narrowed is not None:
        return list(narrowed)
    query = request.query_params
    return list(normalize_tracking_tokens([*query.getlist("token"), *query.getlist("token[]")]))


def ok_response(request: Request, data: Any, *, status_code: int = 200, message: str = "ok") -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(success_envelope(data, trace_id_from_request(request), message)),
    )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
