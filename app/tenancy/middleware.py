from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from starlette.concurrency import run_in_threadpool

from app.tenancy.context import bind_tenant_context
from app.tenancy.resolver import TenantRequest, requires_tenant, resolve_tenant

logger = logging.getLogger(__name__)


def tenant_request_from_http(request: Request) -> TenantRequest:
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1").split("?", 1)[0] if raw_path else request.url.path
    auth = getattr(request.state, "auth", None)
    query = request.query_params
    return TenantRequest(
        method=request.method,
        path=path,
        identity_tenant_id=getattr(auth, "tenant_id", None),
        headers=request.headers,
        query_tokens=(*query.getlist("token"), *query.getlist("token[]")),
    )


class TenantRlsWrapper:
    """One transaction per tenant-scoped request.

    The session is opened, the tenant resolved and ``app.tenant_id`` set before
    the handler runs; the handler sees the session through the context carrier.
    Error responses rendered by the in-app exception handlers roll back just
    like exceptions do.
    """

    def __init__(self, database: Any, *, trust_tenant_header: bool = True) -> None:
        self._database = database
        self._trust_tenant_header = trust_tenant_header

    async def __call__(self, request: Request, call_next):
        tenant_request = tenant_request_from_http(request)
        if not requires_tenant(tenant_request.path):
            return await call_next(request)

        session = await run_in_threadpool(self._database.open_session)
        try:
            await run_in_threadpool(session.begin)
            resolution = await run_in_threadpool(
                resolve_tenant,
                tenant_request,
                session,
                trust_tenant_header=self._trust_tenant_header,
            )
            if resolution.tracking_tokens is not None:
                request.state.tracking_tokens = list(resolution.tracking_tokens)
            request.state.tenant_id = resolution.tenant_id

            if resolution.tenant_id is None:
                response = await call_next(request)
            else:
                await run_in_threadpool(session.set_tenant, resolution.tenant_id)
                with bind_tenant_context(tenant_id=resolution.tenant_id, session=session):
                    response = await call_next(request)

            if response.status_code >= 400:
                logger.info(
                    "tenant_rls_rollback path=%s status=%s tenant_id=%s",
                    request.url.path,
                    response.status_code,
                    resolution.tenant_id,
                )
                await run_in_threadpool(session.rollback)
            else:
                await run_in_threadpool(session.commit)
            return response
        except BaseException as exc:
            if session.in_transaction:
                logger.warning("tenant_rls_rollback path=%s error=%s", request.url.path, type(exc).__name__)
                await run_in_threadpool(session.rollback)
            raise
        finally:
            await run_in_threadpool(session.close)


def install_tenant_rls_middleware(app: FastAPI, *, database: Any, trust_tenant_header: bool = True) -> TenantRlsWrapper:
    wrapper = TenantRlsWrapper(database, trust_tenant_header=trust_tenant_header)
    app.middleware("http")(wrapper)
    return wrapper
