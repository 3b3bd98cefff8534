"""Request-scoped tenant database context.

The RLS middleware binds ``{tenant_id, session}`` for the duration of one
downstream call. Data access looks here first and only falls back to opening
its own transaction when nothing is bound.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

from app.errors import ApiError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantDbContext:
    tenant_id: int
    session: Any


_current_context: ContextVar[TenantDbContext | None] = ContextVar("tenant_db_context", default=None)


@contextmanager
def bind_tenant_context(*, tenant_id: int, session: Any) -> Iterator[TenantDbContext]:
    ctx = TenantDbContext(tenant_id=tenant_id, session=session)
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def current_tenant_context() -> TenantDbContext | None:
    return _current_context.get()


def current_tenant_id() -> int | None:
    ctx = _current_context.get()
    return ctx.tenant_id if ctx is not None else None


def current_session() -> Any | None:
    ctx = _current_context.get()
    return ctx.session if ctx is not None else None


@contextmanager
def session_scope(database: Any, *, tenant_id: int | None = None) -> Iterator[Any]:
    """Yield the request-bound session, or run the block in a dedicated transaction.

    A bound session is never committed here; its owner (the RLS middleware)
    decides. A dedicated transaction is committed on success and rolled back
    on any exception before the session is released. While it runs it is bound
    like a request session, so nested calls join it instead of opening another.
    """
    ctx = _current_context.get()
    if ctx is not None:
        if tenant_id is not None and tenant_id != ctx.tenant_id:
            raise ApiError(
                code="TENANT_SCOPE_VIOLATION",
                message="tenant mismatch",
                error_class="security_sensitive",
                retryable=False,
                http_status=403,
            )
        yield ctx.session
        return

    session = database.open_session()
    try:
        session.begin()
        if tenant_id is None:
            yield session
        else:
            session.set_tenant(tenant_id)
            with bind_tenant_context(tenant_id=tenant_id, session=session):
                yield session
        session.commit()
    except BaseException:
        if session.in_transaction:
            logger.debug("session_scope_rollback tenant_id=%s", tenant_id)
            session.rollback()
        raise
    finally:
        session.close()
