from __future__ import annotations

import re
from typing import Any

from app.errors import not_found, validation_error
from app.tenancy.context import session_scope
from app.tenancy.resolver import RESERVED_PUBLIC_ORDER_PATHS

_SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def normalize_slug(raw: str) -> str:
    slug = raw.strip().lower()
    if not _SLUG_PATTERN.fullmatch(slug):
        raise validation_error(f"invalid tenant slug: {raw!r}")
    if slug in RESERVED_PUBLIC_ORDER_PATHS:
        raise validation_error(f"tenant slug is reserved: {slug}")
    return slug


class TenantService:
    """Merchant accounts. The tenants table itself is not row-filtered."""

    def __init__(self, database: Any) -> None:
        self._database = database

    def register(self, *, name: str, slug: str, phone: str) -> dict[str, Any]:
        with session_scope(self._database) as session:
            return session.repositories.tenants.create(name=name.strip(), slug=normalize_slug(slug), phone=phone.strip())

    def get(self, tenant_id: int) -> dict[str, Any]:
        with session_scope(self._database) as session:
            tenant = session.repositories.tenants.get(tenant_id=tenant_id)
        if tenant is None:
            raise not_found("TENANT_NOT_FOUND", f"tenant {tenant_id} not found")
        return tenant
