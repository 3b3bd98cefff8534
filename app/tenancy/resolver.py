"""Tenant resolution for inbound requests.

Precedence, highest first: the authenticated identity, the ``x-tenant-id``
header (trusted internal callers), then the public route rules below. Every
rule is a ``(name, predicate, resolve)`` triple over the decoded path segments
so the table can be tested without an HTTP stack.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import unquote

from app.errors import not_found, tenant_ambiguous, tenant_unresolved

logger = logging.getLogger(__name__)

TENANT_SCOPED_PREFIXES: tuple[str, ...] = ("/products", "/orders", "/customers", "/availability-requests")
RESERVED_PUBLIC_ORDER_PATHS: frozenset[str] = frozenset({"day-close", "tracking"})
TENANT_HEADER = "x-tenant-id"


class TenantLookup(Protocol):
    def resolve_tenant_id_by_slug(self, slug: str) -> int | None: ...

    def resolve_tenant_id_by_order_token(self, token: str) -> int | None: ...


@dataclass(frozen=True)
class TenantRequest:
    method: str
    path: str
    identity_tenant_id: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    query_tokens: tuple[str, ...] = ()


@dataclass(frozen=True)
class TenantResolution:
    """``tenant_id`` is None when isolation does not apply to the request.

    ``tracking_tokens`` is only set by the batch tracking rule and holds the
    tokens the handler may still look up.
    """

    tenant_id: int | None
    source: str
    tracking_tokens: tuple[str, ...] | None = None

    @property
    def isolated(self) -> bool:
        return self.tenant_id is not None


NO_TENANT = TenantResolution(tenant_id=None, source="none")


def parse_tenant_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        raw = value.strip()
        if raw.isdigit():
            parsed = int(raw)
            return parsed if parsed > 0 else None
    return None


def safe_decode(segment: str) -> str:
    """Percent-decode one segment; malformed input is returned untouched."""
    try:
        return unquote(segment, errors="strict")
    except (UnicodeDecodeError, ValueError):
        return segment


def path_parts(path: str) -> list[str]:
    return [safe_decode(part) for part in path.split("/") if part]


def requires_tenant(path: str) -> bool:
    """Prefix match on the decoded path, so raw and decoded forms of a request agree."""
    decoded = "/" + "/".join(path_parts(path))
    return any(decoded == prefix or decoded.startswith(prefix + "/") for prefix in TENANT_SCOPED_PREFIXES)


def normalize_tracking_tokens(values: Iterable[Any]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        if not isinstance(value, str):
            continue
        token = safe_decode(value.strip())
        if token:
            seen.setdefault(token, None)
    return tuple(seen)


def _resolve_slug(slug: str, lookup: TenantLookup) -> TenantResolution:
    normalized = safe_decode(slug)
    tenant_id = parse_tenant_id(lookup.resolve_tenant_id_by_slug(normalized))
    if tenant_id is None:
        raise not_found("TENANT_NOT_FOUND", f"tenant with slug {normalized} not found")
    return TenantResolution(tenant_id=tenant_id, source="slug")


def _is_products_public(method: str, parts: Sequence[str]) -> bool:
    return len(parts) >= 3 and parts[0] == "products" and parts[1] == "public"


def _is_availability_public(method: str, parts: Sequence[str]) -> bool:
    return len(parts) >= 3 and parts[0] == "availability-requests" and parts[1] == "public"


def _is_public_order_create(method: str, parts: Sequence[str]) -> bool:
    if method.upper() != "POST" or len(parts) != 2 or parts[0] != "orders":
        return False
    return parts[1] not in RESERVED_PUBLIC_ORDER_PATHS


def _is_tracking(method: str, parts: Sequence[str]) -> bool:
    return len(parts) >= 3 and parts[0] == "orders" and parts[1] == "tracking"


def _is_tracking_batch(method: str, parts: Sequence[str]) -> bool:
    return len(parts) == 2 and parts[0] == "orders" and parts[1] == "tracking"


def _resolve_public_slug(request: TenantRequest, parts: Sequence[str], lookup: TenantLookup) -> TenantResolution:
    return _resolve_slug(parts[2], lookup)


def _resolve_order_slug(request: TenantRequest, parts: Sequence[str], lookup: TenantLookup) -> TenantResolution:
    return _resolve_slug(parts[1], lookup)


def _resolve_tracking(request: TenantRequest, parts: Sequence[str], lookup: TenantLookup) -> TenantResolution:
    token = parts[2]
    tenant_id = parse_tenant_id(lookup.resolve_tenant_id_by_order_token(token))
    if tenant_id is None:
        raise not_found("ORDER_NOT_FOUND", "order not found for tracking token")
    return TenantResolution(tenant_id=tenant_id, source="order_token")


def _resolve_tracking_batch(
    request: TenantRequest, parts: Sequence[str], lookup: TenantLookup
) -> TenantResolution:
    tokens = normalize_tracking_tokens(request.query_tokens)
    if not tokens:
        # Nothing to look up; the handler answers with an empty list.
        return TenantResolution(tenant_id=None, source="tracking_batch", tracking_tokens=())

    resolved_tenant: int | None = None
    valid: list[str] = []
    for token in tokens:
        tenant_id = parse_tenant_id(lookup.resolve_tenant_id_by_order_token(token))
        if tenant_id is None:
            continue
        valid.append(token)
        if resolved_tenant is None:
            resolved_tenant = tenant_id
        elif tenant_id != resolved_tenant:
            raise tenant_ambiguous()

    if resolved_tenant is None:
        return TenantResolution(tenant_id=None, source="tracking_batch", tracking_tokens=())
    return TenantResolution(tenant_id=resolved_tenant, source="tracking_batch", tracking_tokens=tuple(valid))


RouteRule = tuple[
    str,
    Callable[[str, Sequence[str]], bool],
    Callable[[TenantRequest, Sequence[str], TenantLookup], TenantResolution],
]

ROUTE_RULES: tuple[RouteRule, ...] = (
    ("products_public", _is_products_public, _resolve_public_slug),
    ("availability_public", _is_availability_public, _resolve_public_slug),
    ("orders_public_create", _is_public_order_create, _resolve_order_slug),
    ("orders_tracking", _is_tracking, _resolve_tracking),
    ("orders_tracking_batch", _is_tracking_batch, _resolve_tracking_batch),
)


def resolve_tenant(
    request: TenantRequest,
    lookup: TenantLookup,
    *,
    trust_tenant_header: bool = True,
    rules: Sequence[RouteRule] = ROUTE_RULES,
) -> TenantResolution:
    """Map a request to a tenant, ``NO_TENANT``, or raise an ``ApiError``.

    ``lookup`` runs inside the request transaction before any tenant variable
    is set, so it must not go through tenant-filtered repositories.
    """
    if not requires_tenant(request.path):
        return NO_TENANT

    identity_tenant = parse_tenant_id(request.identity_tenant_id)
    if identity_tenant is not None:
        return TenantResolution(tenant_id=identity_tenant, source="identity")

    if trust_tenant_header:
        header_tenant = parse_tenant_id(_header(request.headers, TENANT_HEADER))
        if header_tenant is not None:
            return TenantResolution(tenant_id=header_tenant, source="header")

    parts = path_parts(request.path)
    for name, matches, resolve in rules:
        if matches(request.method, parts):
            resolution = resolve(request, parts, lookup)
            logger.debug("tenant_resolved rule=%s tenant_id=%s", name, resolution.tenant_id)
            return resolution

    logger.info("tenant_unresolved method=%s path=%s", request.method, request.path)
    raise tenant_unresolved()


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value
