from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

from app.errors import TenantContextMissing


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def session_tenant_id(session: Any) -> int:
    tenant_id = session.tenant_id
    if tenant_id is None:
        raise TenantContextMissing("app.tenant_id is not set")
    return int(tenant_id)


def insert_statement(table: str, values: Mapping[str, Any]) -> tuple[str, tuple[Any, ...]]:
    columns = [_validate_identifier(name) for name in values]
    placeholders = ", ".join(["%s"] * len(columns))
    sql = f"INSERT INTO {_validate_identifier(table)} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *"
    return sql, tuple(values.values())


def update_statement(
    table: str,
    changes: Mapping[str, Any],
    *,
    allowed: Iterable[str],
    tenant_id: int,
    row_id: int,
) -> tuple[str, tuple[Any, ...]]:
    permitted = set(allowed)
    unknown = sorted(set(changes) - permitted)
    if unknown:
        raise ValueError(f"columns not updatable: {', '.join(unknown)}")
    assignments = ", ".join(f"{_validate_identifier(name)} = %s" for name in changes)
    sql = (
        f"UPDATE {_validate_identifier(table)} SET {assignments} "
        "WHERE tenant_id = %s AND id = %s RETURNING *"
    )
    return sql, (*changes.values(), tenant_id, row_id)
