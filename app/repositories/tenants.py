from __future__ import annotations

from typing import Any

from app.repositories._sql import _validate_identifier
from app.timeutil import utcnow


class InMemoryTenantsRepository:
    def __init__(self, session: Any) -> None:
        self._session = session

    def create(self, *, name: str, slug: str, phone: str) -> dict[str, Any]:
        return self._session.insert(
            "tenants",
            {
                "name": name,
                "slug": slug,
                "phone": phone,
                "customer_counter": 0,
                "status": "active",
                "created_at": utcnow(),
                "deleted_at": None,
            },
        )

    def get(self, *, tenant_id: int) -> dict[str, Any] | None:
        return self._session.get("tenants", int(tenant_id))

    def get_by_slug(self, *, slug: str) -> dict[str, Any] | None:
        rows = self._session.select("tenants", lambda row: row.get("slug") == slug and row.get("deleted_at") is None)
        return rows[0] if rows else None

    def increment_customer_counter(self, *, tenant_id: int) -> int | None:
        self._session.lock_row("tenants", int(tenant_id))
        row = self._session.get("tenants", int(tenant_id))
        if row is None:
            return None
        updated = self._session.update(
            "tenants", int(tenant_id), {"customer_counter": int(row["customer_counter"]) + 1}
        )
        return int(updated["customer_counter"])


class PostgresTenantsRepository:
    def __init__(self, session: Any, *, table_name: str = "tenants") -> None:
        self._session = session
        self._table_name = _validate_identifier(table_name)

    def create(self, *, name: str, slug: str, phone: str) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (name, slug, phone, customer_counter, status, created_at)
            VALUES (%s, %s, %s, 0, 'active', %s)
            RETURNING *
        """
        return self._session.fetch_one(sql, (name, slug, phone, utcnow()))

    def get(self, *, tenant_id: int) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE id = %s LIMIT 1"
        return self._session.fetch_one(sql, (int(tenant_id),))

    def get_by_slug(self, *, slug: str) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE slug = %s AND deleted_at IS NULL LIMIT 1"
        return self._session.fetch_one(sql, (slug,))

    def increment_customer_counter(self, *, tenant_id: int) -> int | None:
        # The UPDATE holds the tenant row lock until the transaction ends.
        sql = f"""
            UPDATE {self._table_name}
            SET customer_counter = customer_counter + 1
            WHERE id = %s
            RETURNING customer_counter
        """
        row = self._session.fetch_one(sql, (int(tenant_id),))
        if row is None:
            return None
        return int(row["customer_counter"])
