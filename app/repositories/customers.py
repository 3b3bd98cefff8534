from __future__ import annotations

from datetime import datetime
from typing import Any

from app.repositories._sql import (
    _validate_identifier,
    insert_statement,
    session_tenant_id,
    update_statement,
)
from app.timeutil import utcnow

PROFILE_COLUMNS = ("name", "address", "updated_at")


class InMemoryCustomersRepository:
    def __init__(self, session: Any) -> None:
        self._session = session

    def create(self, *, phone: str, code: int, name: str | None = None, address: str | None = None) -> dict[str, Any]:
        now = utcnow()
        return self._session.insert(
            "customers",
            {
                "phone": phone,
                "code": int(code),
                "name": name,
                "address": address,
                "order_count": 0,
                "first_order_at": None,
                "last_order_at": None,
                "created_at": now,
                "updated_at": now,
            },
        )

    def get(self, *, customer_id: int) -> dict[str, Any] | None:
        return self._session.get("customers", int(customer_id))

    def get_by_phone(self, *, phone: str) -> dict[str, Any] | None:
        rows = self._session.select("customers", lambda row: row.get("phone") == phone)
        return rows[0] if rows else None

    def list(self) -> list[dict[str, Any]]:
        return self._session.select("customers")

    def update_profile(
        self, *, customer_id: int, name: str | None = None, address: str | None = None
    ) -> dict[str, Any] | None:
        changes: dict[str, Any] = {}
        if name:
            changes["name"] = name
        if address:
            changes["address"] = address
        if not changes:
            return self.get(customer_id=customer_id)
        changes["updated_at"] = utcnow()
        return self._session.update("customers", int(customer_id), changes)

    def record_order(self, *, customer_id: int, at: datetime) -> dict[str, Any] | None:
        row = self.get(customer_id=customer_id)
        if row is None:
            return None
        return self._session.update(
            "customers",
            int(customer_id),
            {
                "order_count": int(row.get("order_count") or 0) + 1,
                "first_order_at": row.get("first_order_at") or at,
                "last_order_at": at,
                "updated_at": at,
            },
        )


class PostgresCustomersRepository:
    def __init__(self, session: Any, *, table_name: str = "customers") -> None:
        self._session = session
        self._table_name = _validate_identifier(table_name)

    def create(self, *, phone: str, code: int, name: str | None = None, address: str | None = None) -> dict[str, Any]:
        now = utcnow()
        sql, params = insert_statement(
            self._table_name,
            {
                "tenant_id": session_tenant_id(self._session),
                "phone": phone,
                "code": int(code),
                "name": name,
                "address": address,
                "order_count": 0,
                "created_at": now,
                "updated_at": now,
            },
        )
        return self._session.fetch_one(sql, params)

    def get(self, *, customer_id: int) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND id = %s LIMIT 1"
        return self._session.fetch_one(sql, (session_tenant_id(self._session), int(customer_id)))

    def get_by_phone(self, *, phone: str) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND phone = %s LIMIT 1"
        return self._session.fetch_one(sql, (session_tenant_id(self._session), phone))

    def list(self) -> list[dict[str, Any]]:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s ORDER BY id"
        return self._session.fetch_all(sql, (session_tenant_id(self._session),))

    def update_profile(
        self, *, customer_id: int, name: str | None = None, address: str | None = None
    ) -> dict[str, Any] | None:
        changes: dict[str, Any] = {}
        if name:
            changes["name"] = name
        if address:
            changes["address"] = address
        if not changes:
            return self.get(customer_id=customer_id)
        changes["updated_at"] = utcnow()
        sql, params = update_statement(
            self._table_name,
            changes,
            allowed=PROFILE_COLUMNS,
            tenant_id=session_tenant_id(self._session),
            row_id=int(customer_id),
        )
        return self._session.fetch_one(sql, params)

    def record_order(self, *, customer_id: int, at: datetime) -> dict[str, Any] | None:
        sql = f"""
            UPDATE {self._table_name}
            SET order_count = order_count + 1,
                first_order_at = COALESCE(first_order_at, %s),
                last_order_at = %s,
                updated_at = %s
            WHERE tenant_id = %s AND id = %s
            RETURNING *
        """
        return self._session.fetch_one(sql, (at, at, at, session_tenant_id(self._session), int(customer_id)))
