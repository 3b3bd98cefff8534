from __future__ import annotations

from decimal import Decimal
from typing import Any

from app.repositories._sql import (
    _validate_identifier,
    insert_statement,
    session_tenant_id,
    update_statement,
)
from app.timeutil import utcnow

UPDATABLE_COLUMNS = ("name", "price", "status", "is_available", "updated_at")


class InMemoryProductsRepository:
    def __init__(self, session: Any) -> None:
        self._session = session

    def create(
        self,
        *,
        name: str,
        price: Decimal | None,
        status: str = "active",
        is_available: bool = True,
    ) -> dict[str, Any]:
        now = utcnow()
        return self._session.insert(
            "products",
            {
                "name": name,
                "price": price,
                "status": status,
                "is_available": bool(is_available),
                "created_at": now,
                "updated_at": now,
            },
        )

    def get(self, *, product_id: int) -> dict[str, Any] | None:
        return self._session.get("products", int(product_id))

    def list(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        if active_only:
            return self._session.select("products", lambda row: row.get("status") == "active")
        return self._session.select("products")

    def update(self, *, product_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        return self._session.update("products", int(product_id), {**changes, "updated_at": utcnow()})


class PostgresProductsRepository:
    def __init__(self, session: Any, *, table_name: str = "products") -> None:
        self._session = session
        self._table_name = _validate_identifier(table_name)

    def create(
        self,
        *,
        name: str,
        price: Decimal | None,
        status: str = "active",
        is_available: bool = True,
    ) -> dict[str, Any]:
        now = utcnow()
        sql, params = insert_statement(
            self._table_name,
            {
                "tenant_id": session_tenant_id(self._session),
                "name": name,
                "price": price,
                "status": status,
                "is_available": bool(is_available),
                "created_at": now,
                "updated_at": now,
            },
        )
        return self._session.fetch_one(sql, params)

    def get(self, *, product_id: int) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND id = %s LIMIT 1"
        return self._session.fetch_one(sql, (session_tenant_id(self._session), int(product_id)))

    def list(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s"
        if active_only:
            sql += " AND status = 'active'"
        return self._session.fetch_all(sql + " ORDER BY id", (session_tenant_id(self._session),))

    def update(self, *, product_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        sql, params = update_statement(
            self._table_name,
            {**changes, "updated_at": utcnow()},
            allowed=UPDATABLE_COLUMNS,
            tenant_id=session_tenant_id(self._session),
            row_id=int(product_id),
        )
        return self._session.fetch_one(sql, params)
