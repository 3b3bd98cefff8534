from __future__ import annotations

from datetime import datetime
from typing import Any

from app.repositories._sql import (
    _validate_identifier,
    insert_statement,
    session_tenant_id,
    update_statement,
)

ORDER_UPDATABLE_COLUMNS = (
    "status",
    "order_type",
    "pricing_mode",
    "subtotal",
    "delivery_fee",
    "total",
    "notes",
    "customer_rejection_reason",
    "customer_rejected_at",
    "updated_at",
)
ITEM_UPDATABLE_COLUMNS = (
    "unit_price",
    "quantity",
    "total",
    "pending_replacement_product_id",
    "replaced_by_product_id",
    "replacement_decision_status",
    "replacement_decision_reason",
    "replacement_decided_at",
)


class InMemoryOrdersRepository:
    def __init__(self, session: Any) -> None:
        self._session = session

    def create(self, *, order: dict[str, Any]) -> dict[str, Any]:
        return self._session.insert("orders", dict(order))

    def get(self, *, order_id: int, for_update: bool = False) -> dict[str, Any] | None:
        return self._locked_get("orders", int(order_id), for_update)

    def get_by_public_token(self, *, token: str, for_update: bool = False) -> dict[str, Any] | None:
        rows = self._session.select("orders", lambda row: row.get("public_token") == token)
        if not rows or not for_update:
            return rows[0] if rows else None
        return self.get(order_id=rows[0]["id"], for_update=True)

    def list_by_public_tokens(self, *, tokens: list[str]) -> list[dict[str, Any]]:
        wanted = set(tokens)
        return self._session.select("orders", lambda row: row.get("public_token") in wanted)

    def list(self, *, start: datetime, end: datetime) -> list[dict[str, Any]]:
        return self._session.select("orders", lambda row: start <= row["created_at"] < end)

    def update(self, *, order_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        return self._session.update("orders", int(order_id), dict(changes))

    def add_item(self, *, item: dict[str, Any]) -> dict[str, Any]:
        return self._session.insert("order_items", dict(item))

    def get_item(self, *, item_id: int, for_update: bool = False) -> dict[str, Any] | None:
        return self._locked_get("order_items", int(item_id), for_update)

    def list_items(self, *, order_id: int) -> list[dict[str, Any]]:
        return self._session.select("order_items", lambda row: row.get("order_id") == int(order_id))

    def update_item(self, *, item_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        return self._session.update("order_items", int(item_id), dict(changes))

    def _locked_get(self, table: str, row_id: int, for_update: bool) -> dict[str, Any] | None:
        row = self._session.get(table, row_id)
        if row is None or not for_update:
            return row
        self._session.lock_row(table, row_id)
        return self._session.get(table, row_id)


class PostgresOrdersRepository:
    def __init__(
        self,
        session: Any,
        *,
        table_name: str = "orders",
        items_table_name: str = "order_items",
    ) -> None:
        self._session = session
        self._table_name = _validate_identifier(table_name)
        self._items_table_name = _validate_identifier(items_table_name)

    def create(self, *, order: dict[str, Any]) -> dict[str, Any]:
        sql, params = insert_statement(
            self._table_name, {**order, "tenant_id": session_tenant_id(self._session)}
        )
        return self._session.fetch_one(sql, params)

    def get(self, *, order_id: int, for_update: bool = False) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND id = %s LIMIT 1"
        if for_update:
            sql += " FOR UPDATE"
        return self._session.fetch_one(sql, (session_tenant_id(self._session), int(order_id)))

    def get_by_public_token(self, *, token: str, for_update: bool = False) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND public_token = %s LIMIT 1"
        if for_update:
            sql += " FOR UPDATE"
        return self._session.fetch_one(sql, (session_tenant_id(self._session), token))

    def list_by_public_tokens(self, *, tokens: list[str]) -> list[dict[str, Any]]:
        sql = f"SELECT * FROM {self._table_name} WHERE tenant_id = %s AND public_token = ANY(%s) ORDER BY id"
        return self._session.fetch_all(sql, (session_tenant_id(self._session), list(tokens)))

    def list(self, *, start: datetime, end: datetime) -> list[dict[str, Any]]:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tenant_id = %s AND created_at >= %s AND created_at < %s
            ORDER BY id
        """
        return self._session.fetch_all(sql, (session_tenant_id(self._session), start, end))

    def update(self, *, order_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        sql, params = update_statement(
            self._table_name,
            changes,
            allowed=ORDER_UPDATABLE_COLUMNS,
            tenant_id=session_tenant_id(self._session),
            row_id=int(order_id),
        )
        return self._session.fetch_one(sql, params)

    def add_item(self, *, item: dict[str, Any]) -> dict[str, Any]:
        sql, params = insert_statement(
            self._items_table_name, {**item, "tenant_id": session_tenant_id(self._session)}
        )
        return self._session.fetch_one(sql, params)

    def get_item(self, *, item_id: int, for_update: bool = False) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {self._items_table_name} WHERE tenant_id = %s AND id = %s LIMIT 1"
        if for_update:
            sql += " FOR UPDATE"
        return self._session.fetch_one(sql, (session_tenant_id(self._session), int(item_id)))

    def list_items(self, *, order_id: int) -> list[dict[str, Any]]:
        sql = f"SELECT * FROM {self._items_table_name} WHERE tenant_id = %s AND order_id = %s ORDER BY id"
        return self._session.fetch_all(sql, (session_tenant_id(self._session), int(order_id)))

    def update_item(self, *, item_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        sql, params = update_statement(
            self._items_table_name,
            changes,
            allowed=ITEM_UPDATABLE_COLUMNS,
            tenant_id=session_tenant_id(self._session),
            row_id=int(item_id),
        )
        return self._session.fetch_one(sql, params)
