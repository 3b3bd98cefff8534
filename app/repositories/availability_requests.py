from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Any

from app.repositories._sql import _validate_identifier, session_tenant_id
from app.timeutil import utcnow


class InMemoryAvailabilityRequestsRepository:
    def __init__(self, session: Any) -> None:
        self._session = session

    def create(self, *, product_id: int, visitor_key: str, request_date: date) -> dict[str, Any]:
        return self._session.insert(
            "availability_requests",
            {
                "product_id": int(product_id),
                "visitor_key": visitor_key,
                "request_date": request_date,
                "created_at": utcnow(),
            },
        )

    def find(self, *, product_id: int, visitor_key: str, request_date: date) -> dict[str, Any] | None:
        rows = self._session.select(
            "availability_requests",
            lambda row: row["product_id"] == int(product_id)
            and row["visitor_key"] == visitor_key
            and row["request_date"] == request_date,
        )
        return rows[-1] if rows else None

    def count_for_date(self, *, request_date: date) -> int:
        return len(self._session.select("availability_requests", lambda row: row["request_date"] == request_date))

    def top_products(self, *, since: date, until: date, limit: int) -> list[dict[str, Any]]:
        counts: dict[int, int] = defaultdict(int)
        latest: dict[int, Any] = {}
        rows = self._session.select("availability_requests", lambda row: since <= row["request_date"] <= until)
        for row in rows:
            product_id = int(row["product_id"])
            counts[product_id] += 1
            if product_id not in latest or row["created_at"] > latest[product_id]:
                latest[product_id] = row["created_at"]
        ranked = sorted(counts, key=lambda pid: (counts[pid], latest[pid]), reverse=True)[:limit]
        result = []
        for product_id in ranked:
            product = self._session.get("products", product_id) or {}
            result.append(
                {
                    "product_id": product_id,
                    "product_name": product.get("name"),
                    "requests_count": counts[product_id],
                    "last_requested_at": latest[product_id],
                }
            )
        return result


class PostgresAvailabilityRequestsRepository:
    def __init__(
        self,
        session: Any,
        *,
        table_name: str = "availability_requests",
        products_table_name: str = "products",
    ) -> None:
        self._session = session
        self._table_name = _validate_identifier(table_name)
        self._products_table_name = _validate_identifier(products_table_name)

    def create(self, *, product_id: int, visitor_key: str, request_date: date) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (tenant_id, product_id, visitor_key, request_date, created_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
        """
        return self._session.fetch_one(
            sql,
            (session_tenant_id(self._session), int(product_id), visitor_key, request_date, utcnow()),
        )

    def find(self, *, product_id: int, visitor_key: str, request_date: date) -> dict[str, Any] | None:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tenant_id = %s AND product_id = %s AND visitor_key = %s AND request_date = %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        return self._session.fetch_one(
            sql, (session_tenant_id(self._session), int(product_id), visitor_key, request_date)
        )

    def count_for_date(self, *, request_date: date) -> int:
        sql = f"SELECT COUNT(*)::int AS total FROM {self._table_name} WHERE tenant_id = %s AND request_date = %s"
        row = self._session.fetch_one(sql, (session_tenant_id(self._session), request_date))
        return int(row["total"]) if row else 0

    def top_products(self, *, since: date, until: date, limit: int) -> list[dict[str, Any]]:
        sql = f"""
            SELECT r.product_id, MAX(p.name) AS product_name,
                   COUNT(r.id)::int AS requests_count, MAX(r.created_at) AS last_requested_at
            FROM {self._table_name} r
            JOIN {self._products_table_name} p ON p.id = r.product_id
            WHERE r.tenant_id = %s AND r.request_date >= %s AND r.request_date <= %s
            GROUP BY r.product_id
            ORDER BY requests_count DESC, last_requested_at DESC
            LIMIT %s
        """
        return self._session.fetch_all(sql, (session_tenant_id(self._session), since, until, int(limit)))
