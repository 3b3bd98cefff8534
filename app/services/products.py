from __future__ import annotations

from decimal import Decimal
from typing import Any

from app.errors import not_found
from app.tenancy.context import session_scope

PRODUCT_STATUSES = ("active", "archived")


class ProductService:
    def __init__(self, database: Any) -> None:
        self._database = database

    def create(
        self,
        tenant_id: int,
        *,
        name: str,
        price: Decimal | None = None,
        status: str = "active",
        is_available: bool = True,
    ) -> dict[str, Any]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            return session.repositories.products.create(
                name=name.strip(), price=price, status=status, is_available=is_available
            )

    def list(self, tenant_id: int, *, include_archived: bool = False) -> list[dict[str, Any]]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            return session.repositories.products.list(active_only=not include_archived)

    def get(self, tenant_id: int, product_id: int) -> dict[str, Any]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            product = session.repositories.products.get(product_id=product_id)
        if product is None:
            raise not_found("PRODUCT_NOT_FOUND", f"product {product_id} not found")
        return product

    def update(self, tenant_id: int, product_id: int, changes: dict[str, Any]) -> dict[str, Any]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            products = session.repositories.products
            if not changes:
                product = products.get(product_id=product_id)
            else:
                product = products.update(product_id=product_id, changes=changes)
        if product is None:
            raise not_found("PRODUCT_NOT_FOUND", f"product {product_id} not found")
        return product

    def archive(self, tenant_id: int, product_id: int) -> dict[str, Any]:
        """Products are never removed; order lines keep pointing at archived rows."""
        return self.update(tenant_id, product_id, {"status": "archived"})
