from __future__ import annotations

import logging
from typing import Any

from app.errors import DuplicateViolation, not_found
from app.tenancy.context import session_scope

logger = logging.getLogger(__name__)


class CustomerSequenceAllocator:
    """Find-or-create customers, handing out per-tenant sequential codes.

    The counter increment and the customer insert share one transaction: the
    request's when one is bound, otherwise a dedicated one. Concurrent callers
    for the same tenant queue on the tenant row lock taken by the increment.
    """

    def __init__(self, database: Any) -> None:
        self._database = database

    def find_or_create(
        self,
        *,
        tenant_id: int,
        phone: str,
        name: str | None = None,
        address: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            customers = session.repositories.customers
            existing = customers.get_by_phone(phone=phone)
            if existing is not None:
                return self._refresh_profile(customers, existing, name=name, address=address), False

            try:
                with session.savepoint():
                    code = session.repositories.tenants.increment_customer_counter(tenant_id=tenant_id)
                    if code is None:
                        raise not_found("TENANT_NOT_FOUND", f"tenant {tenant_id} not found")
                    created = customers.create(phone=phone, code=code, name=name, address=address)
            except DuplicateViolation as exc:
                # A concurrent checkout created the same phone first; the savepoint
                # has already undone our increment.
                existing = customers.get_by_phone(phone=phone)
                if existing is None:
                    raise
                logger.info("customer_create_raced tenant_id=%s constraint=%s", tenant_id, exc.constraint)
                return self._refresh_profile(customers, existing, name=name, address=address), False

            logger.info("customer_created tenant_id=%s customer_id=%s code=%s", tenant_id, created["id"], code)
            return created, True

    @staticmethod
    def _refresh_profile(
        customers: Any,
        existing: dict[str, Any],
        *,
        name: str | None,
        address: str | None,
    ) -> dict[str, Any]:
        changed_name = name if name and name != existing.get("name") else None
        changed_address = address if address and address != existing.get("address") else None
        if changed_name is None and changed_address is None:
            return existing
        return customers.update_profile(customer_id=existing["id"], name=changed_name, address=changed_address)


class CustomerService:
    def __init__(self, database: Any) -> None:
        self._database = database

    def list(self, tenant_id: int) -> list[dict[str, Any]]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            return session.repositories.customers.list()

    def get(self, tenant_id: int, customer_id: int) -> dict[str, Any]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            customer = session.repositories.customers.get(customer_id=customer_id)
        if customer is None:
            raise not_found("CUSTOMER_NOT_FOUND", f"customer {customer_id} not found")
        return customer
