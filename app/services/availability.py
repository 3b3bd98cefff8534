from __future__ import annotations

import logging
import math
import re
from datetime import timedelta
from typing import Any

from app.errors import DuplicateViolation, not_found, validation_error
from app.tenancy.context import session_scope
from app.timeutil import business_today

logger = logging.getLogger(__name__)

VISITOR_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _clamp(value: Any, *, low: int, high: int, default: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return min(high, max(low, int(number)))


class AvailabilityRequestService:
    """Back-in-stock requests from storefront visitors."""

    def __init__(self, database: Any) -> None:
        self._database = database

    def create_public(self, tenant_id: int, *, product_id: int, visitor_key: str) -> dict[str, Any]:
        key = (visitor_key or "").strip()
        if not VISITOR_KEY_PATTERN.fullmatch(key):
            raise validation_error("visitor_key is required and may only contain letters, digits, '_' and '-'")

        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            product = repos.products.get(product_id=product_id)
            if product is None or product.get("status") != "active":
                raise not_found("PRODUCT_NOT_FOUND", f"product {product_id} not found")
            if product.get("is_available"):
                raise validation_error("product is currently available")

            today = business_today()
            try:
                with session.savepoint():
                    saved = repos.availability_requests.create(
                        product_id=product["id"], visitor_key=key, request_date=today
                    )
            except DuplicateViolation:
                existing = repos.availability_requests.find(
                    product_id=product["id"], visitor_key=key, request_date=today
                )
                logger.info("availability_request_duplicate tenant_id=%s product_id=%s", tenant_id, product["id"])
                return {
                    "status": "already_requested_today",
                    "requested_at": existing["created_at"] if existing else None,
                    "product_id": product["id"],
                }
            return {"status": "created", "requested_at": saved["created_at"], "product_id": saved["product_id"]}

    def merchant_summary(self, tenant_id: int, *, days: Any = 1, limit: Any = 5) -> dict[str, Any]:
        normalized_days = _clamp(days, low=1, high=30, default=1)
        normalized_limit = _clamp(limit, low=1, high=20, default=5)
        today = business_today()
        since = today - timedelta(days=normalized_days - 1)
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            return {
                "today_total_requests": repos.availability_requests.count_for_date(request_date=today),
                "top_products": repos.availability_requests.top_products(
                    since=since, until=today, limit=normalized_limit
                ),
            }
