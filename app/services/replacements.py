"""Per-line replacement negotiation.

A line moves ``none -> pending -> approved | rejected``. The merchant proposes
(or withdraws) a candidate; the customer decides through the tracking token.
Decided lines stay locked until the merchant resets them.
"""

from __future__ import annotations

import logging
from typing import Any

from app.errors import not_found, state_conflict, validation_error
from app.services import notifications
from app.services.notifications import Notifier, notify_after_commit
from app.services.orders import (
    EDITABLE_STATUSES,
    REPLACEMENT_DEFAULTS,
    OrderLinks,
    ensure_editable,
    public_order_view,
    require_item,
    require_order,
    require_order_by_token,
)
from app.tenancy.context import session_scope
from app.timeutil import utcnow

logger = logging.getLogger(__name__)

DECISION_LOCKED = frozenset({"approved", "rejected"})
DECISIONS = ("approve", "reject")


def _lock_order_and_item(repos: Any, item_id: int) -> tuple[dict[str, Any], dict[str, Any]]:
    # Order row first, then the line: the same order price edits and status updates use.
    item = require_item(repos, item_id)
    order = require_order(repos, item["order_id"], for_update=True)
    return order, require_item(repos, item_id, for_update=True)


class ReplacementService:
    def __init__(self, database: Any, notifier: Notifier, *, links: OrderLinks | None = None) -> None:
        self._database = database
        self._notifier = notifier
        self._links = links or OrderLinks.from_env()

    def propose(self, tenant_id: int, item_id: int, product_id: int | None) -> dict[str, Any]:
        """Offer ``product_id`` as the line's substitute; ``None`` withdraws a pending offer."""
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            order, item = _lock_order_and_item(repos, item_id)
            ensure_editable(order, "replacements")

            status = item["replacement_decision_status"]
            if status in DECISION_LOCKED:
                raise state_conflict(
                    "REPLACEMENT_STATE_CONFLICT",
                    f"replacement already {status}; reset it before proposing again",
                )

            if product_id is None:
                if status == "pending":
                    item = repos.orders.update_item(item_id=item_id, changes=dict(REPLACEMENT_DEFAULTS))
                    logger.info("replacement_withdrawn tenant_id=%s item_id=%s", tenant_id, item_id)
                return item

            if item.get("product_id") is not None and int(product_id) == int(item["product_id"]):
                raise validation_error("replacement product must differ from the ordered product")
            candidate = repos.products.get(product_id=product_id)
            if candidate is None or candidate.get("status") != "active":
                raise not_found("PRODUCT_NOT_FOUND", f"product {product_id} not found")

            item = repos.orders.update_item(
                item_id=item_id,
                changes={
                    **REPLACEMENT_DEFAULTS,
                    "pending_replacement_product_id": candidate["id"],
                    "replacement_decision_status": "pending",
                },
            )
            customer = repos.customers.get(customer_id=order["customer_id"]) or {}
            notify_after_commit(
                session,
                self._notifier,
                notifications.CUSTOMER_REPLACEMENT_PROPOSED,
                customer.get("phone"),
                {
                    "item_title": item["title"],
                    "replacement_name": candidate["name"],
                    "tracking_url": self._links.tracking_url(order["public_token"]),
                },
            )
            logger.info(
                "replacement_proposed tenant_id=%s item_id=%s product_id=%s",
                tenant_id,
                item_id,
                candidate["id"],
            )
            return item

    def reset(self, tenant_id: int, item_id: int) -> dict[str, Any]:
        """Discard candidate and decision so a new proposal can be made."""
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            order, item = _lock_order_and_item(repos, item_id)
            ensure_editable(order, "replacements")
            if item["replacement_decision_status"] == "none" and item.get("pending_replacement_product_id") is None:
                return item
            logger.info(
                "replacement_reset tenant_id=%s item_id=%s previous=%s",
                tenant_id,
                item_id,
                item["replacement_decision_status"],
            )
            return repos.orders.update_item(item_id=item_id, changes=dict(REPLACEMENT_DEFAULTS))

    def decide_by_token(
        self,
        tenant_id: int,
        token: str,
        item_id: int,
        decision: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        if decision not in DECISIONS:
            raise validation_error(f"decision must be one of: {', '.join(DECISIONS)}")
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            order = require_order_by_token(repos, token, for_update=True)
            item = require_item(repos, item_id, for_update=True)
            if int(item["order_id"]) != int(order["id"]):
                raise not_found("ORDER_ITEM_NOT_FOUND", f"order item {item_id} not found")
            if order["status"] not in EDITABLE_STATUSES:
                raise state_conflict(
                    "ORDER_STATE_CONFLICT",
                    f"replacement decisions are closed; order is {order['status']}",
                )
            if item["replacement_decision_status"] != "pending":
                raise state_conflict(
                    "REPLACEMENT_STATE_CONFLICT",
                    f"no pending replacement on this item; it is {item['replacement_decision_status']}",
                )

            candidate_id = item["pending_replacement_product_id"]
            cleaned_reason = (reason or "").strip() or None
            if decision == "approve":
                changes = {
                    "pending_replacement_product_id": None,
                    "replaced_by_product_id": candidate_id,
                    "replacement_decision_status": "approved",
                    "replacement_decision_reason": cleaned_reason,
                    "replacement_decided_at": utcnow(),
                }
                template_key = notifications.MERCHANT_REPLACEMENT_ACCEPTED
            else:
                # The candidate stays on the line as a record of what was refused.
                changes = {
                    "pending_replacement_product_id": candidate_id,
                    "replaced_by_product_id": None,
                    "replacement_decision_status": "rejected",
                    "replacement_decision_reason": cleaned_reason,
                    "replacement_decided_at": utcnow(),
                }
                template_key = notifications.MERCHANT_REPLACEMENT_REJECTED
            repos.orders.update_item(item_id=item_id, changes=changes)

            tenant = repos.tenants.get(tenant_id=tenant_id) or {}
            candidate = repos.products.get(product_id=candidate_id) if candidate_id is not None else None
            notify_after_commit(
                session,
                self._notifier,
                template_key,
                tenant.get("phone"),
                {
                    "order_id": order["id"],
                    "item_title": item["title"],
                    "replacement_name": (candidate or {}).get("name"),
                    "reason": cleaned_reason,
                    "order_url": self._links.merchant_order_url(order["id"]),
                },
            )
            logger.info(
                "replacement_decided tenant_id=%s item_id=%s decision=%s",
                tenant_id,
                item_id,
                decision,
            )
            return public_order_view(repos, order)
