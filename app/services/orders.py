from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from app.errors import not_found, state_conflict, validation_error
from app.services import notifications
from app.services.customers import CustomerSequenceAllocator
from app.services.notifications import Notifier, notify_after_commit
from app.tenancy.context import session_scope
from app.timeutil import business_day_bounds, business_today, utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"confirmed", "cancelled", "rejected_by_customer"},
    "confirmed": {"out_for_delivery", "cancelled", "rejected_by_customer"},
    "out_for_delivery": {"completed"},
    "completed": set(),
    "cancelled": set(),
    "rejected_by_customer": set(),
}
ORDER_STATUSES: tuple[str, ...] = tuple(ALLOWED_TRANSITIONS)
CUSTOMER_ONLY_STATUSES = frozenset({"rejected_by_customer"})
EDITABLE_STATUSES = frozenset({"draft", "confirmed"})

STATUS_NOTIFICATIONS: dict[str, str] = {
    "confirmed": notifications.CUSTOMER_ORDER_CONFIRMED,
    "out_for_delivery": notifications.CUSTOMER_OUT_FOR_DELIVERY,
    "cancelled": notifications.CUSTOMER_ORDER_CANCELLED,
    "completed": notifications.CUSTOMER_ORDER_DELIVERED,
}

REPLACEMENT_DEFAULTS: dict[str, Any] = {
    "pending_replacement_product_id": None,
    "replaced_by_product_id": None,
    "replacement_decision_status": "none",
    "replacement_decision_reason": None,
    "replacement_decided_at": None,
}


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def new_public_token() -> str:
    return secrets.token_urlsafe(18)


def validate_status_transition(current: str, target: str, *, actor: str = "merchant") -> None:
    if current == target:
        return
    if actor == "merchant" and target in CUSTOMER_ONLY_STATUSES:
        raise state_conflict(
            "ORDER_STATUS_TRANSITION_INVALID",
            f"status {target} can only be set by the customer",
        )
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise state_conflict(
            "ORDER_STATUS_TRANSITION_INVALID",
            f"invalid status transition from {current} to {target}",
        )


def ensure_editable(order: dict[str, Any], what: str) -> None:
    if order["status"] not in EDITABLE_STATUSES:
        raise state_conflict("ORDER_STATE_CONFLICT", f"{what} cannot change while order is {order['status']}")


def require_order(repos: Any, order_id: int, *, for_update: bool = False) -> dict[str, Any]:
    order = repos.orders.get(order_id=order_id, for_update=for_update)
    if order is None:
        raise not_found("ORDER_NOT_FOUND", f"order {order_id} not found")
    return order


def require_order_by_token(repos: Any, token: str, *, for_update: bool = False) -> dict[str, Any]:
    order = repos.orders.get_by_public_token(token=token, for_update=for_update)
    if order is None:
        raise not_found("ORDER_NOT_FOUND", "order not found for tracking token")
    return order


def require_item(repos: Any, item_id: int, *, for_update: bool = False) -> dict[str, Any]:
    item = repos.orders.get_item(item_id=item_id, for_update=for_update)
    if item is None:
        raise not_found("ORDER_ITEM_NOT_FOUND", f"order item {item_id} not found")
    return item


@dataclass(frozen=True)
class OrderLinks:
    app_url: str = "http://localhost:3000"
    client_url: str = "http://localhost:3000"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "OrderLinks":
        env = os.environ if environ is None else environ
        return cls(
            app_url=env.get("APP_URL", "").strip() or cls.app_url,
            client_url=env.get("CLIENT_URL", "").strip() or cls.client_url,
        )

    def tracking_url(self, public_token: str) -> str:
        return f"{self.app_url.rstrip('/')}/track-order/{public_token}"

    def merchant_order_url(self, order_id: int) -> str:
        return f"{self.client_url.rstrip('/')}/merchant/orders/{order_id}"


def order_view(repos: Any, order: dict[str, Any]) -> dict[str, Any]:
    tenant = repos.tenants.get(tenant_id=order["tenant_id"]) or {}
    return {
        **order,
        "items": repos.orders.list_items(order_id=order["id"]),
        "customer": repos.customers.get(customer_id=order["customer_id"]),
        "tenant": {"id": tenant.get("id"), "name": tenant.get("name"), "slug": tenant.get("slug")},
    }


def public_order_view(repos: Any, order: dict[str, Any]) -> dict[str, Any]:
    """Tracking payload: only the public token identifies the order."""
    view = order_view(repos, order)
    customer = view.pop("customer") or {}
    tenant = view.pop("tenant")
    for key in ("id", "tenant_id", "customer_id"):
        view.pop(key, None)
    view["customer"] = {"name": customer.get("name")}
    view["tenant"] = {"name": tenant["name"], "slug": tenant["slug"]}
    view["items"] = [{k: v for k, v in item.items() if k != "tenant_id"} for item in view["items"]]
    return view


class OrderService:
    def __init__(
        self,
        database: Any,
        notifier: Notifier,
        *,
        links: OrderLinks | None = None,
        allocator: CustomerSequenceAllocator | None = None,
    ) -> None:
        self._database = database
        self._notifier = notifier
        self._links = links or OrderLinks.from_env()
        self._allocator = allocator or CustomerSequenceAllocator(database)

    @property
    def links(self) -> OrderLinks:
        return self._links

    def create(self, tenant_id: int, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a draft order, resolving or allocating its customer.

        An explicit ``total`` makes the order Manual; the subtotal is still
        computed from the lines for display.
        """
        customer_in = payload["customer"]
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            customer, _ = self._allocator.find_or_create(
                tenant_id=tenant_id,
                phone=customer_in["phone"],
                name=customer_in.get("name"),
                address=customer_in.get("address"),
            )
            is_first_order = int(customer.get("order_count") or 0) == 0

            lines = [self._price_line(repos, item) for item in payload.get("items") or []]
            subtotal = money(sum((line["total"] for line in lines), Decimal("0")))
            delivery_fee = money(payload.get("delivery_fee") or 0)
            if payload.get("total") is not None:
                pricing_mode = "manual"
                total = money(payload["total"])
            else:
                pricing_mode = "auto"
                total = subtotal + delivery_fee

            now = utcnow()
            order = repos.orders.create(
                order={
                    "customer_id": customer["id"],
                    "public_token": new_public_token(),
                    "order_type": payload.get("order_type") or "delivery",
                    "status": "draft",
                    "pricing_mode": pricing_mode,
                    "subtotal": subtotal,
                    "delivery_fee": delivery_fee,
                    "total": total,
                    "notes": payload.get("notes"),
                    "customer_rejection_reason": None,
                    "customer_rejected_at": None,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            for line in lines:
                repos.orders.add_item(item={**line, "order_id": order["id"], **REPLACEMENT_DEFAULTS})
            repos.customers.record_order(customer_id=customer["id"], at=now)

            view = order_view(repos, order)
            self._notify_created(session, repos, view, is_first_order=is_first_order)
            logger.info(
                "order_created tenant_id=%s order_id=%s pricing_mode=%s items=%s",
                tenant_id,
                order["id"],
                pricing_mode,
                len(lines),
            )
            return view

    def list(self, tenant_id: int, *, day: date | None = None) -> list[dict[str, Any]]:
        start, end = business_day_bounds(day or business_today())
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            orders = repos.orders.list(start=start, end=end)
            orders.sort(key=lambda row: row["created_at"], reverse=True)
            return [order_view(repos, order) for order in orders]

    def get(self, tenant_id: int, order_id: int) -> dict[str, Any]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            return order_view(repos, require_order(repos, order_id))

    def update(self, tenant_id: int, order_id: int, changes: dict[str, Any]) -> dict[str, Any]:
        """Merchant edit. A supplied total switches the order to Manual for good."""
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            order = require_order(repos, order_id, for_update=True)
            previous_status = order["status"]
            updates: dict[str, Any] = {}

            target = changes.get("status")
            if target and target != previous_status:
                validate_status_transition(previous_status, target, actor="merchant")
                updates["status"] = target

            new_total = changes.get("total")
            new_fee = changes.get("delivery_fee")
            if new_total is not None or new_fee is not None:
                ensure_editable(order, "order pricing")
            pricing_mode = order["pricing_mode"]
            if new_total is not None:
                pricing_mode = "manual"
                updates["pricing_mode"] = "manual"
                updates["total"] = money(new_total)
            if new_fee is not None:
                updates["delivery_fee"] = money(new_fee)
                if pricing_mode == "auto":
                    updates["total"] = money(order["subtotal"] or 0) + updates["delivery_fee"]
            if changes.get("notes") is not None:
                updates["notes"] = changes["notes"]
            if changes.get("order_type") is not None:
                updates["order_type"] = changes["order_type"]

            if updates:
                updates["updated_at"] = utcnow()
                order = repos.orders.update(order_id=order_id, changes=updates)
            view = order_view(repos, order)
            if "status" in updates:
                logger.info(
                    "order_status_changed tenant_id=%s order_id=%s from=%s to=%s",
                    tenant_id,
                    order_id,
                    previous_status,
                    updates["status"],
                )
                self._notify_status_change(session, view)
            return view

    def track(self, tenant_id: int, token: str) -> dict[str, Any]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            return public_order_view(repos, require_order_by_token(repos, token))

    def track_many(self, tenant_id: int | None, tokens: list[str]) -> list[dict[str, Any]]:
        if tenant_id is None or not tokens:
            return []
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            return [public_order_view(repos, order) for order in repos.orders.list_by_public_tokens(tokens=tokens)]

    def reject_by_customer(self, tenant_id: int, token: str, reason: str | None = None) -> dict[str, Any]:
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            order = require_order_by_token(repos, token, for_update=True)
            if order["status"] not in EDITABLE_STATUSES:
                raise state_conflict(
                    "ORDER_STATE_CONFLICT",
                    f"order can no longer be rejected; it is {order['status']}",
                )
            now = utcnow()
            order = repos.orders.update(
                order_id=order["id"],
                changes={
                    "status": "rejected_by_customer",
                    "customer_rejection_reason": (reason or "").strip() or None,
                    "customer_rejected_at": now,
                    "updated_at": now,
                },
            )
            tenant = repos.tenants.get(tenant_id=tenant_id) or {}
            notify_after_commit(
                session,
                self._notifier,
                notifications.MERCHANT_ORDER_REJECTED_BY_CUSTOMER,
                tenant.get("phone"),
                {
                    "order_id": order["id"],
                    "reason": order["customer_rejection_reason"],
                    "order_url": self._links.merchant_order_url(order["id"]),
                },
            )
            logger.info("order_rejected_by_customer tenant_id=%s order_id=%s", tenant_id, order["id"])
            return public_order_view(repos, order)

    def update_item_price(self, tenant_id: int, item_id: int, total_price: Any) -> dict[str, Any]:
        """Set one line's final price and recompute the order subtotal."""
        with session_scope(self._database, tenant_id=tenant_id) as session:
            repos = session.repositories
            item = require_item(repos, item_id)
            order = require_order(repos, item["order_id"], for_update=True)
            ensure_editable(order, "line prices")

            line_total = money(total_price)
            if line_total <= 0:
                raise validation_error("total_price must be positive")
            quantity = Decimal(str(item.get("quantity") or 1))
            repos.orders.update_item(
                item_id=item_id,
                changes={"total": line_total, "unit_price": money(line_total / quantity)},
            )

            lines = repos.orders.list_items(order_id=order["id"])
            subtotal = money(sum((money(row["total"]) for row in lines), Decimal("0")))
            changes: dict[str, Any] = {"subtotal": subtotal, "updated_at": utcnow()}
            if order["pricing_mode"] == "auto":
                changes["total"] = subtotal + money(order["delivery_fee"] or 0)
            order = repos.orders.update(order_id=order["id"], changes=changes)
            return order_view(repos, order)

    def _price_line(self, repos: Any, item: dict[str, Any]) -> dict[str, Any]:
        product = None
        if item.get("product_id") is not None:
            product = repos.products.get(product_id=item["product_id"])
            if product is None:
                raise not_found("PRODUCT_NOT_FOUND", f"product {item['product_id']} not found")
        title = (item.get("title") or "").strip() or (product or {}).get("name")
        if not title:
            raise validation_error("item title is required when no product is given")
        if item.get("unit_price") is not None:
            unit_price = money(item["unit_price"])
        else:
            unit_price = money((product or {}).get("price") or 0)
        quantity = Decimal(str(item.get("quantity") or 1))
        if quantity <= 0:
            raise validation_error("item quantity must be positive")
        return {
            "product_id": product["id"] if product else None,
            "title": title,
            "unit_price": unit_price,
            "quantity": quantity,
            "total": money(unit_price * quantity),
        }

    def _notify_created(self, session: Any, repos: Any, view: dict[str, Any], *, is_first_order: bool) -> None:
        tenant = repos.tenants.get(tenant_id=view["tenant_id"]) or {}
        customer = view.get("customer") or {}
        notify_after_commit(
            session,
            self._notifier,
            notifications.MERCHANT_NEW_ORDER,
            tenant.get("phone"),
            {
                "order_id": view["id"],
                "customer_name": customer.get("name"),
                "address": customer.get("address"),
                "order_url": self._links.merchant_order_url(view["id"]),
            },
        )
        notify_after_commit(
            session,
            self._notifier,
            notifications.CUSTOMER_ORDER_CONFIRMED,
            customer.get("phone"),
            {"store_name": tenant.get("name"), "tracking_url": self._links.tracking_url(view["public_token"])},
        )
        if is_first_order:
            notify_after_commit(
                session,
                self._notifier,
                notifications.CUSTOMER_WELCOME,
                customer.get("phone"),
                {"store_name": tenant.get("name"), "customer_code": customer.get("code")},
            )

    def _notify_status_change(self, session: Any, view: dict[str, Any]) -> None:
        template_key = STATUS_NOTIFICATIONS.get(view["status"])
        if template_key is None:
            return
        customer = view.get("customer") or {}
        notify_after_commit(
            session,
            self._notifier,
            template_key,
            customer.get("phone"),
            {
                "store_name": view["tenant"]["name"],
                "status": view["status"],
                "tracking_url": self._links.tracking_url(view["public_token"]),
            },
        )
