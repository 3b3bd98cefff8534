from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Query, Request

from app.errors import validation_error
from app.routes._deps import ok_response, services_from_request, tenant_id_from_request, tracking_tokens_from_request
from app.schemas import (
    CustomerRejectOrderRequest,
    OrderCreateRequest,
    OrderItemPriceRequest,
    OrderUpdateRequest,
    ReplaceOrderItemRequest,
    ReplacementDecisionRequest,
)
from app.tenancy.context import current_tenant_id
from app.tenancy.resolver import RESERVED_PUBLIC_ORDER_PATHS

router = APIRouter(prefix="/orders", tags=["orders"])

# Static segments are declared before the ``/{order_id}`` and ``/{tenant_slug}`` catch-alls.


@router.post("")
def create_order(payload: OrderCreateRequest, request: Request):
    order = services_from_request(request).orders.create(tenant_id_from_request(request), payload.model_dump())
    return ok_response(request, order, status_code=201)


@router.get("")
def list_orders(request: Request, day: date | None = Query(default=None, alias="date")):
    orders = services_from_request(request).orders.list(tenant_id_from_request(request), day=day)
    return ok_response(request, orders)


@router.get("/tracking")
def track_orders(request: Request):
    tokens = tracking_tokens_from_request(request)
    orders = services_from_request(request).orders.track_many(current_tenant_id(), tokens)
    return ok_response(request, orders)


@router.get("/tracking/{token}")
def track_order(token: str, request: Request):
    order = services_from_request(request).orders.track(tenant_id_from_request(request), token)
    return ok_response(request, order)


@router.patch("/tracking/{token}/reject")
def reject_order(token: str, payload: CustomerRejectOrderRequest, request: Request):
    order = services_from_request(request).orders.reject_by_customer(
        tenant_id_from_request(request), token, payload.reason
    )
    return ok_response(request, order)


@router.patch("/tracking/{token}/items/{item_id}/replacement-decision")
def decide_replacement(token: str, item_id: int, payload: ReplacementDecisionRequest, request: Request):
    order = services_from_request(request).replacements.decide_by_token(
        tenant_id_from_request(request),
        token,
        item_id,
        payload.decision,
        payload.reason,
    )
    return ok_response(request, order)


@router.patch("/items/{item_id}/price")
def update_item_price(item_id: int, payload: OrderItemPriceRequest, request: Request):
    order = services_from_request(request).orders.update_item_price(
        tenant_id_from_request(request), item_id, payload.total_price
    )
    return ok_response(request, order)


@router.patch("/items/{item_id}/replace")
def propose_replacement(item_id: int, payload: ReplaceOrderItemRequest, request: Request):
    item = services_from_request(request).replacements.propose(
        tenant_id_from_request(request), item_id, payload.replaced_by_product_id
    )
    return ok_response(request, item)


@router.patch("/items/{item_id}/replacement-reset")
def reset_replacement(item_id: int, request: Request):
    item = services_from_request(request).replacements.reset(tenant_id_from_request(request), item_id)
    return ok_response(request, item)


@router.get("/{order_id}")
def get_order(order_id: int, request: Request):
    return ok_response(request, services_from_request(request).orders.get(tenant_id_from_request(request), order_id))


@router.patch("/{order_id}")
def update_order(order_id: int, payload: OrderUpdateRequest, request: Request):
    order = services_from_request(request).orders.update(
        tenant_id_from_request(request),
        order_id,
        payload.model_dump(exclude_unset=True, exclude_none=True),
    )
    return ok_response(request, order)


@router.post("/{tenant_slug}")
def create_public_order(tenant_slug: str, payload: OrderCreateRequest, request: Request):
    if tenant_slug in RESERVED_PUBLIC_ORDER_PATHS:
        raise validation_error(f"invalid tenant slug: {tenant_slug}")
    order = services_from_request(request).orders.create(tenant_id_from_request(request), payload.model_dump())
    return ok_response(request, order, status_code=201)
