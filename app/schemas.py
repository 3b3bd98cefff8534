from __future__ import annotations

from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

OrderStatus = Literal["draft", "confirmed", "out_for_delivery", "completed", "cancelled", "rejected_by_customer"]
OrderType = Literal["delivery", "pickup"]


class CustomerInput(BaseModel):
    phone: str = Field(min_length=3, max_length=32)
    name: str | None = Field(default=None, max_length=120)
    address: str | None = Field(default=None, max_length=500)


class OrderItemInput(BaseModel):
    product_id: int | None = Field(default=None, ge=1)
    title: str | None = Field(default=None, max_length=120)
    unit_price: Decimal | None = Field(default=None, ge=0)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)


class OrderCreateRequest(BaseModel):
    customer: CustomerInput
    order_type: OrderType = "delivery"
    items: list[OrderItemInput] = Field(default_factory=list)
    total: Decimal | None = Field(default=None, ge=0)
    delivery_fee: Decimal | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=255)


class OrderUpdateRequest(BaseModel):
    status: OrderStatus | None = None
    order_type: OrderType | None = None
    total: Decimal | None = Field(default=None, ge=0)
    delivery_fee: Decimal | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=255)


class OrderItemPriceRequest(BaseModel):
    total_price: Decimal = Field(gt=0)


class ReplaceOrderItemRequest(BaseModel):
    replaced_by_product_id: int | None = Field(default=None, ge=1)


class ReplacementDecisionRequest(BaseModel):
    decision: Literal["approve", "reject"]
    reason: str | None = Field(default=None, max_length=500)


class CustomerRejectOrderRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ProductCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    price: Decimal | None = Field(default=None, ge=0)
    is_available: bool = True


class ProductUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    price: Decimal | None = Field(default=None, ge=0)
    status: Literal["active", "archived"] | None = None
    is_available: bool | None = None


class AvailabilityRequestCreateRequest(BaseModel):
    product_id: int = Field(ge=1)
    visitor_key: str = Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
