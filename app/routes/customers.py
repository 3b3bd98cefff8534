from __future__ import annotations

from fastapi import APIRouter, Request

from app.routes._deps import ok_response, services_from_request, tenant_id_from_request

router = APIRouter(prefix="/customers", tags=["customers"])


@router.get("")
def list_customers(request: Request):
    return ok_response(request, services_from_request(request).customers.list(tenant_id_from_request(request)))


@router.get("/{customer_id}")
def get_customer(customer_id: int, request: Request):
    customer = services_from_request(request).customers.get(tenant_id_from_request(request), customer_id)
    return ok_response(request, customer)
