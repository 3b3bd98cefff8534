from __future__ import annotations

from fastapi import APIRouter, Query, Request

from app.routes._deps import ok_response, services_from_request, tenant_id_from_request
from app.schemas import AvailabilityRequestCreateRequest

router = APIRouter(prefix="/availability-requests", tags=["availability-requests"])


@router.post("/public/{slug}")
def create_public_availability_request(slug: str, payload: AvailabilityRequestCreateRequest, request: Request):
    result = services_from_request(request).availability.create_public(
        tenant_id_from_request(request),
        product_id=payload.product_id,
        visitor_key=payload.visitor_key,
    )
    return ok_response(request, result, status_code=201)


@router.get("/merchant/summary")
def merchant_summary(request: Request, days: int = Query(default=1), limit: int = Query(default=5)):
    summary = services_from_request(request).availability.merchant_summary(
        tenant_id_from_request(request), days=days, limit=limit
    )
    return ok_response(request, summary)
