from __future__ import annotations

from fastapi import APIRouter, Query, Request

from app.routes._deps import ok_response, services_from_request, tenant_id_from_request
from app.schemas import ProductCreateRequest, ProductUpdateRequest

router = APIRouter(prefix="/products", tags=["products"])


@router.get("/public/{slug}")
def list_public_products(slug: str, request: Request):
    products = services_from_request(request).products.list(tenant_id_from_request(request))
    return ok_response(request, products)


@router.post("")
def create_product(payload: ProductCreateRequest, request: Request):
    product = services_from_request(request).products.create(
        tenant_id_from_request(request),
        name=payload.name,
        price=payload.price,
        is_available=payload.is_available,
    )
    return ok_response(request, product, status_code=201)


@router.get("")
def list_products(request: Request, include_archived: bool = Query(default=False)):
    products = services_from_request(request).products.list(
        tenant_id_from_request(request), include_archived=include_archived
    )
    return ok_response(request, products)


@router.get("/{product_id}")
def get_product(product_id: int, request: Request):
    return ok_response(request, services_from_request(request).products.get(tenant_id_from_request(request), product_id))


@router.patch("/{product_id}")
def update_product(product_id: int, payload: ProductUpdateRequest, request: Request):
    product = services_from_request(request).products.update(
        tenant_id_from_request(request),
        product_id,
        payload.model_dump(exclude_unset=True, exclude_none=True),
    )
    return ok_response(request, product)


@router.delete("/{product_id}")
def archive_product(product_id: int, request: Request):
    product = services_from_request(request).products.archive(tenant_id_from_request(request), product_id)
    return ok_response(request, product, message="archived")
