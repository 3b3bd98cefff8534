from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.services.availability import AvailabilityRequestService
from app.services.customers import CustomerSequenceAllocator, CustomerService
from app.services.notifications import Notifier
from app.services.orders import OrderLinks, OrderService
from app.services.products import ProductService
from app.services.replacements import ReplacementService
from app.services.tenants import TenantService


@dataclass(frozen=True)
class Services:
    tenants: TenantService
    customers: CustomerService
    allocator: CustomerSequenceAllocator
    products: ProductService
    orders: OrderService
    replacements: ReplacementService
    availability: AvailabilityRequestService


def build_services(database: Any, notifier: Notifier, *, links: OrderLinks | None = None) -> Services:
    links = links or OrderLinks.from_env()
    allocator = CustomerSequenceAllocator(database)
    return Services(
        tenants=TenantService(database),
        customers=CustomerService(database),
        allocator=allocator,
        products=ProductService(database),
        orders=OrderService(database, notifier, links=links, allocator=allocator),
        replacements=ReplacementService(database, notifier, links=links),
        availability=AvailabilityRequestService(database),
    )
