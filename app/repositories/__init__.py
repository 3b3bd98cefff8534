from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.repositories.availability_requests import (
    InMemoryAvailabilityRequestsRepository,
    PostgresAvailabilityRequestsRepository,
)
from app.repositories.customers import InMemoryCustomersRepository, PostgresCustomersRepository
from app.repositories.orders import InMemoryOrdersRepository, PostgresOrdersRepository
from app.repositories.products import InMemoryProductsRepository, PostgresProductsRepository
from app.repositories.tenants import InMemoryTenantsRepository, PostgresTenantsRepository


@dataclass(frozen=True)
class RepositorySet:
    tenants: Any
    customers: Any
    products: Any
    orders: Any
    availability_requests: Any


def build_memory_repositories(session: Any) -> RepositorySet:
    return RepositorySet(
        tenants=InMemoryTenantsRepository(session),
        customers=InMemoryCustomersRepository(session),
        products=InMemoryProductsRepository(session),
        orders=InMemoryOrdersRepository(session),
        availability_requests=InMemoryAvailabilityRequestsRepository(session),
    )


def build_postgres_repositories(session: Any) -> RepositorySet:
    return RepositorySet(
        tenants=PostgresTenantsRepository(session),
        customers=PostgresCustomersRepository(session),
        products=PostgresProductsRepository(session),
        orders=PostgresOrdersRepository(session),
        availability_requests=PostgresAvailabilityRequestsRepository(session),
    )


__all__ = [
    "RepositorySet",
    "build_memory_repositories",
    "build_postgres_repositories",
    "InMemoryAvailabilityRequestsRepository",
    "PostgresAvailabilityRequestsRepository",
    "InMemoryCustomersRepository",
    "PostgresCustomersRepository",
    "InMemoryOrdersRepository",
    "PostgresOrdersRepository",
    "InMemoryProductsRepository",
    "PostgresProductsRepository",
    "InMemoryTenantsRepository",
    "PostgresTenantsRepository",
]
