from __future__ import annotations

from typing import Any

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS tenants (
      id SERIAL PRIMARY KEY,
      name VARCHAR NOT NULL,
      slug VARCHAR NOT NULL UNIQUE,
      phone VARCHAR NOT NULL UNIQUE,
      customer_counter INTEGER NOT NULL DEFAULT 0,
      status VARCHAR NOT NULL DEFAULT 'active',
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS customers (
      id SERIAL PRIMARY KEY,
      tenant_id INTEGER NOT NULL REFERENCES tenants(id),
      phone VARCHAR NOT NULL,
      code INTEGER NOT NULL,
      name VARCHAR,
      address TEXT,
      order_count INTEGER NOT NULL DEFAULT 0,
      first_order_at TIMESTAMPTZ,
      last_order_at TIMESTAMPTZ,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      CONSTRAINT customers_tenant_id_phone_key UNIQUE (tenant_id, phone),
      CONSTRAINT customers_tenant_id_code_key UNIQUE (tenant_id, code)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
      id SERIAL PRIMARY KEY,
      tenant_id INTEGER NOT NULL REFERENCES tenants(id),
      name VARCHAR NOT NULL,
      price NUMERIC(10, 2),
      status VARCHAR NOT NULL DEFAULT 'active',
      is_available BOOLEAN NOT NULL DEFAULT true,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
      id SERIAL PRIMARY KEY,
      tenant_id INTEGER NOT NULL REFERENCES tenants(id),
      customer_id INTEGER NOT NULL REFERENCES customers(id),
      public_token VARCHAR NOT NULL,
      order_type VARCHAR NOT NULL DEFAULT 'delivery',
      status VARCHAR NOT NULL DEFAULT 'draft',
      pricing_mode VARCHAR NOT NULL DEFAULT 'auto',
      subtotal NUMERIC(10, 2),
      delivery_fee NUMERIC(10, 2) NOT NULL DEFAULT 0,
      total NUMERIC(10, 2),
      notes TEXT,
      customer_rejection_reason TEXT,
      customer_rejected_at TIMESTAMPTZ,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      CONSTRAINT orders_public_token_key UNIQUE (public_token)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
      id SERIAL PRIMARY KEY,
      tenant_id INTEGER NOT NULL REFERENCES tenants(id),
      order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
      product_id INTEGER REFERENCES products(id),
      title VARCHAR NOT NULL,
      unit_price NUMERIC(10, 2) NOT NULL DEFAULT 0,
      quantity NUMERIC(10, 3) NOT NULL DEFAULT 1,
      total NUMERIC(10, 2) NOT NULL DEFAULT 0,
      pending_replacement_product_id INTEGER REFERENCES products(id),
      replaced_by_product_id INTEGER REFERENCES products(id),
      replacement_decision_status VARCHAR NOT NULL DEFAULT 'none',
      replacement_decision_reason TEXT,
      replacement_decided_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS availability_requests (
      id SERIAL PRIMARY KEY,
      tenant_id INTEGER NOT NULL REFERENCES tenants(id),
      product_id INTEGER NOT NULL REFERENCES products(id),
      visitor_key VARCHAR(64) NOT NULL,
      request_date DATE NOT NULL,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      CONSTRAINT availability_requests_tenant_product_visitor_date_key
        UNIQUE (tenant_id, product_id, visitor_key, request_date)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_tenant_created ON orders (tenant_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id)",
    "CREATE INDEX IF NOT EXISTS idx_products_tenant_status ON products (tenant_id, status)",
)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresSchemaManager:
    """Create the storefront tables; idempotent."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def apply(self) -> int:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        return len(SCHEMA_STATEMENTS)
