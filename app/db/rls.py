from __future__ import annotations

import re
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


TENANT_CONTEXT_FUNCTIONS: tuple[str, ...] = (
    "CREATE SCHEMA IF NOT EXISTS app",
    # NULL when unset: the isolation policy then matches nothing, and the
    # permissive tracking-token policy can still be evaluated alongside it.
    """
    CREATE OR REPLACE FUNCTION app.current_tenant_id()
    RETURNS integer
    LANGUAGE sql
    STABLE
    AS $$
      SELECT NULLIF(current_setting('app.tenant_id', true), '')::integer
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION app.resolve_tenant_id_by_slug(p_slug text)
    RETURNS integer
    LANGUAGE sql
    STABLE
    AS $$
      SELECT t.id FROM tenants t
      WHERE t.slug = p_slug AND t.deleted_at IS NULL
      LIMIT 1
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION app.resolve_tenant_id_by_order_token(p_token text)
    RETURNS integer
    LANGUAGE plpgsql
    VOLATILE
    AS $$
    DECLARE
      v_tenant_id integer;
    BEGIN
      PERFORM set_config('app.lookup_order_token', p_token, true);
      SELECT o.tenant_id INTO v_tenant_id
      FROM orders o
      WHERE o.public_token = p_token
      LIMIT 1;
      RETURN v_tenant_id;
    END;
    $$
    """,
)


class PostgresRlsManager:
    """Apply tenant RLS policies keyed on ``app.tenant_id`` to tenant-scoped tables."""

    DEFAULT_TABLES: tuple[str, ...] = (
        "customers",
        "products",
        "orders",
        "order_items",
        "availability_requests",
    )

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [_validate_identifier(name) for name in target_tables]

    def statements(self) -> list[str]:
        statements = list(TENANT_CONTEXT_FUNCTIONS)
        for table in self._tables:
            policy = f"tenant_isolation_{table}"
            statements.extend(
                [
                    f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
                    f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
                    f"DROP POLICY IF EXISTS {policy} ON {table}",
                    f"""
                    CREATE POLICY {policy} ON {table}
                    USING ({table}.tenant_id = app.current_tenant_id())
                    WITH CHECK ({table}.tenant_id = app.current_tenant_id())
                    """,
                ]
            )
        if "orders" in self._tables:
            statements.extend(
                [
                    "DROP POLICY IF EXISTS tracking_token_lookup_orders ON orders",
                    """
                    CREATE POLICY tracking_token_lookup_orders ON orders
                    FOR SELECT
                    USING (
                      current_setting('app.lookup_order_token', true) IS NOT NULL
                      AND public_token = current_setting('app.lookup_order_token', true)
                    )
                    """,
                ]
            )
        return statements

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self.statements():
                    cur.execute(statement)
            conn.commit()
        return list(self._tables)
