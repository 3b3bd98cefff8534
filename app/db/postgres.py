from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from app.errors import DuplicateViolation

logger = logging.getLogger(__name__)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresDatabase:
    """Hands out one dedicated connection per session; nothing is shared between requests."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    @property
    def dsn(self) -> str:
        return self._dsn

    def open_session(self) -> PostgresSession:
        psycopg = _import_psycopg()
        conn = psycopg.connect(self._dsn)
        return PostgresSession(conn, driver=psycopg)


class PostgresSession:
    """One transaction on one connection, with the tenant bound via ``set_config``.

    ``set_config(..., true)`` is transaction-local, so the tenant variable dies
    with the transaction and can never leak to the next user of a pooled
    connection.
    """

    def __init__(self, conn: Any, *, driver: Any) -> None:
        self._conn = conn
        self._driver = driver
        self._active = False
        self._tenant_id: int | None = None
        self._after_commit: list[Callable[[], None]] = []
        self._repositories: Any = None

    @property
    def connection(self) -> Any:
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._active

    @property
    def tenant_id(self) -> int | None:
        return self._tenant_id

    @property
    def repositories(self) -> Any:
        if self._repositories is None:
            from app.repositories import build_postgres_repositories

            self._repositories = build_postgres_repositories(self)
        return self._repositories

    def begin(self) -> None:
        if self._active:
            raise RuntimeError("transaction already active")
        # psycopg opens the transaction implicitly on the first statement.
        self._active = True

    def commit(self) -> None:
        self._require_active()
        self._conn.commit()
        callbacks = list(self._after_commit)
        self._finish()
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning("after_commit_callback_failed error=%s", exc)

    def rollback(self) -> None:
        self._require_active()
        try:
            self._conn.rollback()
        finally:
            self._finish()

    def close(self) -> None:
        try:
            if self._active:
                self.rollback()
        finally:
            self._conn.close()

    def set_tenant(self, tenant_id: int) -> None:
        self._require_active()
        self.fetch_one("SELECT set_config('app.tenant_id', %s, true)", (str(int(tenant_id)),))
        self._tenant_id = int(tenant_id)

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._require_active()
        self._after_commit.append(callback)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        self._require_active()
        with self._conn.transaction():
            yield

    def lock_row(self, table: str, row_id: int) -> None:
        # UPDATE takes the row lock itself; nothing to do up front.
        return None

    def resolve_tenant_id_by_slug(self, slug: str) -> int | None:
        row = self.fetch_one("SELECT app.resolve_tenant_id_by_slug(%s)::int AS tenant_id", (slug,))
        return self._as_tenant_id(row)

    def resolve_tenant_id_by_order_token(self, token: str) -> int | None:
        row = self.fetch_one("SELECT app.resolve_tenant_id_by_order_token(%s)::int AS tenant_id", (token,))
        return self._as_tenant_id(row)

    def fetch_one(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> dict[str, Any] | None:
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def fetch_all(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(sql, params)
            return list(cur.fetchall() or [])

    def execute(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> int:
        with self._cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        self._require_active()
        try:
            with self._conn.cursor(row_factory=self._driver.rows.dict_row) as cur:
                yield cur
        except self._driver.errors.UniqueViolation as exc:
            diag = getattr(exc, "diag", None)
            constraint = getattr(diag, "constraint_name", None) or "unique_constraint"
            raise DuplicateViolation(constraint=constraint) from exc

    @staticmethod
    def _as_tenant_id(row: dict[str, Any] | None) -> int | None:
        if not row:
            return None
        value = row.get("tenant_id")
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
        return None

    def _finish(self) -> None:
        self._after_commit.clear()
        self._active = False
        self._tenant_id = None

    def _require_active(self) -> None:
        if not self._active:
            raise RuntimeError("no active transaction")
