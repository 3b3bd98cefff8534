from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from app.errors import DuplicateViolation, RowSecurityViolation, TenantContextMissing

logger = logging.getLogger(__name__)


class InMemoryDatabase:
    """Process-local tables with the same isolation contract as the PostgreSQL schema."""

    TENANT_SCOPED_TABLES: frozenset[str] = frozenset(
        {"customers", "products", "orders", "order_items", "availability_requests"}
    )
    UNIQUE_CONSTRAINTS: dict[str, tuple[tuple[str, ...], ...]] = {
        "tenants": (("slug",), ("phone",)),
        "customers": (("tenant_id", "phone"), ("tenant_id", "code")),
        "orders": (("public_token",),),
        "availability_requests": (("tenant_id", "product_id", "visitor_key", "request_date"),),
    }

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._row_locks: dict[tuple[str, int], threading.Lock] = {}
        self.tables: dict[str, dict[int, dict[str, Any]]] = {}
        self._sequences: dict[str, int] = {}
        self.reset()

    @property
    def table_names(self) -> tuple[str, ...]:
        return ("tenants", *sorted(self.TENANT_SCOPED_TABLES))

    def reset(self) -> None:
        with self._lock:
            self.tables = {name: {} for name in self.table_names}
            self._sequences = {name: 0 for name in self.table_names}
            self._row_locks.clear()

    def open_session(self) -> InMemorySession:
        return InMemorySession(self)

    def row_lock(self, table: str, row_id: int) -> threading.Lock:
        with self._lock:
            return self._row_locks.setdefault((table, row_id), threading.Lock())

    def count_rows(self, table: str, predicate: Callable[[dict[str, Any]], bool] | None = None) -> int:
        """Unfiltered row count; for operators and tests, never for request code."""
        with self._lock:
            return sum(1 for row in self.tables[table].values() if predicate is None or predicate(row))


class InMemorySession:
    """One transaction against :class:`InMemoryDatabase`.

    Writes apply immediately and are recorded in an undo log; rollback replays
    it in reverse. ``lock_row`` holds a row lock until the transaction ends,
    which serializes concurrent counter increments on the same tenant row.

    There is no snapshot isolation: other sessions see these writes before
    commit, so a lookup such as ``get_by_phone`` can return a row whose
    creating transaction later rolls back. Only row locks and unique keys
    behave like PostgreSQL.
    """

    def __init__(self, database: InMemoryDatabase) -> None:
        self._db = database
        self._active = False
        self._closed = False
        self._tenant_id: int | None = None
        self._undo: list[Callable[[], None]] = []
        self._held_locks: list[threading.Lock] = []
        self._after_commit: list[Callable[[], None]] = []
        self._repositories: Any = None

    @property
    def in_transaction(self) -> bool:
        return self._active

    @property
    def tenant_id(self) -> int | None:
        return self._tenant_id

    @property
    def repositories(self) -> Any:
        if self._repositories is None:
            from app.repositories import build_memory_repositories

            self._repositories = build_memory_repositories(self)
        return self._repositories

    def begin(self) -> None:
        if self._closed:
            raise RuntimeError("session is closed")
        if self._active:
            raise RuntimeError("transaction already active")
        self._active = True

    def commit(self) -> None:
        self._require_active()
        callbacks = list(self._after_commit)
        self._finish()
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning("after_commit_callback_failed error=%s", exc)

    def rollback(self) -> None:
        self._require_active()
        self._undo_to(0)
        self._finish()

    def close(self) -> None:
        if self._active:
            self.rollback()
        self._closed = True

    def set_tenant(self, tenant_id: int) -> None:
        self._require_active()
        self._tenant_id = int(tenant_id)

    def after_commit(self, callback: Callable[[], None]) -> None:
        self._require_active()
        self._after_commit.append(callback)

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        self._require_active()
        mark = len(self._undo)
        try:
            yield
        except BaseException:
            self._undo_to(mark)
            raise

    def lock_row(self, table: str, row_id: int) -> None:
        self._require_active()
        lock = self._db.row_lock(table, row_id)
        if any(held is lock for held in self._held_locks):
            return
        lock.acquire()
        self._held_locks.append(lock)

    def resolve_tenant_id_by_slug(self, slug: str) -> int | None:
        self._require_active()
        with self._db._lock:
            for row in self._db.tables["tenants"].values():
                if row.get("slug") == slug and row.get("deleted_at") is None:
                    return int(row["id"])
        return None

    def resolve_tenant_id_by_order_token(self, token: str) -> int | None:
        self._require_active()
        with self._db._lock:
            for row in self._db.tables["orders"].values():
                if row.get("public_token") == token:
                    return int(row["tenant_id"])
        return None

    def select(
        self,
        table: str,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[dict[str, Any]]:
        self._require_active()
        tenant_id = self._visible_tenant(table)
        with self._db._lock:
            rows = [
                dict(row)
                for row in self._db.tables[table].values()
                if (tenant_id is None or row.get("tenant_id") == tenant_id) and (predicate is None or predicate(row))
            ]
        return sorted(rows, key=lambda row: row["id"])

    def get(self, table: str, row_id: int) -> dict[str, Any] | None:
        rows = self.select(table, lambda row: row["id"] == row_id)
        return rows[0] if rows else None

    def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        self._require_active()
        tenant_id = self._visible_tenant(table)
        item = dict(values)
        if tenant_id is not None:
            item.setdefault("tenant_id", tenant_id)
            if item["tenant_id"] != tenant_id:
                raise RowSecurityViolation(f"new row violates row-level security policy for table {table}")
        with self._db._lock:
            self._check_unique(table, item, exclude_id=None)
            self._db._sequences[table] += 1
            row_id = self._db._sequences[table]
            row = {**item, "id": row_id}
            rows = self._db.tables[table]
            rows[row_id] = row
            self._undo.append(lambda: rows.pop(row_id, None))
            return dict(row)

    def update(self, table: str, row_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        self._require_active()
        tenant_id = self._visible_tenant(table)
        with self._db._lock:
            rows = self._db.tables[table]
            row = rows.get(row_id)
            if row is None or (tenant_id is not None and row.get("tenant_id") != tenant_id):
                return None
            if tenant_id is not None and changes.get("tenant_id", tenant_id) != tenant_id:
                raise RowSecurityViolation(f"new row violates row-level security policy for table {table}")
            self._check_unique(table, {**row, **changes}, exclude_id=row_id)
            previous = dict(row)
            row.update(changes)
            self._undo.append(lambda: rows.__setitem__(row_id, previous))
            return dict(row)

    def delete(self, table: str, row_id: int) -> bool:
        self._require_active()
        tenant_id = self._visible_tenant(table)
        with self._db._lock:
            rows = self._db.tables[table]
            row = rows.get(row_id)
            if row is None or (tenant_id is not None and row.get("tenant_id") != tenant_id):
                return False
            previous = rows.pop(row_id)
            self._undo.append(lambda: rows.__setitem__(row_id, previous))
            return True

    def _visible_tenant(self, table: str) -> int | None:
        if table not in self._db.tables:
            raise KeyError(f"unknown table: {table}")
        if table not in self._db.TENANT_SCOPED_TABLES:
            return None
        if self._tenant_id is None:
            raise TenantContextMissing("app.tenant_id is not set")
        return self._tenant_id

    def _check_unique(self, table: str, item: dict[str, Any], *, exclude_id: int | None) -> None:
        for columns in self._db.UNIQUE_CONSTRAINTS.get(table, ()):
            key = tuple(item.get(col) for col in columns)
            if any(value is None for value in key):
                continue
            for other_id, other in self._db.tables[table].items():
                if other_id == exclude_id:
                    continue
                if tuple(other.get(col) for col in columns) == key:
                    raise DuplicateViolation(constraint=f"{table}_{'_'.join(columns)}_key")

    def _undo_to(self, mark: int) -> None:
        with self._db._lock:
            while len(self._undo) > mark:
                self._undo.pop()()

    def _finish(self) -> None:
        self._undo.clear()
        self._after_commit.clear()
        self._active = False
        self._tenant_id = None
        while self._held_locks:
            self._held_locks.pop().release()

    def _require_active(self) -> None:
        if not self._active:
            raise RuntimeError("no active transaction")
