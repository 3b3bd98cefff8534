from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from app.db.postgres import PostgresDatabase
from app.errors import DuplicateViolation, TenantContextMissing
from app.main import create_app
from app.services.customers import CustomerSequenceAllocator


class FakeUniqueViolation(Exception):
    def __init__(self, constraint: str):
        super().__init__(constraint)
        self.diag = SimpleNamespace(constraint_name=constraint)


class FakeCursor:
    def __init__(self, connection: "FakeConnection"):
        self._connection = connection
        self._rows: list[dict] = []
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        normalized = " ".join(query.strip().split())
        self._connection.statements.append((normalized, tuple(params or ())))
        for needle, result in self._connection.responses:
            if needle in normalized:
                if isinstance(result, Exception):
                    raise result
                self._rows = list(result(params) if callable(result) else result)
                self.rowcount = len(self._rows)
                return
        self._rows = []
        self.rowcount = 0

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements: list[tuple[str, tuple]] = []
        self.events: list[str] = []

    def cursor(self, row_factory=None):
        return FakeCursor(self)

    @contextmanager
    def transaction(self):
        self.events.append("savepoint")
        try:
            yield
        except BaseException:
            self.events.append("savepoint_rollback")
            raise
        self.events.append("savepoint_release")

    def commit(self):
        self.events.append("commit")

    def rollback(self):
        self.events.append("rollback")

    def close(self):
        self.events.append("close")


class FakePsycopg:
    rows = SimpleNamespace(dict_row=object())
    errors = SimpleNamespace(UniqueViolation=FakeUniqueViolation)

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.connections: list[FakeConnection] = []

    def connect(self, dsn: str):
        conn = FakeConnection(self.responses)
        self.connections.append(conn)
        return conn


@pytest.fixture
def fake_driver(monkeypatch):
    driver = FakePsycopg()
    monkeypatch.setattr("app.db.postgres._import_psycopg", lambda: driver)
    return driver


def test_postgres_database_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        PostgresDatabase("  ")


def test_set_tenant_uses_transaction_local_config(fake_driver):
    session = PostgresDatabase("postgresql://shop").open_session()
    session.begin()
    session.set_tenant(7)
    conn = fake_driver.connections[0]
    assert conn.statements[0] == ("SELECT set_config('app.tenant_id', %s, true)", ("7",))
    assert session.tenant_id == 7
    session.commit()
    assert session.tenant_id is None
    session.close()
    assert conn.events == ["commit", "close"]


def test_repositories_refuse_to_run_without_tenant(fake_driver):
    session = PostgresDatabase("postgresql://shop").open_session()
    session.begin()
    with pytest.raises(TenantContextMissing):
        session.repositories.products.list()
    session.close()
    assert fake_driver.connections[0].events == ["rollback", "close"]


def test_statements_are_filtered_by_bound_tenant(fake_driver):
    session = PostgresDatabase("postgresql://shop").open_session()
    session.begin()
    session.set_tenant(3)
    session.repositories.products.list(active_only=True)
    session.repositories.orders.get(order_id=9, for_update=True)
    sql, params = fake_driver.connections[0].statements[1]
    assert sql == "SELECT * FROM products WHERE tenant_id = %s AND status = 'active' ORDER BY id"
    assert params == (3,)
    order_sql, order_params = fake_driver.connections[0].statements[2]
    assert order_sql.endswith("FOR UPDATE")
    assert order_params == (3, 9)


def test_unique_violation_maps_to_duplicate(fake_driver):
    fake_driver.responses.append(("INSERT INTO customers", FakeUniqueViolation("customers_tenant_id_phone_key")))
    session = PostgresDatabase("postgresql://shop").open_session()
    session.begin()
    session.set_tenant(1)
    with pytest.raises(DuplicateViolation) as exc:
        session.repositories.customers.create(phone="0100", code=1)
    assert exc.value.constraint == "customers_tenant_id_phone_key"
    assert exc.value.http_status == 409


def test_after_commit_callbacks_only_run_on_commit(fake_driver):
    calls: list[str] = []
    database = PostgresDatabase("postgresql://shop")
    committed = database.open_session()
    committed.begin()
    committed.after_commit(lambda: calls.append("sent"))
    committed.commit()

    rolled_back = database.open_session()
    rolled_back.begin()
    rolled_back.after_commit(lambda: calls.append("lost"))
    rolled_back.rollback()
    assert calls == ["sent"]


def test_allocator_retries_lookup_after_duplicate_inside_savepoint(fake_driver):
    existing = {"id": 11, "tenant_id": 1, "phone": "0100", "code": 4, "name": None, "address": None}
    lookups = iter([[], [existing]])
    fake_driver.responses.extend(
        [
            ("FROM customers WHERE tenant_id = %s AND phone = %s", lambda _params: next(lookups)),
            ("SET customer_counter = customer_counter + 1", [{"customer_counter": 5}]),
            ("INSERT INTO customers", FakeUniqueViolation("customers_tenant_id_phone_key")),
        ]
    )
    customer, created = CustomerSequenceAllocator(PostgresDatabase("postgresql://shop")).find_or_create(
        tenant_id=1, phone="0100"
    )
    assert created is False
    assert customer["id"] == 11
    conn = fake_driver.connections[0]
    assert conn.events == ["savepoint", "savepoint_rollback", "commit", "close"]


def test_request_runs_in_one_tenant_transaction(monkeypatch, fake_driver):
    monkeypatch.setenv("SF_DB_BACKEND", "postgres")
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://shop")
    fake_driver.responses.append(("FROM customers WHERE tenant_id = %s ORDER BY id", [{"id": 1, "phone": "0100"}]))
    client = TestClient(create_app())

    resp = client.get("/customers", headers={"x-tenant-id": "4"})

    assert resp.status_code == 200
    assert resp.json()["data"] == [{"id": 1, "phone": "0100"}]
    [conn] = fake_driver.connections
    assert conn.statements[0] == ("SELECT set_config('app.tenant_id', %s, true)", ("4",))
    assert conn.statements[1][1] == (4,)
    assert conn.events == ["commit", "close"]


def test_error_response_rolls_back_request_transaction(monkeypatch, fake_driver):
    monkeypatch.setenv("SF_DB_BACKEND", "postgres")
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://shop")
    client = TestClient(create_app())

    resp = client.get("/customers/5", headers={"x-tenant-id": "4"})

    assert resp.status_code == 404
    [conn] = fake_driver.connections
    assert conn.events == ["rollback", "close"]


def test_slug_lookup_runs_before_tenant_is_bound(monkeypatch, fake_driver):
    monkeypatch.setenv("SF_DB_BACKEND", "postgres")
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://shop")
    fake_driver.responses.append(("app.resolve_tenant_id_by_slug", [{"tenant_id": 6}]))
    client = TestClient(create_app())

    resp = client.get("/products/public/alpha")

    assert resp.status_code == 200
    [conn] = fake_driver.connections
    assert conn.statements[0] == ("SELECT app.resolve_tenant_id_by_slug(%s)::int AS tenant_id", ("alpha",))
    assert conn.statements[1] == ("SELECT set_config('app.tenant_id', %s, true)", ("6",))
