from __future__ import annotations

import pytest

from app.db.memory import InMemoryDatabase
from app.errors import ApiError, RowSecurityViolation, TenantContextMissing
from app.tenancy.context import bind_tenant_context, current_session, current_tenant_id, session_scope


def _tenant(database: InMemoryDatabase, slug: str, phone: str) -> int:
    with session_scope(database) as session:
        return session.repositories.tenants.create(name=slug, slug=slug, phone=phone)["id"]


def test_nothing_bound_by_default():
    assert current_tenant_id() is None
    assert current_session() is None


def test_bind_is_scoped_to_the_block():
    database = InMemoryDatabase()
    session = database.open_session()
    with bind_tenant_context(tenant_id=3, session=session) as ctx:
        assert ctx.tenant_id == 3
        assert current_tenant_id() == 3
        assert current_session() is session
    assert current_tenant_id() is None


def test_session_scope_reuses_bound_session_without_committing():
    database = InMemoryDatabase()
    tenant_id = _tenant(database, "alpha", "+2011")
    session = database.open_session()
    session.begin()
    session.set_tenant(tenant_id)
    with bind_tenant_context(tenant_id=tenant_id, session=session):
        with session_scope(database, tenant_id=tenant_id) as scoped:
            assert scoped is session
            scoped.repositories.products.create(name="Milk", price=None)
    assert session.in_transaction is True
    session.rollback()
    assert database.count_rows("products") == 0


def test_session_scope_rejects_a_different_tenant_than_bound():
    database = InMemoryDatabase()
    session = database.open_session()
    with bind_tenant_context(tenant_id=1, session=session):
        with pytest.raises(ApiError) as exc:
            with session_scope(database, tenant_id=2):
                pass
    assert exc.value.code == "TENANT_SCOPE_VIOLATION"


def test_dedicated_scope_commits_and_binds_for_nested_calls():
    database = InMemoryDatabase()
    tenant_id = _tenant(database, "alpha", "+2011")
    with session_scope(database, tenant_id=tenant_id) as outer:
        assert current_tenant_id() == tenant_id
        with session_scope(database, tenant_id=tenant_id) as inner:
            assert inner is outer
            inner.repositories.products.create(name="Bread", price=None)
    assert current_tenant_id() is None
    assert database.count_rows("products") == 1


def test_dedicated_scope_rolls_back_on_error():
    database = InMemoryDatabase()
    tenant_id = _tenant(database, "alpha", "+2011")
    with pytest.raises(RuntimeError, match="boom"):
        with session_scope(database, tenant_id=tenant_id) as session:
            session.repositories.products.create(name="Bread", price=None)
            raise RuntimeError("boom")
    assert database.count_rows("products") == 0


def test_tenant_tables_require_a_bound_tenant():
    database = InMemoryDatabase()
    with session_scope(database) as session:
        with pytest.raises(TenantContextMissing):
            session.repositories.products.list()


def test_rows_of_other_tenants_are_invisible():
    database = InMemoryDatabase()
    tenant_a = _tenant(database, "alpha", "+2011")
    tenant_b = _tenant(database, "beta", "+2012")
    with session_scope(database, tenant_id=tenant_a) as session:
        product_id = session.repositories.products.create(name="Tea", price=None)["id"]

    with session_scope(database, tenant_id=tenant_b) as session:
        products = session.repositories.products
        assert products.get(product_id=product_id) is None
        assert products.update(product_id=product_id, changes={"name": "Stolen"}) is None
        assert products.list() == []
        with pytest.raises(RowSecurityViolation):
            session.insert("products", {"tenant_id": tenant_a, "name": "Spoofed"})

    with session_scope(database, tenant_id=tenant_a) as session:
        assert session.repositories.products.get(product_id=product_id)["name"] == "Tea"


def test_after_commit_callbacks_skip_rolled_back_transactions():
    database = InMemoryDatabase()
    calls: list[str] = []
    committed = database.open_session()
    committed.begin()
    committed.after_commit(lambda: calls.append("committed"))
    committed.commit()

    rolled_back = database.open_session()
    rolled_back.begin()
    rolled_back.after_commit(lambda: calls.append("rolled_back"))
    rolled_back.rollback()
    assert calls == ["committed"]
