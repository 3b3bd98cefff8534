import pathlib
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.db.memory import InMemoryDatabase
from app.main import create_app
from app.tenancy.context import session_scope

JWT_SECRET = "jwt_test_secret"


def issue_token(*, tenant_id: Any, secret: str = JWT_SECRET, role: str = "merchant", ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": f"user_{tenant_id}",
        "tenant_id": tenant_id,
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def send(self, template_key: str, phone: str, payload: dict[str, Any]) -> None:
        self.sent.append((template_key, phone, payload))

    def keys(self) -> list[str]:
        return [key for key, _phone, _payload in self.sent]


class AuthenticatedClient:
    """TestClient wrapper that signs requests as the merchant of ``tenant_id``."""

    def __init__(self, client: TestClient, *, tenant_id: int, jwt_secret: str = JWT_SECRET):
        self._client = client
        self._tenant_id = tenant_id
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if "Authorization" not in headers:
            token = issue_token(tenant_id=self._tenant_id, secret=self._jwt_secret)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def jwt_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")
    monkeypatch.setenv("SF_DB_BACKEND", "memory")
    monkeypatch.delenv("SF_NOTIFY_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("SF_REQUIRE_TRUESTACK", raising=False)
    monkeypatch.delenv("SF_TRUST_TENANT_HEADER", raising=False)
    yield


@pytest.fixture
def database() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def app(database, notifier):
    return create_app(database=database, notifier=notifier)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def make_tenant(services):
    def _make(*, slug: str, phone: str, name: str | None = None) -> dict[str, Any]:
        return services.tenants.register(name=name or slug.title(), slug=slug, phone=phone)

    return _make


@pytest.fixture
def make_product(services):
    def _make(tenant_id: int, *, name: str, price: str = "10.00", **kwargs) -> dict[str, Any]:
        return services.products.create(tenant_id, name=name, price=Decimal(price), **kwargs)

    return _make


@pytest.fixture
def tenant_a(make_tenant):
    return make_tenant(slug="alpha-market", phone="+201000000001", name="Alpha Market")


@pytest.fixture
def tenant_b(make_tenant):
    return make_tenant(slug="beta-grocer", phone="+201000000002", name="Beta Grocer")


@pytest.fixture
def make_token():
    return issue_token


@pytest.fixture
def as_merchant(client):
    def _client(tenant_id: int) -> AuthenticatedClient:
        return AuthenticatedClient(client, tenant_id=tenant_id)

    return _client


@pytest.fixture
def merchant_a(client, tenant_a) -> AuthenticatedClient:
    return AuthenticatedClient(client, tenant_id=tenant_a["id"])


@pytest.fixture
def merchant_b(client, tenant_b) -> AuthenticatedClient:
    return AuthenticatedClient(client, tenant_id=tenant_b["id"])


@pytest.fixture
def tenant_rows(database):
    def _rows(table: str, tenant_id: int) -> list[dict[str, Any]]:
        with session_scope(database, tenant_id=tenant_id) as session:
            return session.select(table)

    return _rows
