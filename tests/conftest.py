import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.clients import stripe_gateway as gateway_module
from app.clients.identity import SupabaseIdentityClient
from app.clients.stripe_gateway import StripeGateway
from app.config import Settings
from app.core.database import build_engine, create_schema
from app.main import create_app
from app.services.billing import access as access_module
from app.services.billing import reconciliation as reconciliation_module
from app.services.billing import store as store_module
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.billing.store import InMemoryEntitlementStore, SqlEntitlementStore
from tests.helpers.fake_stripe import API_KEY, WEBHOOK_SECRET, FakeStripe
from tests.helpers.metrics_stub import StubMetrics

PRICE_CATALOG = {"monthly": "price_monthly", "yearly": "price_yearly"}

IDENTITIES = {
    "token-acct-1": {"id": "acct-1", "email": "founder@example.com"},
    "token-acct-2": {"id": "acct-2", "email": "other@example.com"},
}


def _identity_handler(request: httpx.Request) -> httpx.Response:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    user = IDENTITIES.get(token)
    if user is None:
        return httpx.Response(401, json={"msg": "invalid JWT"})
    return httpx.Response(200, json=user)


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(reconciliation_module, "metrics", stub)
    monkeypatch.setattr(access_module, "metrics", stub)
    monkeypatch.setattr(store_module, "metrics", stub)
    monkeypatch.setattr(gateway_module, "metrics", stub)
    return stub


@pytest.fixture
def memory_store():
    return InMemoryEntitlementStore()


@pytest.fixture
def gateway(fake_stripe):
    return StripeGateway(
        API_KEY,
        app_base_url="https://app.test",
        price_catalog=PRICE_CATALOG,
        timeout=2.0,
        sdk=fake_stripe,
    )


@pytest.fixture
def reconciler(memory_store, gateway, stub_metrics):
    return ReconciliationEngine(memory_store, gateway, store_timeout=2.0)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def entitlement_store(request, tmp_path):
    """Run store contract tests against both backends."""
    if request.param == "memory":
        yield InMemoryEntitlementStore()
        return
    engine = build_engine(
        Settings(
            _env_file=None,
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
            debug=False,
        )
    )
    await create_schema(engine)
    try:
        yield SqlEntitlementStore(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        debug=True,
        database_url=None,
        stripe_secret_key=API_KEY,
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_monthly=PRICE_CATALOG["monthly"],
        stripe_price_yearly=PRICE_CATALOG["yearly"],
        app_base_url="https://app.test",
        supabase_url="https://identity.test",
        supabase_anon_key="anon-key",
        provider_timeout_seconds=2.0,
        store_timeout_seconds=2.0,
    )


@pytest.fixture
def identity_client():
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(_identity_handler), base_url="https://identity.test"
    )
    return SupabaseIdentityClient(
        "https://identity.test", "anon-key", http_client=http_client
    )


@pytest.fixture
def app(test_settings, fake_stripe, identity_client):
    return create_app(test_settings, stripe_sdk=fake_stripe, identity_client=identity_client)


@pytest.fixture
def client(app):
    """Test client with the lifespan started so app.state is populated."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer token-acct-1"}
