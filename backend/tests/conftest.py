"""
Pytest configuration and shared test fixtures.

The environment is configured before the application is imported so that
cached settings, the rate limiter and the application object all see the
test configuration. External collaborators are replaced through
``app.dependency_overrides``: the database by an in-memory table store,
Stripe by a client with test keys and Daraja by an httpx mock transport.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_LOG_LEVEL", "WARNING")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_STRIPE_SECRET_KEY", "sk_test_storefront")
os.environ.setdefault("APP_STRIPE_WEBHOOK_SECRET", "whsec_test_storefront")
os.environ.setdefault("APP_DARAJA_CONSUMER_KEY", "consumer-key")
os.environ.setdefault("APP_DARAJA_CONSUMER_SECRET", "consumer-secret")
os.environ.setdefault("APP_DARAJA_SHORTCODE", "174379")
os.environ.setdefault("APP_DARAJA_PASSKEY", "test-passkey")
os.environ.setdefault(
    "APP_DARAJA_CALLBACK_URL", "https://shop.example.com/api/payments/mpesa/callback"
)

import uuid
from typing import Callable, Generator, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from storefront.api.deps import (
    get_daraja_client,
    get_pending_transaction_store,
    get_store,
    get_stripe_client,
)
from storefront.core.config import Settings, get_settings
from storefront.core.security import ROLE_ADMIN, ROLE_USER, ROLE_VENDOR, Requester
from storefront.main import app
from storefront.services.payments.mpesa.daraja_client import DarajaClient
from storefront.services.payments.mpesa.pending_store import InMemoryPendingStore
from storefront.services.payments.stripe_client import StripeClient
from tests.fakes import WEBHOOK_SECRET, FakeTableStore, create_access_token


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def store() -> FakeTableStore:
    return FakeTableStore()


@pytest.fixture
def user() -> Requester:
    return Requester(id=str(uuid.uuid4()), role=ROLE_USER, email="buyer@example.com")


@pytest.fixture
def vendor() -> Requester:
    return Requester(id=str(uuid.uuid4()), role=ROLE_VENDOR, email="vendor@example.com")


@pytest.fixture
def admin() -> Requester:
    return Requester(id=str(uuid.uuid4()), role=ROLE_ADMIN, email="admin@example.com")


@pytest.fixture
def stripe_client() -> StripeClient:
    return StripeClient(
        api_key="sk_test_storefront",
        webhook_secret=WEBHOOK_SECRET,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def pending_store() -> InMemoryPendingStore:
    return InMemoryPendingStore()


class DarajaStub:
    """Scripted Daraja gateway for ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.token_response = httpx.Response(200, json={"access_token": "daraja-token", "expires_in": "3599"})
        self.stk_response = httpx.Response(
            200,
            json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
            },
        )
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/oauth/v1/generate"):
            return self.token_response
        return self.stk_response

    @property
    def stk_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/processrequest")]


@pytest.fixture
def daraja_stub() -> DarajaStub:
    return DarajaStub()


@pytest.fixture
def daraja_client(settings: Settings, daraja_stub: DarajaStub) -> DarajaClient:
    return DarajaClient(settings, transport=httpx.MockTransport(daraja_stub))


@pytest.fixture
def test_client(
    store: FakeTableStore,
    stripe_client: StripeClient,
    pending_store: InMemoryPendingStore,
    daraja_client: DarajaClient,
) -> Generator[TestClient, None, None]:
    """
    Synchronous test client with every external collaborator replaced.

    Yields:
        TestClient: Client for the FastAPI app
    """
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_stripe_client] = lambda: stripe_client
    app.dependency_overrides[get_pending_transaction_store] = lambda: pending_store
    app.dependency_overrides[get_daraja_client] = lambda: daraja_client
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    """Build an Authorization header for a requester."""

    def build(requester: Requester, idempotency_key: Optional[str] = None) -> dict[str, str]:
        token = create_access_token(requester.id, role=requester.role, email=requester.email)
        headers = {"Authorization": f"Bearer {token}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    return build
