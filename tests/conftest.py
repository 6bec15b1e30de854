"""
Test Configuration and Fixtures

Every test gets its own store, mock gateway state and event bus, so cases
never see each other's donations.
"""

import os
from typing import AsyncGenerator

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment before importing the app module
os.environ.setdefault("ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("PAYMENT_GATEWAY_MODE", "mock")
os.environ.setdefault("DONATION_STORE", "memory")
os.environ.setdefault("DONATION_EVENT_BUS", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret")

from donations.container import ServiceContainer  # noqa: E402
from donations.coordinator import DonationLifecycleCoordinator  # noqa: E402
from donations.events import InMemoryEventBus  # noqa: E402
from donations.mock_gateway import MockGatewayStore, MockPaymentGateway  # noqa: E402
from donations.reconciler import PaymentWebhookReconciler  # noqa: E402
from donations.settings import DonationSettings, SweepConfig  # noqa: E402
from donations.store import InMemoryDonationStore  # noqa: E402
from donations.subscriptions import RecurringSubscriptionManager  # noqa: E402
from donations.validator import DonationRequestValidator  # noqa: E402

JWT_SECRET = "test-secret"


def make_token(subject: str, user_type: str = "organization", secret: str = JWT_SECRET) -> str:
    return jwt.encode({"sub": subject, "userType": user_type}, secret, algorithm="HS256")


def auth_headers(subject: str = "org1", user_type: str = "organization") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(subject, user_type)}"}


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================

@pytest.fixture
def settings() -> DonationSettings:
    return DonationSettings(jwt_secret=JWT_SECRET, gateway_timeout_seconds=0.5)


@pytest.fixture
def store() -> InMemoryDonationStore:
    return InMemoryDonationStore()


@pytest.fixture
def mock_store() -> MockGatewayStore:
    return MockGatewayStore()


@pytest.fixture
def gateway(mock_store) -> MockPaymentGateway:
    return MockPaymentGateway(mock_store, checkout_base_url="http://test/mock")


@pytest_asyncio.fixture
async def event_bus() -> AsyncGenerator[InMemoryEventBus, None]:
    bus = InMemoryEventBus()
    await bus.connect()
    yield bus
    await bus.disconnect()


@pytest.fixture
def validator(settings) -> DonationRequestValidator:
    return DonationRequestValidator(settings)


@pytest.fixture
def coordinator(store, gateway, validator, event_bus, settings) -> DonationLifecycleCoordinator:
    return DonationLifecycleCoordinator(store, gateway, validator, event_bus, settings)


@pytest.fixture
def reconciler(store, gateway, event_bus) -> PaymentWebhookReconciler:
    return PaymentWebhookReconciler(store, gateway, event_bus)


@pytest.fixture
def subscriptions(store, gateway, validator, event_bus) -> RecurringSubscriptionManager:
    return RecurringSubscriptionManager(store, gateway, validator, event_bus)


@pytest.fixture
def single_request() -> dict:
    return {
        "organizationId": "org1",
        "organizationName": "Casa Esperança",
        "amount": "50.00",
        "donorName": "Maria Silva",
        "donorEmail": "maria@example.com",
    }


@pytest.fixture
def recurring_request(single_request) -> dict:
    return {**single_request, "amount": 30, "frequency": "monthly"}


# =============================================================================
# APPLICATION FIXTURES
# =============================================================================

@pytest.fixture
def container(settings, store, gateway, event_bus) -> ServiceContainer:
    return ServiceContainer.build(
        settings,
        SweepConfig(enabled=False),
        store=store,
        gateway=gateway,
        events=event_bus,
    )


@pytest.fixture
def app(container):
    from api.server import create_app

    return create_app(container)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth():
    """Bearer headers for a caller: auth("org1") or auth("root", "admin")."""
    return auth_headers
