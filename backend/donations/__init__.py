# donations/__init__.py
# Donation payment lifecycle: creation, gateway adapters, webhook reconciliation
# and recurring subscription management.

from donations.errors import (
    DonationError,
    ValidationError,
    PolicyViolation,
    GatewayError,
    PaymentInitiationError,
    ReconciliationConflict,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
)

from donations.models import (
    Donation,
    DonationDraft,
    DonationPlan,
    DonationStatus,
    DonationType,
    Frequency,
    Requester,
    CreationResult,
    WebhookNotification,
)

from donations.settings import DonationSettings, SweepConfig
from donations.validator import DonationRequestValidator
from donations.gateway import IPaymentGateway, SubscriptionChange
from donations.mock_gateway import MockGatewayStore, MockPaymentGateway
from donations.mercadopago import MercadoPagoGateway
from donations.store import IDonationStore, InMemoryDonationStore, PostgresDonationStore
from donations.events import DonationEvent, DonationEventType, InMemoryEventBus, RabbitMQEventBus
from donations.coordinator import DonationLifecycleCoordinator
from donations.reconciler import PaymentWebhookReconciler, ReconciliationOutcome, WebhookAck
from donations.subscriptions import RecurringSubscriptionManager, SubscriptionView

__all__ = [
    # Errors
    "DonationError",
    "ValidationError",
    "PolicyViolation",
    "GatewayError",
    "PaymentInitiationError",
    "ReconciliationConflict",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    # Models
    "Donation",
    "DonationDraft",
    "DonationPlan",
    "DonationStatus",
    "DonationType",
    "Frequency",
    "Requester",
    "CreationResult",
    "WebhookNotification",
    # Config
    "DonationSettings",
    "SweepConfig",
    # Services
    "DonationRequestValidator",
    "IPaymentGateway",
    "SubscriptionChange",
    "MockGatewayStore",
    "MockPaymentGateway",
    "MercadoPagoGateway",
    "IDonationStore",
    "InMemoryDonationStore",
    "PostgresDonationStore",
    "DonationEvent",
    "DonationEventType",
    "InMemoryEventBus",
    "RabbitMQEventBus",
    "DonationLifecycleCoordinator",
    "PaymentWebhookReconciler",
    "ReconciliationOutcome",
    "WebhookAck",
    "RecurringSubscriptionManager",
    "SubscriptionView",
]
