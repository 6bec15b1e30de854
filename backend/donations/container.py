"""
Service Container
=================
Builds the donation services from settings and owns their startup and
shutdown. Collaborators can be passed in to override what settings select.
"""

from dataclasses import dataclass, field
from typing import Optional

import structlog

from donations.coordinator import DonationLifecycleCoordinator
from donations.events import IEventPublisher, InMemoryEventBus, RabbitMQEventBus
from donations.gateway import IPaymentGateway
from donations.mercadopago import MercadoPagoGateway
from donations.mock_gateway import MockGatewayStore, MockPaymentGateway
from donations.reconciler import PaymentWebhookReconciler
from donations.settings import DonationSettings, SweepConfig
from donations.store import IDonationStore, InMemoryDonationStore, PostgresDonationStore
from donations.subscriptions import RecurringSubscriptionManager
from donations.validator import DonationRequestValidator
from tasks.reconciliation_sweep import ReconciliationSweep

logger = structlog.get_logger().bind(component="service_container")


def build_gateway(settings: DonationSettings,
                  mock_store: Optional[MockGatewayStore] = None) -> IPaymentGateway:
    if settings.is_mock_gateway:
        return MockPaymentGateway(mock_store, checkout_base_url=settings.mock_checkout_base_url)
    return MercadoPagoGateway(settings)


def build_store(settings: DonationSettings) -> IDonationStore:
    if settings.store == "postgres":
        return PostgresDonationStore()
    return InMemoryDonationStore()


def build_event_bus(settings: DonationSettings) -> IEventPublisher:
    if settings.event_bus == "rabbitmq":
        return RabbitMQEventBus(settings.rabbitmq_url, settings.rabbitmq_exchange)
    return InMemoryEventBus()


@dataclass
class ServiceContainer:
    settings: DonationSettings
    sweep_config: SweepConfig
    store: IDonationStore
    gateway: IPaymentGateway
    events: IEventPublisher
    validator: DonationRequestValidator
    coordinator: DonationLifecycleCoordinator
    reconciler: PaymentWebhookReconciler
    subscriptions: RecurringSubscriptionManager
    sweep: ReconciliationSweep
    started: bool = field(default=False)

    @classmethod
    def build(
        cls,
        settings: Optional[DonationSettings] = None,
        sweep_config: Optional[SweepConfig] = None,
        *,
        store: Optional[IDonationStore] = None,
        gateway: Optional[IPaymentGateway] = None,
        events: Optional[IEventPublisher] = None,
    ) -> "ServiceContainer":
        settings = settings or DonationSettings.from_env()
        sweep_config = sweep_config or SweepConfig.from_env()
        store = store or build_store(settings)
        gateway = gateway or build_gateway(settings)
        events = events or build_event_bus(settings)
        validator = DonationRequestValidator(settings)
        reconciler = PaymentWebhookReconciler(store, gateway, events)

        logger.info("container_built",
                    gateway=gateway.name,
                    store=type(store).__name__,
                    event_bus=type(events).__name__)

        return cls(
            settings=settings,
            sweep_config=sweep_config,
            store=store,
            gateway=gateway,
            events=events,
            validator=validator,
            coordinator=DonationLifecycleCoordinator(store, gateway, validator, events, settings),
            reconciler=reconciler,
            subscriptions=RecurringSubscriptionManager(store, gateway, validator, events),
            sweep=ReconciliationSweep(store, gateway, reconciler, sweep_config, events),
        )

    @property
    def mock_gateway(self) -> Optional[MockPaymentGateway]:
        return self.gateway if isinstance(self.gateway, MockPaymentGateway) else None

    async def start(self):
        if isinstance(self.store, PostgresDonationStore):
            from database import init_database
            await init_database()
        try:
            await self.events.connect()
        except Exception as e:
            # Events are best effort; the API still serves without a broker
            logger.error("event_bus_connect_failed", error=str(e))
        self.started = True

    async def stop(self):
        await self.events.disconnect()
        await self.gateway.close()
        if isinstance(self.store, PostgresDonationStore):
            from database import close_database
            await close_database()
        self.started = False
