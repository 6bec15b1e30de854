"""
Mock Payment Gateway
====================
In-memory simulation of the Mercado Pago adapter for development and tests.

All state lives in a MockGatewayStore handed to the adapter, so tests can
build an isolated gateway per case and inspect or drive it directly.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from donations.errors import GatewayError
from donations.gateway import IPaymentGateway, SubscriptionChange, next_billing_date
from donations.models import (
    Frequency,
    GatewayPayment,
    GatewayStatus,
    GatewaySubscription,
    NotificationKind,
    PaymentRequest,
    WebhookNotification,
    utc_now,
)

logger = structlog.get_logger().bind(component="mock_gateway")


class MockResource(BaseModel):
    """A simulated payment or subscription."""

    id: str
    kind: NotificationKind
    status: str
    amount: Decimal
    frequency: Optional[Frequency] = None
    external_reference: str
    payer_email: str
    url: str
    next_billing_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


@dataclass
class MockGatewayStore:
    """Explicit state container for MockPaymentGateway."""

    resources: dict[str, MockResource] = field(default_factory=dict)
    by_reference: dict[tuple[NotificationKind, str], str] = field(default_factory=dict)
    failures: dict[str, GatewayError] = field(default_factory=dict)
    delays: dict[str, float] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def clear(self) -> None:
        self.resources.clear()
        self.by_reference.clear()
        self.failures.clear()
        self.delays.clear()
        self.calls.clear()

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)


class MockPaymentGateway(IPaymentGateway):
    """
    Simulated provider.

    Payments and subscriptions start `pending` and are moved along with
    mark_approved / mark_status. Creation is deduplicated on the external
    reference, so a retried create returns the resource created first.
    """

    name = "mock"

    def __init__(
        self,
        store: Optional[MockGatewayStore] = None,
        checkout_base_url: str = "http://localhost:8000/mock",
    ):
        self.store = store if store is not None else MockGatewayStore()
        self.checkout_base_url = checkout_base_url.rstrip("/")
        logger.info("mock_gateway_initialized", checkout_base_url=self.checkout_base_url)

    # =========================================================================
    # TEST / DEV HOOKS
    # =========================================================================

    def fail_next(self, operation: str, message: str = "Simulated provider failure",
                  provider_status: Optional[int] = 500):
        """Make the next call to `operation` raise GatewayError."""
        self.store.failures[operation] = GatewayError(
            message, provider_status=provider_status, operation=operation,
        )

    def delay_next(self, operation: str, seconds: float):
        """Make the next call to `operation` sleep before answering."""
        self.store.delays[operation] = seconds

    async def mark_approved(self, resource_id: str) -> MockResource:
        resource = self._require(resource_id, "mark_approved")
        status = "authorized" if resource.kind == NotificationKind.SUBSCRIPTION else "approved"
        return await self.mark_status(resource_id, status)

    async def mark_status(self, resource_id: str, status: str) -> MockResource:
        async with self.store.lock:
            resource = self._require(resource_id, "mark_status")
            updated = resource.model_copy(update={"status": status, "updated_at": utc_now()})
            self.store.resources[resource_id] = updated
        logger.info("mock_status_changed", resource_id=resource_id, status=status)
        return updated

    def notification_for(self, resource_id: str) -> WebhookNotification:
        """The notification the provider would send for the current state."""
        resource = self._require(resource_id, "notification_for")
        return WebhookNotification(
            kind=resource.kind,
            reference=resource.id,
            status=resource.status,
            external_reference=resource.external_reference,
            event_id=f"mock_evt_{uuid.uuid4().hex[:12]}",
        )

    # =========================================================================
    # ADAPTER CONTRACT
    # =========================================================================

    async def create_single_payment(self, request: PaymentRequest) -> GatewayPayment:
        resource = await self._create(NotificationKind.PAYMENT, "create_single_payment", request)
        return GatewayPayment(
            id=resource.id,
            status=resource.status,
            payment_url=resource.url,
            external_reference=resource.external_reference,
        )

    async def create_subscription(self, request: PaymentRequest) -> GatewaySubscription:
        if request.frequency is None:
            raise GatewayError("Subscription requires a frequency", provider_status=400,
                               operation="create_subscription")
        resource = await self._create(NotificationKind.SUBSCRIPTION, "create_subscription", request)
        return GatewaySubscription(
            id=resource.id,
            status=resource.status,
            subscription_url=resource.url,
            external_reference=resource.external_reference,
        )

    async def get_payment_status(self, payment_id: str) -> GatewayStatus:
        await self._before("get_payment_status", payment_id)
        return self._status(self._require(payment_id, "get_payment_status"))

    async def search_payment(self, external_reference: str) -> Optional[GatewayStatus]:
        await self._before("search_payment", external_reference)
        resource_id = self.store.by_reference.get((NotificationKind.PAYMENT, external_reference))
        if resource_id is None:
            return None
        return self._status(self.store.resources[resource_id])

    async def get_subscription_status(self, subscription_id: str) -> GatewayStatus:
        await self._before("get_subscription_status", subscription_id)
        return self._status(self._require(subscription_id, "get_subscription_status"))

    async def update_subscription(
        self,
        subscription_id: str,
        change: SubscriptionChange,
    ) -> GatewayStatus:
        await self._before("update_subscription", subscription_id)
        async with self.store.lock:
            resource = self._require(subscription_id, "update_subscription")
            if resource.status in ("cancelled", "canceled"):
                raise GatewayError("Cannot update a cancelled subscription",
                                   provider_status=400, operation="update_subscription")
            resource = resource.model_copy(update={"amount": change.amount, "updated_at": utc_now()})
            self.store.resources[subscription_id] = resource
        logger.info("mock_subscription_updated", subscription_id=subscription_id,
                    amount=str(change.amount))
        return self._status(resource)

    async def cancel_subscription(self, subscription_id: str) -> GatewayStatus:
        await self._before("cancel_subscription", subscription_id)
        async with self.store.lock:
            resource = self._require(subscription_id, "cancel_subscription")
            resource = resource.model_copy(update={"status": "cancelled", "updated_at": utc_now()})
            self.store.resources[subscription_id] = resource
        logger.info("mock_subscription_cancelled", subscription_id=subscription_id)
        return self._status(resource)

    async def process_webhook_payload(
        self,
        payload: Mapping,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookNotification]:
        topic = payload.get("type") or payload.get("topic")
        data = payload.get("data") or {}
        resource_id = data.get("id") if isinstance(data, Mapping) else None
        if resource_id is None:
            resource_id = payload.get("id")

        kind = _kind_for_topic(topic)
        if kind is None or not resource_id:
            logger.info("mock_webhook_ignored", topic=topic)
            return None

        resource_id = str(resource_id)
        resource = self.store.resources.get(resource_id)
        status = payload.get("status") or (resource.status if resource else None)
        if status is None:
            logger.warning("mock_webhook_unknown_resource", resource_id=resource_id)
            return None

        return WebhookNotification(
            kind=kind,
            reference=resource_id,
            status=str(status).lower(),
            external_reference=payload.get("external_reference")
            or (resource.external_reference if resource else None),
            event_id=str(payload["id"]) if payload.get("id") and data else None,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _create(self, kind: NotificationKind, operation: str,
                      request: PaymentRequest) -> MockResource:
        await self._before(operation, request.external_reference)

        async with self.store.lock:
            existing_id = self.store.by_reference.get((kind, request.external_reference))
            if existing_id:
                logger.info("mock_create_deduplicated", operation=operation,
                            external_reference=request.external_reference,
                            resource_id=existing_id)
                return self.store.resources[existing_id]

            prefix = "mock_payment" if kind == NotificationKind.PAYMENT else "mock_sub"
            resource_id = f"{prefix}_{int(utc_now().timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"
            path = "payment" if kind == NotificationKind.PAYMENT else "subscription"
            now = utc_now()
            resource = MockResource(
                id=resource_id,
                kind=kind,
                status="pending",
                amount=request.amount,
                frequency=request.frequency,
                external_reference=request.external_reference,
                payer_email=request.payer.email,
                url=f"{self.checkout_base_url}/{path}/{resource_id}",
                next_billing_date=next_billing_date(request.frequency, now) if request.frequency else None,
                created_at=now,
                updated_at=now,
            )
            self.store.resources[resource_id] = resource
            self.store.by_reference[(kind, request.external_reference)] = resource_id

        logger.info("mock_resource_created", operation=operation, resource_id=resource_id,
                    external_reference=request.external_reference, amount=str(request.amount))
        return resource

    async def _before(self, operation: str, target: str):
        self.store.calls.append((operation, target))
        delay = self.store.delays.pop(operation, None)
        if delay:
            await asyncio.sleep(delay)
        error = self.store.failures.pop(operation, None)
        if error is not None:
            logger.warning("mock_failure_injected", operation=operation, target=target)
            raise error

    def _require(self, resource_id: str, operation: str) -> MockResource:
        resource = self.store.resources.get(resource_id)
        if resource is None:
            raise GatewayError(f"Resource {resource_id} not found (mock)",
                               provider_status=404, operation=operation)
        return resource

    @staticmethod
    def _status(resource: MockResource) -> GatewayStatus:
        return GatewayStatus(
            id=resource.id,
            status=resource.status,
            amount=resource.amount,
            frequency=resource.frequency.value if resource.frequency else None,
            next_billing_date=resource.next_billing_date,
            external_reference=resource.external_reference,
        )


def _kind_for_topic(topic: Optional[str]) -> Optional[NotificationKind]:
    if topic == "payment":
        return NotificationKind.PAYMENT
    if topic in ("preapproval", "subscription", "subscription_preapproval"):
        return NotificationKind.SUBSCRIPTION
    return None
