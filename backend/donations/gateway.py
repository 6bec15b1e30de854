"""
Payment Gateway Contract
========================
Provider-neutral interface every payment adapter implements, plus the
status vocabulary shared by the adapters and the webhook reconciler.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping, Optional

from pydantic import BaseModel

from donations.models import (
    Frequency,
    GatewayPayment,
    GatewayStatus,
    GatewaySubscription,
    PaymentRequest,
    WebhookNotification,
)

# Raw provider statuses grouped by how the reconciler treats them
APPROVED_STATUSES = frozenset({"approved", "authorized"})
REJECTED_STATUSES = frozenset({"rejected"})
CANCELLED_STATUSES = frozenset({"cancelled", "canceled"})
IN_FLIGHT_STATUSES = frozenset({"pending", "in_process", "in_mediation", "paused"})


class SubscriptionChange(BaseModel):
    """Options for update_subscription. Only the charge amount is supported."""

    amount: Decimal


def next_billing_date(frequency: Frequency, start: datetime) -> datetime:
    """Next charge after `start` for the given frequency."""
    if frequency == Frequency.WEEKLY:
        return start + timedelta(days=7)
    if frequency == Frequency.MONTHLY:
        month = start.month % 12 + 1
        year = start.year + (1 if start.month == 12 else 0)
        return _clamp_day(start, year, month)
    return _clamp_day(start, start.year + 1, start.month)


def _clamp_day(start: datetime, year: int, month: int) -> datetime:
    # Jan 31 + 1 month lands on the last day of February
    for day in range(start.day, 27, -1):
        try:
            return start.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return start.replace(year=year, month=month, day=min(start.day, 28))


class IPaymentGateway(ABC):
    """Payment provider adapter"""

    name: str = "gateway"

    @abstractmethod
    async def create_single_payment(self, request: PaymentRequest) -> GatewayPayment:
        pass

    @abstractmethod
    async def create_subscription(self, request: PaymentRequest) -> GatewaySubscription:
        pass

    @abstractmethod
    async def get_payment_status(self, payment_id: str) -> GatewayStatus:
        pass

    @abstractmethod
    async def search_payment(self, external_reference: str) -> Optional[GatewayStatus]:
        """Latest payment made against a checkout, or None if the donor has not paid yet."""

    @abstractmethod
    async def get_subscription_status(self, subscription_id: str) -> GatewayStatus:
        pass

    @abstractmethod
    async def update_subscription(
        self,
        subscription_id: str,
        change: SubscriptionChange,
    ) -> GatewayStatus:
        pass

    @abstractmethod
    async def cancel_subscription(self, subscription_id: str) -> GatewayStatus:
        pass

    @abstractmethod
    async def process_webhook_payload(
        self,
        payload: Mapping,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookNotification]:
        """
        Normalize a provider notification.

        Returns None for payloads that carry nothing to reconcile (unknown
        topics, test pings). Raises GatewayError when the payload cannot be
        authenticated or the referenced resource cannot be fetched.
        """

    async def close(self) -> None:
        pass
