"""
Recurring Subscription Manager
==============================
Cancel, re-price and inspect recurring donations on behalf of their
organization or an administrator.

The gateway is always called first; the local record changes only after
the provider confirmed the change.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from donations.errors import AuthorizationError, GatewayError, NotFoundError, PolicyViolation
from donations.events import DonationEventType, IEventPublisher, emit
from donations.gateway import IPaymentGateway, SubscriptionChange
from donations.models import Donation, DonationStatus, GatewayStatus, Requester
from donations.store import IDonationStore
from donations.validator import DonationRequestValidator

UPDATABLE_STATUSES = (DonationStatus.PROCESSING, DonationStatus.APPROVED)


class SubscriptionView(BaseModel):
    """Local record next to the provider's view of the subscription."""

    donation: Donation
    gateway: Optional[GatewayStatus] = None
    gateway_error: Optional[str] = None


class RecurringSubscriptionManager:
    def __init__(
        self,
        store: IDonationStore,
        gateway: IPaymentGateway,
        validator: Optional[DonationRequestValidator] = None,
        events: Optional[IEventPublisher] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.validator = validator or DonationRequestValidator()
        self.events = events
        self._logger = structlog.get_logger().bind(component="subscription_manager")

    async def _load(self, donation_id: str, requester: Optional[Requester] = None) -> Donation:
        donation = await self.store.find_by_id(donation_id)
        if donation is None:
            raise NotFoundError(f"Donation {donation_id} not found")
        if requester is not None and not requester.may_manage(donation):
            self._logger.warning("subscription_access_denied",
                                 donation_id=donation_id,
                                 requester=requester.organization_id)
            raise AuthorizationError("You do not have permission to manage this donation")
        if not donation.is_recurring:
            raise PolicyViolation("Only recurring donations have a subscription",
                                  meta={"donation_id": donation_id})
        if not donation.subscription_id:
            raise PolicyViolation("Donation has no active subscription",
                                  meta={"donation_id": donation_id, "status": donation.status.value})
        return donation

    async def cancel(self, donation_id: str, requester: Requester) -> Donation:
        donation = await self.store.find_by_id(donation_id)
        if donation is not None and donation.status == DonationStatus.CANCELLED and requester.may_manage(donation):
            self._logger.info("subscription_already_cancelled", donation_id=donation_id)
            return donation

        donation = await self._load(donation_id, requester)
        if donation.status != DonationStatus.APPROVED:
            raise PolicyViolation(
                f"Only approved subscriptions can be cancelled (current: {donation.status.value})",
                meta={"status": donation.status.value},
            )

        correlation_id = str(uuid.uuid4())
        result = await self.gateway.cancel_subscription(donation.subscription_id)

        updated = await self.store.update_by_id(
            donation.id,
            {"status": DonationStatus.CANCELLED, "payment_status": result.status.lower()},
            expected_status=DonationStatus.APPROVED,
        )
        if updated is None:
            # A cancellation webhook got there first
            updated = await self.store.find_by_id(donation.id)
            self._logger.info("subscription_cancel_raced",
                              donation_id=donation.id,
                              status=updated.status.value if updated else None)
            return updated

        self._logger.info("subscription_cancelled",
                          donation_id=donation.id,
                          subscription_id=donation.subscription_id,
                          correlation_id=correlation_id)
        await emit(self.events, DonationEventType.SUBSCRIPTION_CANCELLED, updated, correlation_id,
                   cancelled_by=requester.organization_id)
        return updated

    async def update_amount(self, donation_id: str, new_amount: Any,
                            requester: Requester) -> SubscriptionView:
        donation = await self._load(donation_id, requester)
        amount: Decimal = self.validator.parse_amount(new_amount)
        self.validator.check_amount(amount, recurring=True)

        if donation.status not in UPDATABLE_STATUSES:
            raise PolicyViolation(
                f"Subscription cannot be changed while {donation.status.value}",
                meta={"status": donation.status.value},
            )

        result = await self.gateway.update_subscription(
            donation.subscription_id, SubscriptionChange(amount=amount),
        )

        updated = await self.store.update_by_id(
            donation.id, {"subscription_amount": amount}, expected_status=donation.status,
        )
        if updated is None:
            # Status moved on (e.g. cancelled) while the provider call was in flight
            current = await self.store.find_by_id(donation.id)
            raise PolicyViolation(
                "Subscription changed while updating; try again",
                meta={"status": current.status.value if current else None},
            )

        self._logger.info("subscription_amount_updated",
                          donation_id=donation.id,
                          previous_amount=str(donation.subscription_amount or donation.amount),
                          amount=str(amount))
        await emit(self.events, DonationEventType.SUBSCRIPTION_UPDATED, updated,
                   subscription_amount=str(amount))
        return SubscriptionView(donation=updated, gateway=result)

    async def get_status(self, donation_id: str,
                         requester: Optional[Requester] = None) -> SubscriptionView:
        donation = await self._load(donation_id, requester)
        try:
            gateway_view = await self.gateway.get_subscription_status(donation.subscription_id)
        except GatewayError as e:
            self._logger.warning("subscription_status_unavailable",
                                 donation_id=donation_id, error=str(e))
            return SubscriptionView(donation=donation, gateway_error=str(e))
        return SubscriptionView(donation=donation, gateway=gateway_view)
