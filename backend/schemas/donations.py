"""
Donation API Schemas
====================
Request and response bodies for the donation HTTP API.

All wire keys are camelCase; models accept either spelling on input.
Money is sent as a JSON number.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

from donations.models import Donation, DonationStatistics, GatewayStatus
from donations.reconciler import ReconciliationOutcome
from donations.subscriptions import SubscriptionView

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# REQUESTS
# =============================================================================

class CreateDonationRequest(ApiModel):
    """
    Donation creation body. Every field is optional here so that missing or
    malformed values reach the domain validator and get its error codes.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    amount: Optional[Any] = None
    frequency: Optional[str] = None
    donor_name: Optional[str] = None
    donor_email: Optional[str] = None
    donor_phone: Optional[str] = None
    donor_document: Optional[str] = None
    message: Optional[str] = None
    is_anonymous: Optional[bool] = None

    def to_raw(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UpdateSubscriptionRequest(ApiModel):
    amount: Optional[Any] = None


# =============================================================================
# RESPONSES
# =============================================================================

class ErrorResponse(ApiModel):
    success: bool = False
    message: str
    code: str
    meta: Optional[dict[str, Any]] = None


class SingleDonationResponse(ApiModel):
    success: bool = True
    donation_id: str
    payment_url: Optional[str] = None
    gateway_reference: str
    amount: Money


class RecurringDonationResponse(ApiModel):
    success: bool = True
    donation_id: str
    subscription_url: Optional[str] = None
    subscription_id: str
    amount: Money
    frequency: str
    organization_name: Optional[str] = None


class WebhookAckResponse(ApiModel):
    success: bool
    message: str


class DonationView(ApiModel):
    id: str
    organization_id: str
    organization_name: Optional[str] = None
    amount: Money
    currency: str
    type: str
    frequency: Optional[str] = None
    subscription_amount: Optional[Money] = None
    donor_name: str
    donor_email: str
    donor_phone: Optional[str] = None
    message: Optional[str] = None
    is_anonymous: bool
    status: str
    payment_status: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_url: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_donation(cls, donation: Donation) -> "DonationView":
        data = donation.model_dump(
            include=set(cls.model_fields),
            mode="python",
        )
        data["type"] = donation.type.value
        data["status"] = donation.status.value
        data["frequency"] = donation.frequency.value if donation.frequency else None
        return cls(**data)


class DonationResponse(ApiModel):
    success: bool = True
    data: DonationView


class CancelSubscriptionResponse(ApiModel):
    success: bool = True
    message: str
    data: DonationView


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    pages: int


class DonationListResponse(ApiModel):
    success: bool = True
    data: list[DonationView]
    pagination: Pagination


class StatisticsView(ApiModel):
    organization_id: str
    total_donations: int
    total_amount: Money
    avg_amount: Money
    single_donations: int
    recurring_donations: int
    approved_donations: int
    pending_donations: int
    by_status: dict[str, int]

    @classmethod
    def from_statistics(cls, stats: DonationStatistics) -> "StatisticsView":
        return cls(**stats.model_dump())


class StatisticsResponse(ApiModel):
    success: bool = True
    data: StatisticsView


class GatewayStatusView(ApiModel):
    id: str
    status: str
    amount: Optional[Money] = None
    frequency: Optional[str] = None
    next_billing_date: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: GatewayStatus) -> "GatewayStatusView":
        return cls(**status.model_dump(exclude={"external_reference"}))


class SubscriptionStatusView(ApiModel):
    donation_id: str
    status: str
    subscription_id: Optional[str] = None
    subscription_amount: Optional[Money] = None
    frequency: Optional[str] = None
    gateway: Optional[GatewayStatusView] = None
    gateway_error: Optional[str] = None

    @classmethod
    def from_view(cls, view: SubscriptionView) -> "SubscriptionStatusView":
        donation = view.donation
        return cls(
            donation_id=donation.id,
            status=donation.status.value,
            subscription_id=donation.subscription_id,
            subscription_amount=donation.subscription_amount or donation.amount,
            frequency=donation.frequency.value if donation.frequency else None,
            gateway=GatewayStatusView.from_status(view.gateway) if view.gateway else None,
            gateway_error=view.gateway_error,
        )


class SubscriptionStatusResponse(ApiModel):
    success: bool = True
    data: SubscriptionStatusView


class MockApprovalResponse(ApiModel):
    success: bool = True
    message: str
    gateway_id: str
    gateway_status: str
    outcome: str
    donation_id: Optional[str] = None
    donation_status: Optional[str] = None

    @classmethod
    def from_outcome(cls, gateway_id: str, gateway_status: str,
                     outcome: ReconciliationOutcome) -> "MockApprovalResponse":
        return cls(
            message=outcome.message,
            gateway_id=gateway_id,
            gateway_status=gateway_status,
            outcome=outcome.kind.value,
            donation_id=outcome.donation_id,
            donation_status=outcome.status.value if outcome.status else None,
        )


class HealthResponse(ApiModel):
    status: str
    version: str
    uptime_seconds: float
    gateway: str
    store: str
    event_bus_connected: bool
    sweep: Optional[dict[str, Any]] = None
