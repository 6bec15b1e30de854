"""
Donation Domain Models
======================
Core entity, lifecycle state machine and the value objects exchanged between
the validator, the coordinator, the gateway adapters and the reconciler.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class DonationType(str, Enum):
    SINGLE = "single"
    RECURRING = "recurring"


class Frequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class DonationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    DonationStatus.APPROVED,
    DonationStatus.REJECTED,
    DonationStatus.CANCELLED,
})

# Edges of the lifecycle. APPROVED -> CANCELLED is further restricted to recurring donations.
ALLOWED_TRANSITIONS: dict[DonationStatus, frozenset[DonationStatus]] = {
    DonationStatus.PENDING: frozenset({DonationStatus.PROCESSING, DonationStatus.FAILED}),
    DonationStatus.PROCESSING: frozenset({
        DonationStatus.APPROVED,
        DonationStatus.REJECTED,
        DonationStatus.FAILED,
    }),
    DonationStatus.APPROVED: frozenset({DonationStatus.CANCELLED}),
    DonationStatus.REJECTED: frozenset(),
    DonationStatus.CANCELLED: frozenset(),
    DonationStatus.FAILED: frozenset(),
}

CURRENCY = "BRL"


# =============================================================================
# DONATION ENTITY
# =============================================================================

class Donation(BaseModel):
    """Persisted donation record. Donor and amount fields never change after creation."""

    id: str
    organization_id: str
    organization_name: Optional[str] = None

    amount: Decimal
    currency: str = CURRENCY
    type: DonationType
    frequency: Optional[Frequency] = None
    subscription_amount: Optional[Decimal] = None

    donor_name: str
    donor_email: str
    donor_phone: Optional[str] = None
    donor_document: Optional[str] = None
    message: Optional[str] = None
    is_anonymous: bool = False

    status: DonationStatus = DonationStatus.PENDING
    payment_status: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_url: Optional[str] = None
    failure_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    metadata: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def gateway_reference(self) -> Optional[str]:
        return self.subscription_id if self.type == DonationType.RECURRING else self.payment_id

    @property
    def is_recurring(self) -> bool:
        return self.type == DonationType.RECURRING

    def can_transition_to(self, new_status: DonationStatus) -> bool:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            return False
        if self.status == DonationStatus.APPROVED and new_status == DonationStatus.CANCELLED:
            return self.is_recurring
        return True

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())


# Fields a lifecycle update may touch; everything else is immutable history.
MUTABLE_FIELDS = frozenset({
    "status",
    "payment_status",
    "payment_id",
    "subscription_id",
    "payment_url",
    "subscription_amount",
    "failure_reason",
    "updated_at",
})


# =============================================================================
# VALUE OBJECTS
# =============================================================================

class DonationDraft(BaseModel):
    """Normalized, validated creation input. Produced by the validator."""

    model_config = ConfigDict(frozen=True)

    organization_id: str
    organization_name: Optional[str] = None
    amount: Decimal
    type: DonationType
    frequency: Optional[Frequency] = None
    donor_name: str
    donor_email: str
    donor_phone: Optional[str] = None
    donor_document: Optional[str] = None
    message: Optional[str] = None
    is_anonymous: bool = False


class DonationPlan(BaseModel):
    """Strategy value for the single creation path: what kind of donation to open."""

    model_config = ConfigDict(frozen=True)

    type: DonationType

    @classmethod
    def single(cls) -> "DonationPlan":
        return cls(type=DonationType.SINGLE)

    @classmethod
    def recurring(cls) -> "DonationPlan":
        return cls(type=DonationType.RECURRING)

    @property
    def is_recurring(self) -> bool:
        return self.type == DonationType.RECURRING


class Requester(BaseModel):
    """Identity of the caller, as established by the auth subsystem."""

    model_config = ConfigDict(frozen=True)

    organization_id: str
    is_admin: bool = False

    def may_manage(self, donation: Donation) -> bool:
        return self.is_admin or self.organization_id == donation.organization_id


class CreationResult(BaseModel):
    donation: Donation
    payment_url: Optional[str] = None
    gateway_reference: str


# =============================================================================
# GATEWAY CONTRACT TYPES
# =============================================================================

class PayerInfo(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    document: Optional[str] = None


class PaymentRequest(BaseModel):
    """Input to create_single_payment / create_subscription."""

    amount: Decimal
    external_reference: str
    payer: PayerInfo
    title: str = "Doação"
    description: Optional[str] = None
    frequency: Optional[Frequency] = None


class GatewayPayment(BaseModel):
    id: str
    status: str
    payment_url: Optional[str] = None
    external_reference: Optional[str] = None


class GatewaySubscription(BaseModel):
    id: str
    status: str
    subscription_url: Optional[str] = None
    external_reference: Optional[str] = None


class GatewayStatus(BaseModel):
    """Provider-side view of a payment or subscription."""

    id: str
    status: str
    amount: Optional[Decimal] = None
    frequency: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    external_reference: Optional[str] = None


class NotificationKind(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


class WebhookNotification(BaseModel):
    """Normalized asynchronous notification from the gateway."""

    kind: NotificationKind
    reference: str
    status: str
    external_reference: Optional[str] = None
    event_id: Optional[str] = None
    received_at: datetime = Field(default_factory=utc_now)


class DonationStatistics(BaseModel):
    """Per-organization aggregates. Amounts count approved donations only."""

    organization_id: str
    total_donations: int = 0
    total_amount: Decimal = Decimal("0.00")
    avg_amount: Decimal = Decimal("0.00")
    single_donations: int = 0
    recurring_donations: int = 0
    approved_donations: int = 0
    pending_donations: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
