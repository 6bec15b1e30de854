"""
Payment Webhook Reconciler
==========================
Applies gateway notifications to local donation records.

Notifications may arrive duplicated, late or out of order. Each one is
mapped to a target status and applied with two rules:

- Idempotent: a record already in the target status with the same raw
  gateway status is left untouched.
- First terminal wins: once approved, rejected or cancelled, a record never
  moves to a different terminal status. The one exception is a recurring
  donation going from approved to cancelled.

Writes are serialized per gateway reference and persisted with a
compare-and-set on the status that was read.
"""

import asyncio
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from enum import Enum
from typing import Mapping, Optional

import structlog
from pydantic import BaseModel

from donations.errors import ReconciliationConflict
from donations.events import DonationEventType, IEventPublisher, emit
from donations.gateway import (
    APPROVED_STATUSES,
    CANCELLED_STATUSES,
    IN_FLIGHT_STATUSES,
    REJECTED_STATUSES,
    IPaymentGateway,
)
from donations.models import Donation, DonationStatus, WebhookNotification
from donations.store import IDonationStore

EVENT_FOR_STATUS = {
    DonationStatus.APPROVED: DonationEventType.PAYMENT_APPROVED,
    DonationStatus.REJECTED: DonationEventType.PAYMENT_REJECTED,
    DonationStatus.CANCELLED: DonationEventType.SUBSCRIPTION_CANCELLED,
}

# Lost compare-and-set retries before giving up on a notification
MAX_APPLY_ATTEMPTS = 3


class OutcomeKind(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STATUS_RECORDED = "status_recorded"
    UNKNOWN_REFERENCE = "unknown_reference"
    CONFLICT = "conflict"
    IGNORED = "ignored"


class ReconciliationOutcome(BaseModel):
    kind: OutcomeKind
    donation_id: Optional[str] = None
    previous_status: Optional[DonationStatus] = None
    status: Optional[DonationStatus] = None
    gateway_status: Optional[str] = None
    message: str = ""


class WebhookAck(BaseModel):
    success: bool
    message: str


class PaymentWebhookReconciler:
    """Maps notifications to donations and applies guarded transitions"""

    def __init__(
        self,
        store: IDonationStore,
        gateway: IPaymentGateway,
        events: Optional[IEventPublisher] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.events = events

        self._reference_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reference_lock_users: dict[str, int] = defaultdict(int)
        self._reference_locks_mutex = asyncio.Lock()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="webhook_reconciler",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    @asynccontextmanager
    async def _reference_lock(self, reference: str):
        """Per-reference lock, dropped once no caller holds or waits on it."""
        async with self._reference_locks_mutex:
            lock = self._reference_locks[reference]
            self._reference_lock_users[reference] += 1
        try:
            async with lock:
                yield
        finally:
            async with self._reference_locks_mutex:
                self._reference_lock_users[reference] -= 1
                if not self._reference_lock_users[reference]:
                    del self._reference_lock_users[reference]
                    del self._reference_locks[reference]

    @property
    def active_reference_locks(self) -> int:
        return len(self._reference_locks)

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def handle(self, payload: Mapping, headers: Optional[Mapping[str, str]] = None) -> WebhookAck:
        """
        Webhook endpoint entry. Always acknowledges: a failure here is logged
        and answered with success=False, never raised, so the provider does
        not retry into the same error forever.
        """
        log = self._get_logger()
        log.info("webhook_received", topic=payload.get("type") or payload.get("topic"))

        try:
            notification = await self.gateway.process_webhook_payload(payload, headers or {})
        except Exception as e:
            log.error("webhook_parse_failed", error=str(e), error_type=type(e).__name__)
            return WebhookAck(success=False, message="Webhook could not be processed")

        if notification is None:
            return WebhookAck(success=True, message="Webhook ignored")

        try:
            outcome = await self.apply(notification)
        except Exception as e:
            log.error("webhook_apply_failed",
                      gateway_reference=notification.reference,
                      error=str(e),
                      error_type=type(e).__name__)
            return WebhookAck(success=False, message="Webhook could not be processed")

        return WebhookAck(success=True, message=f"Webhook processed: {outcome.kind.value}")

    async def apply(self, notification: WebhookNotification) -> ReconciliationOutcome:
        """Apply one normalized notification. Safe to call concurrently and repeatedly."""
        log = self._get_logger(notification.event_id).bind(
            gateway_reference=notification.reference,
            gateway_status=notification.status,
        )

        async with self._reference_lock(notification.reference):
            for _ in range(MAX_APPLY_ATTEMPTS):
                donation = await self._find(notification)
                if donation is None:
                    log.warning("webhook_unknown_reference",
                                external_reference=notification.external_reference)
                    return ReconciliationOutcome(
                        kind=OutcomeKind.UNKNOWN_REFERENCE,
                        gateway_status=notification.status,
                        message="No donation for this reference",
                    )

                outcome = await self._apply_to(donation, notification, log.bind(donation_id=donation.id))
                if outcome is not None:
                    return outcome
                log.info("webhook_apply_retry", donation_id=donation.id)

        log.error("webhook_apply_gave_up", attempts=MAX_APPLY_ATTEMPTS)
        return ReconciliationOutcome(
            kind=OutcomeKind.IGNORED,
            gateway_status=notification.status,
            message="Record kept changing underneath the notification",
        )

    # =========================================================================
    # TRANSITION RULES
    # =========================================================================

    @staticmethod
    def target_status(donation: Donation, raw_status: str) -> Optional[DonationStatus]:
        """Local status a raw gateway status maps to for this record, or None."""
        status = raw_status.lower()
        if status in APPROVED_STATUSES:
            return DonationStatus.APPROVED
        if status in REJECTED_STATUSES:
            return DonationStatus.REJECTED
        if status in CANCELLED_STATUSES:
            if donation.is_recurring and donation.status in (DonationStatus.APPROVED, DonationStatus.CANCELLED):
                return DonationStatus.CANCELLED
            return DonationStatus.REJECTED
        return None

    async def _apply_to(self, donation: Donation, notification: WebhookNotification,
                        log) -> Optional[ReconciliationOutcome]:
        raw_status = notification.status.lower()
        target = self.target_status(donation, raw_status)

        if target is None:
            if raw_status not in IN_FLIGHT_STATUSES:
                log.warning("webhook_unmapped_status")
            return await self._record_gateway_status(donation, raw_status, log)

        if donation.status == target:
            if donation.payment_status == raw_status:
                log.info("webhook_duplicate", status=target.value)
                return ReconciliationOutcome(
                    kind=OutcomeKind.DUPLICATE,
                    donation_id=donation.id,
                    previous_status=donation.status,
                    status=donation.status,
                    gateway_status=raw_status,
                    message="Already applied",
                )
            return await self._record_gateway_status(donation, raw_status, log)

        if not donation.can_transition_to(target):
            if donation.status.is_terminal:
                conflict = ReconciliationConflict(donation.id, donation.status.value, target.value)
                log.warning("webhook_conflict",
                            code=conflict.code,
                            current_status=donation.status.value,
                            attempted_status=target.value)
                return ReconciliationOutcome(
                    kind=OutcomeKind.CONFLICT,
                    donation_id=donation.id,
                    previous_status=donation.status,
                    status=donation.status,
                    gateway_status=raw_status,
                    message=conflict.message,
                )
            log.warning("webhook_transition_not_allowed",
                        current_status=donation.status.value,
                        attempted_status=target.value)
            return ReconciliationOutcome(
                kind=OutcomeKind.IGNORED,
                donation_id=donation.id,
                previous_status=donation.status,
                status=donation.status,
                gateway_status=raw_status,
                message=f"Cannot move {donation.status.value} to {target.value}",
            )

        updated = await self.store.update_by_id(
            donation.id,
            {"status": target, "payment_status": raw_status},
            expected_status=donation.status,
        )
        if updated is None:
            return None

        log.info("donation_status_changed",
                 previous_status=donation.status.value,
                 status=target.value)
        await emit(self.events, EVENT_FOR_STATUS[target], updated,
                   notification.event_id, gateway_status=raw_status)
        return ReconciliationOutcome(
            kind=OutcomeKind.APPLIED,
            donation_id=donation.id,
            previous_status=donation.status,
            status=target,
            gateway_status=raw_status,
            message=f"{donation.status.value} -> {target.value}",
        )

    async def _record_gateway_status(self, donation: Donation, raw_status: str,
                                     log) -> Optional[ReconciliationOutcome]:
        # Only a live subscription keeps tracking gateway status after approval
        live_subscription = donation.is_recurring and donation.status == DonationStatus.APPROVED
        if donation.status.is_terminal and not live_subscription:
            log.info("webhook_late_status_ignored", status=donation.status.value)
            return ReconciliationOutcome(
                kind=OutcomeKind.IGNORED,
                donation_id=donation.id,
                previous_status=donation.status,
                status=donation.status,
                gateway_status=raw_status,
                message=f"Donation already {donation.status.value}",
            )

        if donation.payment_status == raw_status:
            return ReconciliationOutcome(
                kind=OutcomeKind.DUPLICATE,
                donation_id=donation.id,
                previous_status=donation.status,
                status=donation.status,
                gateway_status=raw_status,
                message="Gateway status unchanged",
            )

        updated = await self.store.update_by_id(
            donation.id, {"payment_status": raw_status}, expected_status=donation.status,
        )
        if updated is None:
            return None

        log.info("gateway_status_recorded", status=donation.status.value)
        return ReconciliationOutcome(
            kind=OutcomeKind.STATUS_RECORDED,
            donation_id=donation.id,
            previous_status=donation.status,
            status=donation.status,
            gateway_status=raw_status,
            message="Gateway status recorded",
        )

    async def _find(self, notification: WebhookNotification) -> Optional[Donation]:
        donation = await self.store.find_by_gateway_reference(notification.reference)
        if donation is None and notification.external_reference:
            # Checkout payments notify with the payment id, not the preference id we stored
            donation = await self.store.find_by_id(notification.external_reference)
        return donation
