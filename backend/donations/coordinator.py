"""
Donation Lifecycle Coordinator
==============================
Creates donations: validate, persist `pending`, open the payment at the
gateway, then attach the gateway reference and move to `processing`.

If the gateway call fails or times out the record is moved to `failed`
before PaymentInitiationError propagates, so a create call never leaves a
record behind in `pending`.
"""

import asyncio
import uuid
from typing import Any, Mapping, Optional

import structlog

from donations.errors import GatewayError, PaymentInitiationError
from donations.events import DonationEventType, IEventPublisher, emit
from donations.gateway import IPaymentGateway
from donations.models import (
    CreationResult,
    Donation,
    DonationDraft,
    DonationPlan,
    DonationStatus,
    PayerInfo,
    PaymentRequest,
)
from donations.settings import DonationSettings
from donations.store import IDonationStore
from donations.validator import DonationRequestValidator

FAILURE_REASON_MAX = 255


class DonationLifecycleCoordinator:
    """
    Single creation path for single and recurring donations.

    Example:
        coordinator = DonationLifecycleCoordinator(store, gateway)
        result = await coordinator.create_single({"organizationId": "org1", ...})
        # Donor pays at result.payment_url; the webhook reconciler finishes the job
    """

    def __init__(
        self,
        store: IDonationStore,
        gateway: IPaymentGateway,
        validator: Optional[DonationRequestValidator] = None,
        events: Optional[IEventPublisher] = None,
        settings: Optional[DonationSettings] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings or DonationSettings()
        self.validator = validator or DonationRequestValidator(self.settings)
        self.events = events
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="donation_coordinator", correlation_id=correlation_id)

    async def create_single(self, raw: Mapping[str, Any],
                            metadata: Optional[dict] = None) -> CreationResult:
        return await self.create(raw, DonationPlan.single(), metadata)

    async def create_recurring(self, raw: Mapping[str, Any],
                               metadata: Optional[dict] = None) -> CreationResult:
        return await self.create(raw, DonationPlan.recurring(), metadata)

    async def create(
        self,
        raw: Mapping[str, Any],
        plan: DonationPlan,
        metadata: Optional[dict] = None,
    ) -> CreationResult:
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        draft = self.validator.validate(raw, plan.type)

        donation = await self.store.create(self._new_donation(draft, metadata))
        log = log.bind(donation_id=donation.id)
        log.info("donation_created",
                 organization_id=donation.organization_id,
                 type=donation.type.value,
                 amount=str(donation.amount))
        await emit(self.events, DonationEventType.CREATED, donation, correlation_id)

        request = self._payment_request(donation)
        try:
            async with asyncio.timeout(self.settings.gateway_timeout_seconds):
                if plan.is_recurring:
                    subscription = await self.gateway.create_subscription(request)
                    reference, url, raw_status = (
                        subscription.id, subscription.subscription_url, subscription.status,
                    )
                else:
                    payment = await self.gateway.create_single_payment(request)
                    reference, url, raw_status = payment.id, payment.payment_url, payment.status
        except TimeoutError as e:
            cause = GatewayError(
                f"Payment gateway timed out after {self.settings.gateway_timeout_seconds}s",
                operation="create_subscription" if plan.is_recurring else "create_single_payment",
            )
            cause.__cause__ = e
            await self._fail(donation, cause, correlation_id)
            raise PaymentInitiationError(str(cause), donation_id=donation.id) from cause
        except Exception as e:
            await self._fail(donation, e, correlation_id)
            raise PaymentInitiationError(
                f"Could not start payment: {e}", donation_id=donation.id,
            ) from e

        patch = {
            "status": DonationStatus.PROCESSING,
            "payment_status": raw_status,
            "payment_url": url,
            "subscription_id" if plan.is_recurring else "payment_id": reference,
        }
        updated = await self.store.update_by_id(donation.id, patch, expected_status=DonationStatus.PENDING)
        if updated is None:
            current = await self.store.find_by_id(donation.id)
            log.error("gateway_reference_not_attached",
                      gateway_reference=reference,
                      current_status=current.status.value if current else None)
            raise PaymentInitiationError(
                "Donation was closed before the payment could be attached",
                donation_id=donation.id,
            )

        log.info("donation_processing", gateway_reference=reference, gateway=self.gateway.name)
        await emit(self.events, DonationEventType.PROCESSING, updated, correlation_id)
        return CreationResult(donation=updated, payment_url=url, gateway_reference=reference)

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _new_donation(draft: DonationDraft, metadata: Optional[dict]) -> Donation:
        return Donation(
            id=Donation.generate_id(),
            subscription_amount=draft.amount if draft.frequency else None,
            metadata=dict(metadata or {}),
            **draft.model_dump(),
        )

    @staticmethod
    def _payment_request(donation: Donation) -> PaymentRequest:
        recipient = donation.organization_name or donation.organization_id
        return PaymentRequest(
            amount=donation.amount,
            external_reference=donation.id,
            payer=PayerInfo(
                name=donation.donor_name,
                email=donation.donor_email,
                phone=donation.donor_phone,
                document=donation.donor_document,
            ),
            title=f"Doação para {recipient}",
            description=donation.message,
            frequency=donation.frequency,
        )

    async def _fail(self, donation: Donation, error: Exception, correlation_id: str):
        log = self._get_logger(correlation_id).bind(donation_id=donation.id)
        reason = (str(error) or type(error).__name__)[:FAILURE_REASON_MAX]
        log.error("payment_initiation_failed", error=reason, error_type=type(error).__name__)

        try:
            failed = await self.store.update_by_id(
                donation.id,
                {"status": DonationStatus.FAILED, "failure_reason": reason},
                expected_status=DonationStatus.PENDING,
            )
        except Exception as cleanup_error:
            log.error("failure_cleanup_failed", error=str(cleanup_error))
            return

        if failed is not None:
            await emit(self.events, DonationEventType.FAILED, failed, correlation_id, reason=reason)
