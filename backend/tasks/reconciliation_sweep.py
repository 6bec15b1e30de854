"""
Reconciliation Sweep - The Safety Net
=====================================
Background task for donations that never heard back.

- `pending` longer than the threshold: the process died between persisting
  the record and calling the gateway. Marked `failed` (stale_pending).
- `processing` longer than the threshold: the webhook never arrived. The
  gateway is asked directly and the answer goes through the same rules as
  a webhook.

Gateway errors are logged and the record is retried on the next cycle.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional

import structlog
from pydantic import BaseModel

from donations.errors import GatewayError
from donations.events import DonationEventType, IEventPublisher, emit
from donations.gateway import IPaymentGateway
from donations.models import (
    Donation,
    DonationStatus,
    NotificationKind,
    WebhookNotification,
    utc_now,
)
from donations.reconciler import OutcomeKind, PaymentWebhookReconciler
from donations.settings import SweepConfig
from donations.store import IDonationStore

logger = structlog.get_logger().bind(component="reconciliation_sweep")

STALE_PENDING_REASON = "stale_pending"


class SweepSummary(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    stale_pending_failed: int = 0
    processing_checked: int = 0
    processing_resolved: int = 0
    gateway_errors: int = 0


class ReconciliationSweep:
    """
    Example:
        sweep = ReconciliationSweep(store, gateway, reconciler, SweepConfig.from_env())
        task = asyncio.create_task(sweep.sweep_loop())
    """

    def __init__(
        self,
        store: IDonationStore,
        gateway: IPaymentGateway,
        reconciler: PaymentWebhookReconciler,
        config: Optional[SweepConfig] = None,
        events: Optional[IEventPublisher] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.reconciler = reconciler
        self.config = config or SweepConfig()
        self.events = events

        self.cycles = 0
        self.last_summary: Optional[SweepSummary] = None
        self.totals = {"stale_pending_failed": 0, "processing_resolved": 0, "gateway_errors": 0}

    async def run_once(self, now: Optional[datetime] = None) -> SweepSummary:
        now = now or utc_now()
        summary = SweepSummary(started_at=now)

        pending_cutoff = now - timedelta(minutes=self.config.pending_threshold_minutes)
        async for donation in self._stale(DonationStatus.PENDING, pending_cutoff):
            if await self._fail_stale_pending(donation):
                summary.stale_pending_failed += 1

        processing_cutoff = now - timedelta(minutes=self.config.processing_threshold_minutes)
        async for donation in self._stale(DonationStatus.PROCESSING, processing_cutoff):
            summary.processing_checked += 1
            try:
                if await self._recheck_processing(donation):
                    summary.processing_resolved += 1
            except GatewayError as e:
                summary.gateway_errors += 1
                logger.warning("sweep_gateway_error",
                               donation_id=donation.id,
                               gateway_reference=donation.gateway_reference,
                               error=str(e))

        summary.finished_at = utc_now()
        self.cycles += 1
        self.last_summary = summary
        for key in self.totals:
            self.totals[key] += getattr(summary, key)

        if summary.stale_pending_failed or summary.processing_checked:
            logger.info("sweep_cycle_complete", **summary.model_dump(exclude={"started_at", "finished_at"}))
        return summary

    async def sweep_loop(self):
        """Run `run_once` every interval until cancelled."""
        logger.info("sweep_loop_started",
                    interval=self.config.interval_seconds,
                    pending_threshold=self.config.pending_threshold_minutes,
                    processing_threshold=self.config.processing_threshold_minutes,
                    enabled=self.config.enabled)

        if not self.config.enabled:
            logger.info("sweep_loop_disabled")
            return

        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("sweep_loop_error", error=str(e), error_type=type(e).__name__)

            await asyncio.sleep(self.config.interval_seconds)

    async def get_sweep_stats(self) -> dict:
        """Sweep statistics for monitoring"""
        now = utc_now()
        stuck_pending = await self.store.find_stale(
            [DonationStatus.PENDING],
            now - timedelta(minutes=self.config.pending_threshold_minutes),
            self.config.batch_size,
        )
        stuck_processing = await self.store.find_stale(
            [DonationStatus.PROCESSING],
            now - timedelta(minutes=self.config.processing_threshold_minutes),
            self.config.batch_size,
        )
        return {
            "enabled": self.config.enabled,
            "interval_seconds": self.config.interval_seconds,
            "pending_threshold_minutes": self.config.pending_threshold_minutes,
            "processing_threshold_minutes": self.config.processing_threshold_minutes,
            "cycles": self.cycles,
            "last_run_at": self.last_summary.started_at.isoformat() if self.last_summary else None,
            "currently_stuck_pending": len(stuck_pending),
            "currently_stuck_processing": len(stuck_processing),
            **self.totals,
        }

    # =========================================================================
    # PER-RECORD HANDLING
    # =========================================================================

    async def _stale(self, status: DonationStatus, cutoff: datetime) -> AsyncIterator[Donation]:
        """Every stale record in `status`, fetched `batch_size` at a time."""
        after = None
        while True:
            batch = await self.store.find_stale([status], cutoff, self.config.batch_size, after=after)
            for donation in batch:
                yield donation
            if not batch or len(batch) < self.config.batch_size:
                return
            after = (batch[-1].updated_at, batch[-1].id)

    async def _fail_stale_pending(self, donation: Donation) -> bool:
        failed = await self.store.update_by_id(
            donation.id,
            {"status": DonationStatus.FAILED, "failure_reason": STALE_PENDING_REASON},
            expected_status=DonationStatus.PENDING,
        )
        if failed is None:
            return False
        logger.warning("stale_pending_failed",
                       donation_id=donation.id,
                       created_at=donation.created_at.isoformat())
        await emit(self.events, DonationEventType.FAILED, failed, reason=STALE_PENDING_REASON)
        return True

    async def _recheck_processing(self, donation: Donation) -> bool:
        if donation.is_recurring:
            status = await self.gateway.get_subscription_status(donation.subscription_id)
            kind = NotificationKind.SUBSCRIPTION
        else:
            status = await self.gateway.search_payment(donation.id)
            kind = NotificationKind.PAYMENT
            if status is None:
                # Checkout opened but the donor has not paid
                return False

        outcome = await self.reconciler.apply(WebhookNotification(
            kind=kind,
            reference=status.id,
            status=status.status.lower(),
            external_reference=donation.id,
            event_id=f"sweep_{uuid.uuid4().hex[:12]}",
        ))
        logger.info("processing_rechecked",
                    donation_id=donation.id,
                    gateway_status=status.status,
                    outcome=outcome.kind.value)
        return outcome.kind == OutcomeKind.APPLIED
