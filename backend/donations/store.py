"""
Donation Record Store
=====================
Repository interface for donation records plus in-memory and PostgreSQL
implementations.

Writes go through `update_by_id`, which only touches lifecycle fields and
supports an optional compare-and-set on the current status. A lost
compare-and-set returns None so callers can re-read and decide.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional

import structlog

from donations.errors import NotFoundError
from donations.models import (
    MUTABLE_FIELDS,
    Donation,
    DonationStatistics,
    DonationStatus,
    DonationType,
    utc_now,
)

logger = structlog.get_logger().bind(component="donation_store")

CENTS = Decimal("0.01")


# =============================================================================
# INTERFACE
# =============================================================================

class IDonationStore(ABC):
    """Donation repository interface"""

    @abstractmethod
    async def create(self, donation: Donation) -> Donation:
        pass

    @abstractmethod
    async def update_by_id(
        self,
        donation_id: str,
        patch: dict[str, Any],
        expected_status: Optional[DonationStatus] = None,
    ) -> Optional[Donation]:
        """
        Apply `patch` to lifecycle fields.

        Raises NotFoundError for an unknown id. Returns None when
        `expected_status` is given and no longer matches the stored status.
        """

    @abstractmethod
    async def find_by_id(self, donation_id: str) -> Optional[Donation]:
        pass

    @abstractmethod
    async def find(
        self,
        *,
        organization_id: Optional[str] = None,
        status: Optional[DonationStatus] = None,
        type: Optional[DonationType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Donation], int]:
        """Newest first. Returns (page, total matching)."""

    @abstractmethod
    async def find_by_gateway_reference(self, reference: str) -> Optional[Donation]:
        pass

    @abstractmethod
    async def find_stale(
        self,
        statuses: Iterable[DonationStatus],
        older_than: datetime,
        limit: int = 50,
        after: Optional[tuple[datetime, str]] = None,
    ) -> list[Donation]:
        """
        Records in `statuses` whose updated_at is before `older_than`, ordered
        by (updated_at, id). `after` is the (updated_at, id) of the last record
        of the previous page.
        """

    @abstractmethod
    async def get_statistics(
        self,
        organization_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> DonationStatistics:
        pass


def _check_patch(patch: dict[str, Any]) -> dict[str, Any]:
    illegal = set(patch) - MUTABLE_FIELDS
    if illegal:
        raise ValueError(f"Immutable donation fields cannot be updated: {sorted(illegal)}")
    clean = dict(patch)
    clean["updated_at"] = utc_now()
    return clean


def build_statistics(organization_id: str, donations: Iterable[Donation]) -> DonationStatistics:
    """Aggregate a set of records for one organization."""
    stats = DonationStatistics(organization_id=organization_id)
    total_amount = Decimal("0")
    by_status: dict[str, int] = {}

    for d in donations:
        stats.total_donations += 1
        by_status[d.status.value] = by_status.get(d.status.value, 0) + 1
        if d.is_recurring:
            stats.recurring_donations += 1
        else:
            stats.single_donations += 1
        if d.status == DonationStatus.APPROVED:
            stats.approved_donations += 1
            total_amount += d.amount

    stats.pending_donations = stats.total_donations - stats.approved_donations
    stats.total_amount = total_amount.quantize(CENTS)
    if stats.approved_donations:
        stats.avg_amount = (total_amount / stats.approved_donations).quantize(CENTS)
    stats.by_status = by_status
    return stats


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryDonationStore(IDonationStore):
    """Lock-guarded in-memory store for tests and development"""

    def __init__(self):
        self._donations: dict[str, Donation] = {}
        self._lock = asyncio.Lock()

    async def create(self, donation: Donation) -> Donation:
        async with self._lock:
            if donation.id in self._donations:
                raise ValueError(f"Donation {donation.id} already exists")
            self._donations[donation.id] = donation
            return donation

    async def update_by_id(
        self,
        donation_id: str,
        patch: dict[str, Any],
        expected_status: Optional[DonationStatus] = None,
    ) -> Optional[Donation]:
        clean = _check_patch(patch)
        async with self._lock:
            current = self._donations.get(donation_id)
            if current is None:
                raise NotFoundError(f"Donation {donation_id} not found")
            if expected_status is not None and current.status != expected_status:
                logger.info("update_precondition_failed",
                            donation_id=donation_id,
                            expected_status=expected_status.value,
                            current_status=current.status.value)
                return None
            updated = current.model_copy(update=clean)
            self._donations[donation_id] = updated
            return updated

    async def find_by_id(self, donation_id: str) -> Optional[Donation]:
        async with self._lock:
            return self._donations.get(donation_id)

    async def find(
        self,
        *,
        organization_id: Optional[str] = None,
        status: Optional[DonationStatus] = None,
        type: Optional[DonationType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Donation], int]:
        async with self._lock:
            matches = [
                d for d in self._donations.values()
                if (organization_id is None or d.organization_id == organization_id)
                and (status is None or d.status == status)
                and (type is None or d.type == type)
            ]
        matches.sort(key=lambda d: d.created_at, reverse=True)
        return matches[offset:offset + limit], len(matches)

    async def find_by_gateway_reference(self, reference: str) -> Optional[Donation]:
        async with self._lock:
            for donation in self._donations.values():
                if reference in (donation.payment_id, donation.subscription_id):
                    return donation
            return None

    async def find_stale(
        self,
        statuses: Iterable[DonationStatus],
        older_than: datetime,
        limit: int = 50,
        after: Optional[tuple[datetime, str]] = None,
    ) -> list[Donation]:
        wanted = set(statuses)
        async with self._lock:
            stale = [
                d for d in self._donations.values()
                if d.status in wanted and d.updated_at < older_than
                and (after is None or (d.updated_at, d.id) > after)
            ]
        stale.sort(key=lambda d: (d.updated_at, d.id))
        return stale[:limit]

    async def get_statistics(
        self,
        organization_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> DonationStatistics:
        async with self._lock:
            rows = [
                d for d in self._donations.values()
                if d.organization_id == organization_id
                and (since is None or d.created_at >= since)
                and (until is None or d.created_at <= until)
            ]
        return build_statistics(organization_id, rows)


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

_COLUMNS = (
    "id", "organization_id", "organization_name", "amount", "currency", "type",
    "frequency", "subscription_amount", "donor_name", "donor_email", "donor_phone",
    "donor_document", "message", "is_anonymous", "status", "payment_status",
    "payment_id", "subscription_id", "payment_url", "failure_reason", "metadata",
    "created_at", "updated_at",
)


class PostgresDonationStore(IDonationStore):
    """asyncpg-backed store on the shared `database.Database` pool"""

    def __init__(self, db=None):
        if db is None:
            from database import Database
            db = Database
        self.db = db

    @staticmethod
    def _to_row(donation: Donation) -> list[Any]:
        data = donation.model_dump(mode="python", exclude={"gateway_reference"})
        row = []
        for column in _COLUMNS:
            value = data[column]
            if column == "id":
                value = str(value)
            elif column in ("type", "frequency", "status") and value is not None:
                value = value.value
            elif column == "metadata":
                value = json.dumps(value, default=str)
            row.append(value)
        return row

    @staticmethod
    def _from_record(record) -> Donation:
        data = dict(record)
        data["id"] = str(data["id"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        return Donation(**data)

    async def create(self, donation: Donation) -> Donation:
        placeholders = ", ".join(f"${i}" for i in range(1, len(_COLUMNS) + 1))
        record = await self.db.fetch_one(
            f"INSERT INTO donations ({', '.join(_COLUMNS)}) VALUES ({placeholders}) RETURNING *",
            *self._to_row(donation),
        )
        logger.info("donation_inserted", donation_id=donation.id)
        return self._from_record(record)

    async def update_by_id(
        self,
        donation_id: str,
        patch: dict[str, Any],
        expected_status: Optional[DonationStatus] = None,
    ) -> Optional[Donation]:
        clean = _check_patch(patch)
        assignments = []
        args: list[Any] = []
        for column, value in clean.items():
            if isinstance(value, Enum):
                value = value.value
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")

        args.append(donation_id)
        query = f"UPDATE donations SET {', '.join(assignments)} WHERE id::text = ${len(args)}"
        if expected_status is not None:
            args.append(expected_status.value)
            query += f" AND status = ${len(args)}"
        query += " RETURNING *"

        record = await self.db.fetch_one(query, *args)
        if record is not None:
            return self._from_record(record)

        exists = await self.db.fetch_one("SELECT status FROM donations WHERE id::text = $1", donation_id)
        if exists is None:
            raise NotFoundError(f"Donation {donation_id} not found")
        logger.info("update_precondition_failed",
                    donation_id=donation_id,
                    expected_status=expected_status.value if expected_status else None,
                    current_status=exists["status"])
        return None

    async def find_by_id(self, donation_id: str) -> Optional[Donation]:
        record = await self.db.fetch_one("SELECT * FROM donations WHERE id::text = $1", donation_id)
        return self._from_record(record) if record else None

    async def find(
        self,
        *,
        organization_id: Optional[str] = None,
        status: Optional[DonationStatus] = None,
        type: Optional[DonationType] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Donation], int]:
        clauses = []
        args: list[Any] = []
        for column, value in (
            ("organization_id", organization_id),
            ("status", status.value if status else None),
            ("type", type.value if type else None),
        ):
            if value is not None:
                args.append(value)
                clauses.append(f"{column} = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        total = await self.db.fetch_one(f"SELECT COUNT(*) AS n FROM donations {where}", *args)
        records = await self.db.fetch_all(
            f"SELECT * FROM donations {where} ORDER BY created_at DESC "
            f"LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}",
            *args, limit, offset,
        )
        return [self._from_record(r) for r in records], int(total["n"])

    async def find_by_gateway_reference(self, reference: str) -> Optional[Donation]:
        record = await self.db.fetch_one(
            "SELECT * FROM donations WHERE payment_id = $1 OR subscription_id = $1 LIMIT 1",
            reference,
        )
        return self._from_record(record) if record else None

    async def find_stale(
        self,
        statuses: Iterable[DonationStatus],
        older_than: datetime,
        limit: int = 50,
        after: Optional[tuple[datetime, str]] = None,
    ) -> list[Donation]:
        after_updated_at, after_id = after or (None, None)
        records = await self.db.fetch_all(
            "SELECT * FROM donations WHERE status = ANY($1::varchar[]) AND updated_at < $2 "
            "AND ($4::timestamptz IS NULL OR (updated_at, id) > ($4, $5::uuid)) "
            "ORDER BY updated_at ASC, id ASC LIMIT $3",
            [s.value for s in statuses], older_than, limit, after_updated_at, after_id,
        )
        return [self._from_record(r) for r in records]

    async def get_statistics(
        self,
        organization_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> DonationStatistics:
        records = await self.db.fetch_all(
            "SELECT * FROM donations WHERE organization_id = $1 "
            "AND ($2::timestamptz IS NULL OR created_at >= $2) "
            "AND ($3::timestamptz IS NULL OR created_at <= $3)",
            organization_id, since, until,
        )
        return build_statistics(organization_id, (self._from_record(r) for r in records))
