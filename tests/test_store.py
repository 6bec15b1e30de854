import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from donations.errors import NotFoundError
from donations.models import Donation, DonationStatus, DonationType, Frequency, utc_now
from donations.store import PostgresDonationStore, build_statistics


def _donation(**overrides) -> Donation:
    values = {
        "id": Donation.generate_id(),
        "organization_id": "org1",
        "amount": Decimal("50.00"),
        "type": DonationType.SINGLE,
        "donor_name": "Maria",
        "donor_email": "maria@example.com",
    }
    values.update(overrides)
    return Donation(**values)


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

async def test_create_and_find(store):
    donation = await store.create(_donation())

    assert await store.find_by_id(donation.id) == donation
    assert await store.find_by_id("missing") is None


async def test_duplicate_id_is_refused(store):
    donation = await store.create(_donation())

    with pytest.raises(ValueError):
        await store.create(donation)


async def test_update_sets_lifecycle_fields(store):
    donation = await store.create(_donation())

    updated = await store.update_by_id(donation.id, {"status": DonationStatus.PROCESSING, "payment_id": "p1"})

    assert updated.status == DonationStatus.PROCESSING
    assert updated.payment_id == "p1"
    assert updated.updated_at >= donation.updated_at
    assert updated.amount == donation.amount


async def test_update_refuses_immutable_fields(store):
    """Donor and amount fields are history, not state."""
    donation = await store.create(_donation())

    with pytest.raises(ValueError):
        await store.update_by_id(donation.id, {"amount": Decimal("1")})
    with pytest.raises(ValueError):
        await store.update_by_id(donation.id, {"donor_email": "x@example.com"})


async def test_update_unknown_id_raises(store):
    with pytest.raises(NotFoundError):
        await store.update_by_id("missing", {"status": DonationStatus.FAILED})


async def test_compare_and_set_loses_on_status_mismatch(store):
    donation = await store.create(_donation(status=DonationStatus.PROCESSING))

    result = await store.update_by_id(
        donation.id, {"status": DonationStatus.FAILED}, expected_status=DonationStatus.PENDING,
    )

    assert result is None
    assert (await store.find_by_id(donation.id)).status == DonationStatus.PROCESSING


async def test_concurrent_compare_and_set_has_one_winner(store):
    donation = await store.create(_donation(status=DonationStatus.PROCESSING))

    results = await asyncio.gather(*[
        store.update_by_id(donation.id, {"status": target}, expected_status=DonationStatus.PROCESSING)
        for target in (DonationStatus.APPROVED, DonationStatus.REJECTED, DonationStatus.FAILED)
    ])

    assert sum(r is not None for r in results) == 1


async def test_find_filters_and_paginates_newest_first(store):
    now = utc_now()
    for i in range(5):
        await store.create(_donation(created_at=now - timedelta(minutes=i)))
    await store.create(_donation(organization_id="org2"))
    await store.create(_donation(type=DonationType.RECURRING, frequency=Frequency.MONTHLY,
                                 status=DonationStatus.APPROVED, created_at=now - timedelta(hours=1)))

    page, total = await store.find(organization_id="org1", limit=2, offset=1)
    assert total == 6
    assert len(page) == 2
    assert page[0].created_at > page[1].created_at

    recurring, total = await store.find(organization_id="org1", type=DonationType.RECURRING)
    assert total == 1
    assert recurring[0].status == DonationStatus.APPROVED

    approved, total = await store.find(status=DonationStatus.APPROVED)
    assert total == 1


async def test_find_by_gateway_reference(store):
    single = await store.create(_donation(payment_id="pay-1"))
    recurring = await store.create(_donation(type=DonationType.RECURRING, frequency=Frequency.WEEKLY,
                                             subscription_id="sub-1"))

    assert (await store.find_by_gateway_reference("pay-1")).id == single.id
    assert (await store.find_by_gateway_reference("sub-1")).id == recurring.id
    assert await store.find_by_gateway_reference("nope") is None


async def test_find_stale_oldest_first(store):
    now = utc_now()
    old = await store.create(_donation(updated_at=now - timedelta(hours=2)))
    older = await store.create(_donation(updated_at=now - timedelta(hours=3)))
    await store.create(_donation(updated_at=now))
    await store.create(_donation(status=DonationStatus.APPROVED, updated_at=now - timedelta(hours=5)))

    stale = await store.find_stale([DonationStatus.PENDING], now - timedelta(hours=1))

    assert [d.id for d in stale] == [older.id, old.id]


async def test_find_stale_pages_after_cursor(store):
    now = utc_now()
    first = await store.create(_donation(updated_at=now - timedelta(hours=3)))
    second = await store.create(_donation(updated_at=now - timedelta(hours=2)))
    cutoff = now - timedelta(hours=1)

    page = await store.find_stale([DonationStatus.PENDING], cutoff, limit=1)
    rest = await store.find_stale([DonationStatus.PENDING], cutoff, limit=1,
                                  after=(page[0].updated_at, page[0].id))

    assert [d.id for d in page] == [first.id]
    assert [d.id for d in rest] == [second.id]
    assert await store.find_stale([DonationStatus.PENDING], cutoff, after=(second.updated_at, second.id)) == []


async def test_statistics_count_approved_amounts_only(store):
    await store.create(_donation(status=DonationStatus.APPROVED, amount=Decimal("100.00")))
    await store.create(_donation(status=DonationStatus.APPROVED, amount=Decimal("50.00"),
                                 type=DonationType.RECURRING, frequency=Frequency.MONTHLY))
    await store.create(_donation(status=DonationStatus.REJECTED, amount=Decimal("999.00")))
    await store.create(_donation(status=DonationStatus.PROCESSING))
    await store.create(_donation(organization_id="org2", status=DonationStatus.APPROVED))

    stats = await store.get_statistics("org1")

    assert stats.total_donations == 4
    assert stats.approved_donations == 2
    assert stats.pending_donations == 2
    assert stats.single_donations == 3
    assert stats.recurring_donations == 1
    assert stats.total_amount == Decimal("150.00")
    assert stats.avg_amount == Decimal("75.00")
    assert stats.by_status == {"approved": 2, "rejected": 1, "processing": 1}


async def test_statistics_respect_date_window(store):
    now = utc_now()
    await store.create(_donation(created_at=now - timedelta(days=10)))
    await store.create(_donation(created_at=now - timedelta(days=1)))

    stats = await store.get_statistics("org1", since=now - timedelta(days=2))

    assert stats.total_donations == 1


def test_empty_statistics():
    stats = build_statistics("org1", [])

    assert stats.total_donations == 0
    assert stats.avg_amount == Decimal("0.00")


# =============================================================================
# POSTGRES STORE (fake pool)
# =============================================================================

class FakeDatabase:
    """Stands in for database.Database: records queries, replays canned rows."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.queries: list[tuple[str, tuple]] = []

    async def fetch_one(self, query, *args):
        self.queries.append((query, args))
        return self.replies.pop(0) if self.replies else None

    async def fetch_all(self, query, *args):
        self.queries.append((query, args))
        return self.replies.pop(0) if self.replies else []


def _record(donation: Donation) -> dict:
    data = donation.model_dump(exclude={"gateway_reference"})
    for key in ("type", "frequency", "status"):
        if data[key] is not None:
            data[key] = data[key].value
    data["metadata"] = json.dumps(data["metadata"])
    return data


async def test_postgres_create_inserts_every_column():
    donation = _donation(metadata={"ip": "10.0.0.1"})
    db = FakeDatabase(_record(donation))

    created = await PostgresDonationStore(db).create(donation)

    query, args = db.queries[0]
    assert query.startswith("INSERT INTO donations (")
    assert "RETURNING *" in query
    assert "single" in args
    assert json.dumps({"ip": "10.0.0.1"}) in args
    assert created == donation


async def test_postgres_update_with_compare_and_set():
    donation = _donation(status=DonationStatus.PROCESSING, payment_status="approved")
    db = FakeDatabase(_record(donation))

    await PostgresDonationStore(db).update_by_id(
        donation.id,
        {"status": DonationStatus.APPROVED, "payment_status": "approved"},
        expected_status=DonationStatus.PROCESSING,
    )

    query, args = db.queries[0]
    assert query.startswith("UPDATE donations SET status = $1, payment_status = $2, updated_at = $3")
    assert "WHERE id::text = $4 AND status = $5 RETURNING *" in query
    assert args[0] == "approved"
    assert args[3] == donation.id
    assert args[4] == "processing"


async def test_postgres_lost_compare_and_set_returns_none():
    db = FakeDatabase(None, {"status": "approved"})

    result = await PostgresDonationStore(db).update_by_id(
        "d1", {"status": DonationStatus.FAILED}, expected_status=DonationStatus.PENDING,
    )

    assert result is None


async def test_postgres_update_unknown_id_raises():
    db = FakeDatabase(None, None)

    with pytest.raises(NotFoundError):
        await PostgresDonationStore(db).update_by_id("d1", {"status": DonationStatus.FAILED})


async def test_postgres_find_stale_uses_keyset_cursor():
    cutoff = utc_now()
    db = FakeDatabase([])

    await PostgresDonationStore(db).find_stale(
        [DonationStatus.PROCESSING], cutoff, 25, after=(cutoff - timedelta(hours=1), "d1"),
    )

    query, args = db.queries[0]
    assert "(updated_at, id) > ($4, $5::uuid)" in query
    assert "ORDER BY updated_at ASC, id ASC LIMIT $3" in query
    assert args == (["processing"], cutoff, 25, cutoff - timedelta(hours=1), "d1")


async def test_postgres_find_builds_filters():
    donation = _donation()
    db = FakeDatabase({"n": 7}, [_record(donation)])

    page, total = await PostgresDonationStore(db).find(
        organization_id="org1", status=DonationStatus.PENDING, limit=10, offset=20,
    )

    assert total == 7
    assert page == [donation]
    count_query, count_args = db.queries[0]
    assert "WHERE organization_id = $1 AND status = $2" in count_query
    assert count_args == ("org1", "pending")
    page_query, page_args = db.queries[1]
    assert "ORDER BY created_at DESC LIMIT $3 OFFSET $4" in page_query
    assert page_args == ("org1", "pending", 10, 20)
