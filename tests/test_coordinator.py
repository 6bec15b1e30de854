from decimal import Decimal

import pytest

from donations.errors import PaymentInitiationError, PolicyViolation, ValidationError
from donations.events import DonationEventType
from donations.models import DonationStatus, DonationType, Frequency


async def test_create_single_opens_checkout_and_moves_to_processing(coordinator, store, single_request):
    """A single donation ends in processing with the checkout URL and payment id attached."""
    result = await coordinator.create_single(single_request)

    donation = result.donation
    assert donation.status == DonationStatus.PROCESSING
    assert donation.type == DonationType.SINGLE
    assert donation.amount == Decimal("50.00")
    assert donation.payment_status == "pending"
    assert donation.payment_id == result.gateway_reference
    assert donation.payment_id != donation.id
    assert result.payment_url == f"http://test/mock/payment/{donation.payment_id}"
    assert donation.payment_url == result.payment_url
    assert await store.find_by_id(donation.id) == donation


async def test_create_recurring_opens_subscription(coordinator, gateway, recurring_request):
    """A recurring donation stores the subscription id and its amount."""
    result = await coordinator.create_recurring(recurring_request)

    donation = result.donation
    assert donation.status == DonationStatus.PROCESSING
    assert donation.frequency == Frequency.MONTHLY
    assert donation.subscription_id == result.gateway_reference
    assert donation.subscription_id.startswith("mock_sub_")
    assert donation.payment_id is None
    assert donation.subscription_amount == Decimal("30.00")
    assert gateway.store.resources[donation.subscription_id].external_reference == donation.id


async def test_payment_request_carries_donation_details(coordinator, gateway, single_request):
    """The gateway sees the amount, the donation id as external reference and the payer."""
    result = await coordinator.create_single(single_request)

    resource = gateway.store.resources[result.gateway_reference]
    assert resource.amount == Decimal("50.00")
    assert resource.external_reference == result.donation.id
    assert resource.payer_email == "maria@example.com"


async def test_metadata_is_stored(coordinator, single_request):
    """Request metadata is kept on the record."""
    result = await coordinator.create_single(single_request, metadata={"ip": "10.0.0.1"})

    assert result.donation.metadata == {"ip": "10.0.0.1"}


async def test_lifecycle_events_are_published(coordinator, event_bus, single_request):
    """Creation publishes created then processing."""
    result = await coordinator.create_single(single_request)

    types = [e.event_type for e in event_bus.get_published_events()]
    assert types == [DonationEventType.CREATED, DonationEventType.PROCESSING]
    assert all(e.donation_id == result.donation.id for e in event_bus.get_published_events())


async def test_validation_failure_creates_no_record(coordinator, store, gateway, single_request):
    """Invalid input never reaches the store or the gateway."""
    with pytest.raises(ValidationError):
        await coordinator.create_single({**single_request, "donorEmail": "bad"})

    _, total = await store.find()
    assert total == 0
    assert gateway.store.calls == []


async def test_unsupported_frequency_creates_no_record(coordinator, store, recurring_request):
    """A daily recurring donation is refused before anything is persisted."""
    with pytest.raises(PolicyViolation):
        await coordinator.create_recurring({**recurring_request, "frequency": "daily"})

    _, total = await store.find()
    assert total == 0


async def test_gateway_failure_marks_donation_failed(coordinator, store, gateway, event_bus, single_request):
    """A refused checkout leaves the record failed with a reason, never pending."""
    gateway.fail_next("create_single_payment", "Provider exploded")

    with pytest.raises(PaymentInitiationError) as exc:
        await coordinator.create_single(single_request)

    donation = await store.find_by_id(exc.value.donation_id)
    assert donation.status == DonationStatus.FAILED
    assert "Provider exploded" in donation.failure_reason
    assert donation.payment_id is None
    assert event_bus.events_of(DonationEventType.FAILED)


async def test_gateway_timeout_marks_donation_failed(coordinator, store, gateway, recurring_request):
    """A gateway call slower than the timeout fails the record."""
    gateway.delay_next("create_subscription", 2.0)

    with pytest.raises(PaymentInitiationError) as exc:
        await coordinator.create_recurring(recurring_request)

    donation = await store.find_by_id(exc.value.donation_id)
    assert donation.status == DonationStatus.FAILED
    assert "timed out" in donation.failure_reason


async def test_no_record_is_left_pending(coordinator, store, gateway, single_request):
    """Successful and failed creations both leave no pending records."""
    await coordinator.create_single(single_request)
    gateway.fail_next("create_single_payment")
    with pytest.raises(PaymentInitiationError):
        await coordinator.create_single(single_request)

    pending, _ = await store.find(status=DonationStatus.PENDING)
    assert pending == []


async def test_failure_reason_is_truncated(coordinator, store, gateway, single_request):
    """Very long provider messages are cut to fit the column."""
    gateway.fail_next("create_single_payment", "x" * 1000)

    with pytest.raises(PaymentInitiationError) as exc:
        await coordinator.create_single(single_request)

    donation = await store.find_by_id(exc.value.donation_id)
    assert len(donation.failure_reason) == 255


async def test_initiation_error_chains_gateway_error(coordinator, gateway, single_request):
    """The original gateway error stays available as the cause."""
    gateway.fail_next("create_single_payment", "refused", provider_status=400)

    with pytest.raises(PaymentInitiationError) as exc:
        await coordinator.create_single(single_request)

    assert exc.value.__cause__.provider_status == 400
    assert exc.value.status_code == 502
