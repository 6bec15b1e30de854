import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from donations.errors import GatewayError
from donations.gateway import SubscriptionChange
from donations.mercadopago import MercadoPagoGateway
from donations.models import Frequency, NotificationKind, PayerInfo, PaymentRequest
from donations.resilience import CircuitBreaker, CircuitState
from donations.settings import DonationSettings

WEBHOOK_SECRET = "whsec"


def _settings(**overrides) -> DonationSettings:
    values = {
        "gateway_mode": "live",
        "mercadopago_access_token": "TEST-token",
        "mercadopago_base_url": "https://mp.test",
        "frontend_url": "https://doe.test",
        "notification_url": "https://api.doe.test/api/donations/webhook",
    }
    values.update(overrides)
    return DonationSettings(**values)


def _request(frequency=None) -> PaymentRequest:
    return PaymentRequest(
        amount=Decimal("50.00"),
        external_reference="don-1",
        payer=PayerInfo(name="Maria", email="maria@example.com"),
        title="Doação para Casa Esperança",
        frequency=frequency,
    )


class Recorder:
    """httpx.MockTransport handler that records requests and replies from a route table."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.routes.get((request.method, request.url.path))
        if reply is None:
            return httpx.Response(404, json={"message": "not found"})
        if isinstance(reply, Exception):
            raise reply
        status, body = reply
        return httpx.Response(status, json=body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> dict:
        return json.loads(self.last.content)


def _gateway(routes: dict, **settings) -> tuple[MercadoPagoGateway, Recorder]:
    recorder = Recorder(routes)
    gateway = MercadoPagoGateway(
        _settings(**settings),
        transport=httpx.MockTransport(recorder),
        circuit_breaker=CircuitBreaker("test", failure_threshold=2, reset_timeout=60),
    )
    return gateway, recorder


def test_access_token_is_required():
    with pytest.raises(ValueError):
        MercadoPagoGateway(_settings(mercadopago_access_token=""))


async def test_create_single_payment_posts_preference():
    gateway, recorder = _gateway({
        ("POST", "/checkout/preferences"): (201, {
            "id": "pref-123",
            "init_point": "https://mp.test/checkout?pref=pref-123",
            "external_reference": "don-1",
        }),
    })

    payment = await gateway.create_single_payment(_request())

    assert payment.id == "pref-123"
    assert payment.status == "pending"
    assert payment.payment_url == "https://mp.test/checkout?pref=pref-123"

    request = recorder.last
    assert request.headers["Authorization"] == "Bearer TEST-token"
    assert request.headers["X-Idempotency-Key"] == "don-1"
    body = recorder.last_json()
    assert body["external_reference"] == "don-1"
    assert body["notification_url"] == "https://api.doe.test/api/donations/webhook"
    assert body["items"][0]["unit_price"] == 50.0
    assert body["items"][0]["currency_id"] == "BRL"
    assert body["back_urls"]["success"] == "https://doe.test/doacao/sucesso"
    await gateway.close()


@pytest.mark.parametrize("frequency,expected", [
    (Frequency.WEEKLY, (7, "days")),
    (Frequency.MONTHLY, (1, "months")),
    (Frequency.YEARLY, (12, "months")),
])
async def test_create_subscription_maps_frequency(frequency, expected):
    gateway, recorder = _gateway({
        ("POST", "/preapproval"): (201, {
            "id": "pre-1",
            "status": "pending",
            "init_point": "https://mp.test/subscriptions/pre-1",
        }),
    })

    subscription = await gateway.create_subscription(_request(frequency))

    assert subscription.id == "pre-1"
    assert subscription.subscription_url == "https://mp.test/subscriptions/pre-1"
    auto_recurring = recorder.last_json()["auto_recurring"]
    assert (auto_recurring["frequency"], auto_recurring["frequency_type"]) == expected
    assert auto_recurring["transaction_amount"] == 50.0
    assert recorder.last_json()["payer_email"] == "maria@example.com"


async def test_provider_4xx_becomes_client_gateway_error():
    gateway, _ = _gateway({
        ("POST", "/checkout/preferences"): (400, {"message": "invalid payer"}),
    })

    with pytest.raises(GatewayError) as exc:
        await gateway.create_single_payment(_request())

    assert exc.value.message == "invalid payer"
    assert exc.value.provider_status == 400
    assert exc.value.status_code == 400


async def test_provider_5xx_opens_the_circuit():
    """Repeated provider outages stop further calls."""
    gateway, recorder = _gateway({
        ("GET", "/v1/payments/1"): (503, {"message": "unavailable"}),
    })

    for _ in range(2):
        with pytest.raises(GatewayError) as exc:
            await gateway.get_payment_status("1")
        assert exc.value.status_code == 502

    assert gateway.circuit_breaker.state == CircuitState.OPEN
    with pytest.raises(GatewayError):
        await gateway.get_payment_status("1")
    assert len(recorder.requests) == 2


async def test_transport_errors_become_gateway_errors():
    gateway, _ = _gateway({
        ("GET", "/preapproval/pre-1"): httpx.ConnectError("refused"),
    })

    with pytest.raises(GatewayError) as exc:
        await gateway.get_subscription_status("pre-1")

    assert exc.value.status_code == 502
    assert exc.value.operation == "get_subscription_status"


async def test_timeouts_become_gateway_errors():
    gateway, _ = _gateway({
        ("GET", "/v1/payments/7"): httpx.ReadTimeout("slow"),
    })

    with pytest.raises(GatewayError) as exc:
        await gateway.get_payment_status("7")

    assert "timed out" in exc.value.message


async def test_get_subscription_status_parses_preapproval():
    gateway, _ = _gateway({
        ("GET", "/preapproval/pre-1"): (200, {
            "id": "pre-1",
            "status": "authorized",
            "external_reference": "don-1",
            "next_payment_date": "2024-07-01T10:00:00.000-03:00",
            "auto_recurring": {"frequency": 1, "frequency_type": "months", "transaction_amount": 30},
        }),
    })

    status = await gateway.get_subscription_status("pre-1")

    assert status.status == "authorized"
    assert status.amount == Decimal("30")
    assert status.frequency == "monthly"
    assert status.next_billing_date.year == 2024
    assert status.external_reference == "don-1"


async def test_update_and_cancel_subscription_use_put():
    gateway, recorder = _gateway({
        ("PUT", "/preapproval/pre-1"): (200, {"id": "pre-1", "status": "authorized"}),
    })

    await gateway.update_subscription("pre-1", SubscriptionChange(amount=Decimal("45.50")))
    assert recorder.last_json() == {"auto_recurring": {"transaction_amount": 45.5, "currency_id": "BRL"}}

    await gateway.cancel_subscription("pre-1")
    assert recorder.last_json() == {"status": "cancelled"}


async def test_search_payment_returns_latest_or_none():
    gateway, recorder = _gateway({
        ("GET", "/v1/payments/search"): (200, {"results": [
            {"id": 999, "status": "approved", "transaction_amount": 50, "external_reference": "don-1"},
        ]}),
    })

    found = await gateway.search_payment("don-1")

    assert found.id == "999"
    assert found.status == "approved"
    assert recorder.last.url.params["external_reference"] == "don-1"

    recorder.routes[("GET", "/v1/payments/search")] = (200, {"results": []})
    assert await gateway.search_payment("don-2") is None


async def test_search_payment_encodes_the_reference():
    gateway, recorder = _gateway({
        ("GET", "/v1/payments/search"): (200, {"results": []}),
    })

    await gateway.search_payment("don 1&limit=50")

    params = recorder.last.url.params
    assert params["external_reference"] == "don 1&limit=50"
    assert params["limit"] == "1"
    assert params["sort"] == "date_created"


async def test_payment_webhook_fetches_the_payment():
    gateway, _ = _gateway({
        ("GET", "/v1/payments/555"): (200, {
            "id": 555, "status": "approved", "external_reference": "don-1",
        }),
    })

    notification = await gateway.process_webhook_payload(
        {"id": 12345, "type": "payment", "data": {"id": "555"}}
    )

    assert notification.kind == NotificationKind.PAYMENT
    assert notification.reference == "555"
    assert notification.status == "approved"
    assert notification.external_reference == "don-1"
    assert notification.event_id == "12345"


async def test_legacy_topic_webhook_with_resource_url():
    gateway, _ = _gateway({
        ("GET", "/preapproval/pre-9"): (200, {"id": "pre-9", "status": "cancelled"}),
    })

    notification = await gateway.process_webhook_payload(
        {"topic": "preapproval", "resource": "https://api.mercadopago.com/preapproval/pre-9"}
    )

    assert notification.kind == NotificationKind.SUBSCRIPTION
    assert notification.status == "cancelled"


async def test_unknown_topic_is_ignored():
    gateway, recorder = _gateway({})

    assert await gateway.process_webhook_payload({"type": "merchant_order", "data": {"id": "1"}}) is None
    assert recorder.requests == []


def _signed_headers(data_id: str, request_id: str = "req-1", ts: str = "1700000000",
                    secret: str = WEBHOOK_SECRET) -> dict:
    manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}


def test_valid_signature_is_accepted():
    gateway, _ = _gateway({}, mercadopago_webhook_secret=WEBHOOK_SECRET)

    gateway.verify_signature("ABC123", _signed_headers("ABC123"))


@pytest.mark.parametrize("headers", [
    {},
    {"x-signature": "ts=1700000000"},
    _signed_headers("ABC123", secret="wrong"),
    _signed_headers("OTHER"),
])
def test_bad_signatures_are_rejected(headers):
    gateway, _ = _gateway({}, mercadopago_webhook_secret=WEBHOOK_SECRET)

    with pytest.raises(GatewayError) as exc:
        gateway.verify_signature("ABC123", headers)

    assert exc.value.provider_status == 401


async def test_signature_is_checked_before_fetching():
    gateway, recorder = _gateway({}, mercadopago_webhook_secret=WEBHOOK_SECRET)

    with pytest.raises(GatewayError):
        await gateway.process_webhook_payload({"type": "payment", "data": {"id": "1"}}, {})

    assert recorder.requests == []


def test_signature_not_required_without_secret():
    gateway, _ = _gateway({})

    gateway.verify_signature("ABC123", {})
