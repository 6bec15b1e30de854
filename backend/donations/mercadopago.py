"""
Mercado Pago Gateway
====================
Live payment adapter over the Mercado Pago REST API.

- Single donations: Checkout Pro preference (`/checkout/preferences`)
- Recurring donations: preapproval (`/preapproval`)
- Lookups: `/v1/payments/{id}` and `/preapproval/{id}`
- Webhooks: resolved by fetching the referenced resource, with optional
  `x-signature` HMAC-SHA256 verification

pip install httpx structlog
"""

import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
import structlog

from donations.errors import GatewayError
from donations.gateway import IPaymentGateway, SubscriptionChange
from donations.models import (
    CURRENCY,
    Frequency,
    GatewayPayment,
    GatewayStatus,
    GatewaySubscription,
    NotificationKind,
    PaymentRequest,
    WebhookNotification,
)
from donations.resilience import CircuitBreaker
from donations.settings import DonationSettings

logger = structlog.get_logger().bind(component="mercadopago_gateway")

# Preapproval only knows days and months
FREQUENCY_MAP: dict[Frequency, tuple[int, str]] = {
    Frequency.WEEKLY: (7, "days"),
    Frequency.MONTHLY: (1, "months"),
    Frequency.YEARLY: (12, "months"),
}

PAYMENT_TOPICS = ("payment",)
SUBSCRIPTION_TOPICS = ("preapproval", "subscription_preapproval")


def _frequency_from_provider(auto_recurring: Mapping[str, Any]) -> Optional[str]:
    pair = (auto_recurring.get("frequency"), auto_recurring.get("frequency_type"))
    for frequency, mapped in FREQUENCY_MAP.items():
        if pair == mapped:
            return frequency.value
    return None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class MercadoPagoGateway(IPaymentGateway):
    """
    Mercado Pago adapter.

    Every request carries the bearer access token; creation requests also
    carry `X-Idempotency-Key` set to the local donation id so a retried
    create cannot open a second checkout. Non-2xx answers, transport errors
    and an open circuit all surface as GatewayError.
    """

    name = "mercadopago"

    def __init__(
        self,
        settings: DonationSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        if not settings.mercadopago_access_token:
            raise ValueError("MERCADOPAGO_ACCESS_TOKEN is required for the live gateway")

        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker("mercadopago")
        self._client = httpx.AsyncClient(
            base_url=settings.mercadopago_base_url,
            timeout=settings.gateway_timeout_seconds,
            headers={
                "Authorization": f"Bearer {settings.mercadopago_access_token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )
        logger.info("mercadopago_gateway_initialized", base_url=settings.mercadopago_base_url)

    async def close(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        if not await self.circuit_breaker.can_execute():
            raise GatewayError("Payment provider unavailable (circuit open)", operation=operation)

        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            await self.circuit_breaker.record_failure(e)
            logger.error("provider_timeout", operation=operation, path=path)
            raise GatewayError("Payment provider timed out", operation=operation) from e
        except httpx.HTTPError as e:
            await self.circuit_breaker.record_failure(e)
            logger.error("provider_unreachable", operation=operation, path=path, error=str(e))
            raise GatewayError(f"Payment provider unreachable: {e}", operation=operation) from e

        if response.status_code >= 500:
            await self.circuit_breaker.record_failure()
        else:
            await self.circuit_breaker.record_success()

        if not response.is_success:
            message = self._error_message(response)
            logger.warning("provider_error", operation=operation, path=path,
                           provider_status=response.status_code, message=message)
            raise GatewayError(message, provider_status=response.status_code, operation=operation)

        return response.json()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Payment provider returned HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or f"HTTP {response.status_code}")
        return f"Payment provider returned HTTP {response.status_code}"

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create_single_payment(self, request: PaymentRequest) -> GatewayPayment:
        frontend = self.settings.frontend_url.rstrip("/")
        body = {
            "items": [{
                "title": request.title,
                "description": request.description or request.title,
                "quantity": 1,
                "currency_id": CURRENCY,
                "unit_price": float(request.amount),
            }],
            "payer": {"name": request.payer.name, "email": request.payer.email},
            "back_urls": {
                "success": f"{frontend}/doacao/sucesso",
                "failure": f"{frontend}/doacao/erro",
                "pending": f"{frontend}/doacao/pendente",
            },
            "auto_return": "approved",
            "notification_url": self.settings.notification_url,
            "external_reference": request.external_reference,
        }
        data = await self._request(
            "create_single_payment", "POST", "/checkout/preferences",
            json=body, idempotency_key=request.external_reference,
        )
        logger.info("preference_created", preference_id=data.get("id"),
                    external_reference=request.external_reference)
        return GatewayPayment(
            id=str(data["id"]),
            status="pending",
            payment_url=data.get("init_point") or data.get("sandbox_init_point"),
            external_reference=data.get("external_reference", request.external_reference),
        )

    async def create_subscription(self, request: PaymentRequest) -> GatewaySubscription:
        if request.frequency is None:
            raise GatewayError("Subscription requires a frequency", provider_status=400,
                               operation="create_subscription")
        frequency, frequency_type = FREQUENCY_MAP[request.frequency]
        body = {
            "reason": request.description or request.title,
            "external_reference": request.external_reference,
            "payer_email": request.payer.email,
            "auto_recurring": {
                "frequency": frequency,
                "frequency_type": frequency_type,
                "transaction_amount": float(request.amount),
                "currency_id": CURRENCY,
            },
            "back_url": f"{self.settings.frontend_url.rstrip('/')}/doacao/assinatura",
            "status": "pending",
        }
        data = await self._request(
            "create_subscription", "POST", "/preapproval",
            json=body, idempotency_key=request.external_reference,
        )
        logger.info("preapproval_created", preapproval_id=data.get("id"),
                    external_reference=request.external_reference)
        return GatewaySubscription(
            id=str(data["id"]),
            status=str(data.get("status", "pending")),
            subscription_url=data.get("init_point"),
            external_reference=data.get("external_reference", request.external_reference),
        )

    # =========================================================================
    # LOOKUPS AND UPDATES
    # =========================================================================

    async def get_payment_status(self, payment_id: str) -> GatewayStatus:
        data = await self._request("get_payment_status", "GET", f"/v1/payments/{payment_id}")
        amount = data.get("transaction_amount")
        return GatewayStatus(
            id=str(data["id"]),
            status=str(data.get("status", "unknown")),
            amount=Decimal(str(amount)) if amount is not None else None,
            external_reference=data.get("external_reference"),
        )

    async def search_payment(self, external_reference: str) -> Optional[GatewayStatus]:
        data = await self._request(
            "search_payment", "GET", "/v1/payments/search",
            params={
                "external_reference": external_reference,
                "sort": "date_created",
                "criteria": "desc",
                "limit": 1,
            },
        )
        results = data.get("results") or []
        if not results:
            return None
        latest = results[0]
        amount = latest.get("transaction_amount")
        return GatewayStatus(
            id=str(latest["id"]),
            status=str(latest.get("status", "unknown")),
            amount=Decimal(str(amount)) if amount is not None else None,
            external_reference=latest.get("external_reference", external_reference),
        )

    async def get_subscription_status(self, subscription_id: str) -> GatewayStatus:
        data = await self._request("get_subscription_status", "GET", f"/preapproval/{subscription_id}")
        return self._subscription_status(data)

    async def update_subscription(
        self,
        subscription_id: str,
        change: SubscriptionChange,
    ) -> GatewayStatus:
        data = await self._request(
            "update_subscription", "PUT", f"/preapproval/{subscription_id}",
            json={"auto_recurring": {
                "transaction_amount": float(change.amount),
                "currency_id": CURRENCY,
            }},
        )
        logger.info("preapproval_updated", preapproval_id=subscription_id, amount=str(change.amount))
        return self._subscription_status(data)

    async def cancel_subscription(self, subscription_id: str) -> GatewayStatus:
        data = await self._request(
            "cancel_subscription", "PUT", f"/preapproval/{subscription_id}",
            json={"status": "cancelled"},
        )
        logger.info("preapproval_cancelled", preapproval_id=subscription_id)
        return self._subscription_status(data)

    @staticmethod
    def _subscription_status(data: Mapping[str, Any]) -> GatewayStatus:
        auto_recurring = data.get("auto_recurring") or {}
        amount = auto_recurring.get("transaction_amount")
        return GatewayStatus(
            id=str(data["id"]),
            status=str(data.get("status", "unknown")),
            amount=Decimal(str(amount)) if amount is not None else None,
            frequency=_frequency_from_provider(auto_recurring),
            next_billing_date=_parse_datetime(data.get("next_payment_date")),
            external_reference=data.get("external_reference"),
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def process_webhook_payload(
        self,
        payload: Mapping,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookNotification]:
        topic = payload.get("type") or payload.get("topic")
        data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
        resource_id = data.get("id") or payload.get("id")
        if not resource_id and payload.get("resource"):
            resource_id = str(payload["resource"]).rstrip("/").rsplit("/", 1)[-1]

        if topic in PAYMENT_TOPICS:
            kind = NotificationKind.PAYMENT
        elif topic in SUBSCRIPTION_TOPICS:
            kind = NotificationKind.SUBSCRIPTION
        else:
            logger.info("webhook_topic_ignored", topic=topic)
            return None
        if not resource_id:
            logger.warning("webhook_missing_resource_id", topic=topic)
            return None

        resource_id = str(resource_id)
        self.verify_signature(resource_id, headers or {})

        if kind == NotificationKind.PAYMENT:
            status = await self.get_payment_status(resource_id)
        else:
            status = await self.get_subscription_status(resource_id)

        return WebhookNotification(
            kind=kind,
            reference=status.id,
            status=status.status.lower(),
            external_reference=status.external_reference,
            event_id=str(payload["id"]) if data and payload.get("id") else None,
        )

    def verify_signature(self, data_id: str, headers: Mapping[str, str]) -> None:
        """Check `x-signature` (ts=..,v1=..) when a webhook secret is configured."""
        secret = self.settings.mercadopago_webhook_secret
        if not secret:
            return

        lowered = {k.lower(): v for k, v in headers.items()}
        parts = dict(
            item.strip().split("=", 1)
            for item in lowered.get("x-signature", "").split(",")
            if "=" in item
        )
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            raise GatewayError("Missing webhook signature", provider_status=401, operation="webhook")

        manifest = f"id:{data_id.lower()};"
        if lowered.get("x-request-id"):
            manifest += f"request-id:{lowered['x-request-id']};"
        manifest += f"ts:{ts};"
        expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, received):
            logger.warning("webhook_signature_invalid", data_id=data_id)
            raise GatewayError("Invalid webhook signature", provider_status=401, operation="webhook")
