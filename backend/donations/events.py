"""
Donation Events
===============
Lifecycle events published by the coordinator, the webhook reconciler and
the subscription manager.

- InMemoryEventBus: records events and dispatches to local subscribers
- RabbitMQEventBus: topic exchange, persistent JSON messages

Publishing is best effort. `emit()` logs a failed publish and returns
False; it never raises into a donation flow.

pip install pydantic aio-pika structlog
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

import aio_pika
import structlog
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange
from pydantic import BaseModel, Field, computed_field

from donations.models import Donation, utc_now
from donations.resilience import CircuitBreaker, with_circuit_breaker

logger = structlog.get_logger().bind(component="donation_events")


# =============================================================================
# EVENT SCHEMA
# =============================================================================

class DonationEventType(str, Enum):
    CREATED = "donation.created"
    PROCESSING = "donation.processing"
    FAILED = "donation.failed"
    PAYMENT_APPROVED = "donation.payment.approved"
    PAYMENT_REJECTED = "donation.payment.rejected"
    SUBSCRIPTION_CANCELLED = "donation.subscription.cancelled"
    SUBSCRIPTION_UPDATED = "donation.subscription.updated"


class DonationEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: DonationEventType
    version: str = "1.0"
    timestamp: datetime = Field(default_factory=utc_now)
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    donation_id: str
    organization_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    @computed_field
    @property
    def routing_key(self) -> str:
        return self.event_type.value

    def to_message_body(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_message_body(cls, body: bytes) -> "DonationEvent":
        return cls.model_validate_json(body)

    @classmethod
    def for_donation(
        cls,
        event_type: DonationEventType,
        donation: Donation,
        correlation_id: Optional[str] = None,
        **payload,
    ) -> "DonationEvent":
        body = {
            "status": donation.status.value,
            "type": donation.type.value,
            "amount": str(donation.amount),
            "currency": donation.currency,
            "gateway_reference": donation.gateway_reference,
        }
        body.update(payload)
        return cls(
            event_type=event_type,
            correlation_id=correlation_id or str(uuid.uuid4()),
            donation_id=donation.id,
            organization_id=donation.organization_id,
            payload=body,
        )


EventHandler = Callable[[DonationEvent], Any]


# =============================================================================
# PUBLISHER INTERFACE
# =============================================================================

class IEventPublisher(ABC):
    """Publisher interface"""

    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    @abstractmethod
    async def publish(self, event: DonationEvent) -> bool:
        pass


async def emit(
    publisher: Optional[IEventPublisher],
    event_type: DonationEventType,
    donation: Donation,
    correlation_id: Optional[str] = None,
    **payload,
) -> bool:
    """Best-effort publish of a donation event."""
    if publisher is None:
        return False
    event = DonationEvent.for_donation(event_type, donation, correlation_id, **payload)
    try:
        return await publisher.publish(event)
    except Exception as e:
        logger.error("event_publish_failed",
                     event_type=event_type.value,
                     donation_id=donation.id,
                     error=str(e))
        return False


# =============================================================================
# IN-MEMORY EVENT BUS
# =============================================================================

class InMemoryEventBus(IEventPublisher):
    """In-memory bus for tests and development"""

    def __init__(self):
        self._handlers: dict[DonationEventType, list[tuple[str, EventHandler]]] = defaultdict(list)
        self._events: list[DonationEvent] = []
        self._connected = False
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="inmemory_event_bus")

    async def connect(self) -> bool:
        self._connected = True
        self._logger.info("connected")
        return True

    async def disconnect(self) -> bool:
        self._connected = False
        self._logger.info("disconnected")
        return True

    async def health_check(self) -> bool:
        return self._connected

    async def publish(self, event: DonationEvent) -> bool:
        if not self._connected:
            raise ConnectionError("Event bus not connected")

        async with self._lock:
            self._events.append(event)
            handlers = list(self._handlers.get(event.event_type, []))

        for sub_id, handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._logger.error("handler_error",
                                   event_type=event.event_type.value,
                                   subscription_id=sub_id,
                                   error=str(e))

        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          donation_id=event.donation_id,
                          handlers_notified=len(handlers))
        return True

    async def subscribe(self, event_types: list[DonationEventType], handler: EventHandler) -> str:
        subscription_id = str(uuid.uuid4())
        async with self._lock:
            for event_type in event_types:
                self._handlers[event_type].append((subscription_id, handler))
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        async with self._lock:
            for event_type in list(self._handlers.keys()):
                self._handlers[event_type] = [
                    (sid, h) for sid, h in self._handlers[event_type]
                    if sid != subscription_id
                ]
        return True

    # Testing utilities
    def get_published_events(self) -> list[DonationEvent]:
        return list(self._events)

    def events_of(self, event_type: DonationEventType) -> list[DonationEvent]:
        return [e for e in self._events if e.event_type == event_type]

    def clear_events(self):
        self._events.clear()


# =============================================================================
# RABBITMQ EVENT BUS
# =============================================================================

class RabbitMQEventBus(IEventPublisher):
    """Publishes donation events to a durable topic exchange"""

    _publish_breaker = CircuitBreaker("rabbitmq_publish")

    def __init__(self, url: str, exchange_name: str = "donations"):
        self._url = url
        self._exchange_name = exchange_name

        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._logger = structlog.get_logger().bind(component="rabbitmq_event_bus")

    async def connect(self) -> bool:
        try:
            self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self._exchange_name,
                ExchangeType.TOPIC,
                durable=True,
            )
            self._logger.info("connected", exchange=self._exchange_name)
            return True

        except Exception as e:
            self._logger.error("connection_failed", error=str(e))
            raise

    async def disconnect(self) -> bool:
        try:
            if self._channel:
                await self._channel.close()
            if self._connection:
                await self._connection.close()
            self._logger.info("disconnected")
            return True

        except Exception as e:
            self._logger.error("disconnect_error", error=str(e))
            return False

    async def health_check(self) -> bool:
        if not self._connection or self._connection.is_closed:
            return False
        if not self._channel or self._channel.is_closed:
            return False
        return True

    @with_circuit_breaker(_publish_breaker)
    async def publish(self, event: DonationEvent) -> bool:
        if not await self.health_check():
            raise ConnectionError("RabbitMQ not connected")

        message = Message(
            body=event.to_message_body(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            correlation_id=event.correlation_id,
            message_id=event.event_id,
            timestamp=event.timestamp,
            headers={
                "event_type": event.event_type.value,
                "version": event.version,
            },
        )
        await self._exchange.publish(message, routing_key=event.routing_key)

        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          routing_key=event.routing_key)
        return True
