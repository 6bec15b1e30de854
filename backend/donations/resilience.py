"""
Resilience Primitives
=====================
Circuit breaker shared by the live payment gateway and the RabbitMQ event bus.
"""

import asyncio
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Optional

import structlog

from donations.models import utc_now


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ConnectionError):
    """Raised instead of calling a dependency whose circuit is open."""


class CircuitBreaker:
    """Circuit breaker for outbound dependencies"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time:
                    elapsed = (utc_now() - self._last_failure_time).total_seconds()
                    if elapsed >= self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._logger.info("circuit_half_open", elapsed=elapsed)
                        return True
                return False

            # HALF_OPEN: let the probe through
            return True

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._logger.info("circuit_closed")
            self._failures = 0

    async def record_failure(self, error: Exception = None):
        async with self._lock:
            self._failures += 1
            self._last_failure_time = utc_now()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))


def with_circuit_breaker(circuit_breaker: CircuitBreaker):
    """Decorator to wrap async functions with circuit breaker"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            if not await circuit_breaker.can_execute():
                raise CircuitOpenError(f"Circuit breaker {circuit_breaker.name} is OPEN")

            try:
                result = await func(*args, **kwargs)
                await circuit_breaker.record_success()
                return result
            except Exception as e:
                await circuit_breaker.record_failure(e)
                raise
        return wrapper
    return decorator
