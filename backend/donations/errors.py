"""
Donation Errors
===============
Typed error taxonomy for the donation lifecycle.

Every error carries a stable dotted `code`, a human-readable `message` and the
HTTP status the API layer answers with.
"""

from typing import Any, Optional


class DonationError(Exception):
    """Base error for the donation subsystem."""

    code: str = "donation.error"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        meta: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = int(status_code)
        self.meta = dict(meta or {})

    def to_public_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "message": self.message,
            "code": self.code,
        }
        if self.meta:
            payload["meta"] = self.meta
        return payload


class ValidationError(DonationError):
    """Malformed or missing required input. Never creates a record."""

    code = "donation.validation"
    status_code = 400


class PolicyViolation(DonationError):
    """Input is well formed but breaks a business rule (amount bounds, frequency)."""

    code = "donation.policy"
    status_code = 400


class GatewayError(DonationError):
    """The payment provider rejected the call or could not be reached."""

    code = "gateway.error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider_status: Optional[int] = None,
        operation: Optional[str] = None,
    ):
        # Provider-side 4xx means our request was refused, not that the provider is down
        status = 400 if provider_status and 400 <= provider_status < 500 else 502
        meta = {}
        if provider_status is not None:
            meta["provider_status"] = provider_status
        if operation:
            meta["operation"] = operation
        super().__init__(message, status_code=status, meta=meta)
        self.provider_status = provider_status
        self.operation = operation


class PaymentInitiationError(DonationError):
    """Gateway call failed during creation; the donation was marked failed."""

    code = "donation.payment_initiation_failed"
    status_code = 502

    def __init__(self, message: str, *, donation_id: str):
        super().__init__(message, meta={"donation_id": donation_id})
        self.donation_id = donation_id


class ReconciliationConflict(DonationError):
    """A notification contradicts a terminal state. Logged, never surfaced to the gateway."""

    code = "webhook.conflict"
    status_code = 409

    def __init__(self, donation_id: str, current_status: str, attempted_status: str):
        super().__init__(
            f"Donation {donation_id} is already {current_status}; refusing {attempted_status}",
            meta={
                "donation_id": donation_id,
                "current_status": current_status,
                "attempted_status": attempted_status,
            },
        )
        self.donation_id = donation_id
        self.current_status = current_status
        self.attempted_status = attempted_status


class AuthenticationError(DonationError):
    code = "auth.unauthenticated"
    status_code = 401


class AuthorizationError(DonationError):
    """Caller does not own the donation and is not an administrator."""

    code = "auth.forbidden"
    status_code = 403


class NotFoundError(DonationError):
    code = "donation.not_found"
    status_code = 404
