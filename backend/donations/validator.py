"""
Donation Request Validator
==========================
Pure validation and normalization of raw donation-creation input.

Missing or malformed input raises ValidationError; well-formed input that
breaks the amount or recurrence policy raises PolicyViolation.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from donations.errors import PolicyViolation, ValidationError
from donations.models import DonationDraft, DonationType, Frequency
from donations.settings import DonationSettings

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CENTS = Decimal("0.01")

# Accepted spellings for each draft field (wire format is camelCase)
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "organization_id": ("organizationId", "organization_id"),
    "organization_name": ("organizationName", "organization_name"),
    "amount": ("amount",),
    "frequency": ("frequency",),
    "donor_name": ("donorName", "donor_name"),
    "donor_email": ("donorEmail", "donor_email"),
    "donor_phone": ("donorPhone", "donor_phone"),
    "donor_document": ("donorDocument", "donor_document"),
    "message": ("message",),
    "is_anonymous": ("isAnonymous", "is_anonymous"),
}


class DonationRequestValidator:
    """Turns a raw request mapping into a DonationDraft or raises."""

    def __init__(self, settings: Optional[DonationSettings] = None):
        self.settings = settings or DonationSettings()

    def validate(self, raw: Mapping[str, Any], donation_type: DonationType) -> DonationDraft:
        organization_id = self._text(raw, "organization_id")
        donor_name = self._text(raw, "donor_name")
        donor_email = self._text(raw, "donor_email")
        raw_amount = self._get(raw, "amount")

        missing = [
            name for name, value in (
                ("organizationId", organization_id),
                ("amount", raw_amount if raw_amount not in (None, "") else None),
                ("donorName", donor_name),
                ("donorEmail", donor_email),
            )
            if value is None
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                meta={"fields": missing},
            )

        if not EMAIL_RE.match(donor_email):
            raise ValidationError("Donor email is not a valid address", meta={"fields": ["donorEmail"]})

        amount = self.parse_amount(raw_amount)
        recurring = donation_type == DonationType.RECURRING
        frequency = self._frequency(raw) if recurring else None
        self.check_amount(amount, recurring=recurring)

        return DonationDraft(
            organization_id=organization_id,
            organization_name=self._text(raw, "organization_name"),
            amount=amount,
            type=donation_type,
            frequency=frequency,
            donor_name=donor_name,
            donor_email=donor_email,
            donor_phone=self._text(raw, "donor_phone"),
            donor_document=self._text(raw, "donor_document"),
            message=self._text(raw, "message"),
            is_anonymous=self._flag(raw, "is_anonymous"),
        )

    # =========================================================================
    # AMOUNT POLICY
    # =========================================================================

    @staticmethod
    def parse_amount(value: Any) -> Decimal:
        """Numeric string or number -> Decimal quantized to cents."""
        if isinstance(value, bool):
            raise ValidationError("Amount must be a number", meta={"fields": ["amount"]})
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError("Amount must be a number", meta={"fields": ["amount"]})
        if not amount.is_finite():
            raise ValidationError("Amount must be a finite number", meta={"fields": ["amount"]})
        try:
            quantized = amount.quantize(CENTS)
        except InvalidOperation:
            # Too many digits for the decimal context, far past any maximum
            raise PolicyViolation("Amount is too large", meta={"fields": ["amount"]})
        if amount != quantized:
            raise ValidationError(
                "Amount cannot have more than two decimal places",
                meta={"fields": ["amount"]},
            )
        return quantized

    def check_amount(self, amount: Decimal, *, recurring: bool) -> None:
        s = self.settings
        if amount < s.min_amount:
            raise PolicyViolation(
                f"Amount must be at least {s.min_amount}",
                meta={"min_amount": str(s.min_amount)},
            )
        if amount > s.max_amount:
            raise PolicyViolation(
                f"Amount must be at most {s.max_amount}",
                meta={"max_amount": str(s.max_amount)},
            )
        if recurring and amount < s.recurring_min_amount:
            raise PolicyViolation(
                f"Recurring donations must be at least {s.recurring_min_amount}",
                meta={"recurring_min_amount": str(s.recurring_min_amount)},
            )

    # =========================================================================
    # FIELD HELPERS
    # =========================================================================

    def _frequency(self, raw: Mapping[str, Any]) -> Frequency:
        value = self._text(raw, "frequency")
        allowed = [f.value for f in Frequency]
        if value is None:
            raise PolicyViolation(
                f"Recurring donations require a frequency: {', '.join(allowed)}",
                meta={"allowed": allowed},
            )
        try:
            return Frequency(value.lower())
        except ValueError:
            raise PolicyViolation(
                f"Invalid frequency '{value}'. Use: {', '.join(allowed)}",
                meta={"allowed": allowed},
            )

    @staticmethod
    def _get(raw: Mapping[str, Any], field: str) -> Any:
        for key in FIELD_ALIASES[field]:
            if key in raw and raw[key] is not None:
                return raw[key]
        return None

    def _text(self, raw: Mapping[str, Any], field: str) -> Optional[str]:
        value = self._get(raw, field)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _flag(self, raw: Mapping[str, Any], field: str) -> bool:
        value = self._get(raw, field)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes")
        return bool(value)
