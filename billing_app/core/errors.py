import math
from datetime import datetime, timedelta
from typing import Any, Optional


class BillingError(Exception):
    code: str = "billing_error"
    status_code: int = 400

    def __init__(self, detail: str | None = None, **context: Any):
        self.detail = detail or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail, **self.context}


class ValidationError(BillingError):
    code = "validation_error"
    status_code = 422


class InvalidAmount(ValidationError):
    """Payment amount must be greater than zero."""

    code = "invalid_amount"


class InvalidDates(ValidationError):
    """Agreement dates are inconsistent."""

    code = "invalid_dates"


class UnknownPeriod(ValidationError):
    """No payment record exists for the requested period."""

    code = "unknown_period"


class InvalidPayload(ValidationError):
    """Gateway payload could not be parsed."""

    code = "invalid_payload"


class ConflictError(BillingError):
    code = "conflict"
    status_code = 409


class InvoiceAlreadyAssigned(ConflictError):
    """Agreement already carries an invoice number."""

    code = "invoice_already_assigned"


class InvoiceAllocationFailed(ConflictError):
    """Could not allocate a unique invoice number."""

    code = "invoice_allocation_failed"


class StateError(BillingError):
    code = "state_error"
    status_code = 400


class AgreementNotActive(StateError):
    """Agreement is not active."""

    code = "agreement_not_active"


class NoOutstandingBalance(StateError):
    """No pending or overdue payments found."""

    code = "no_outstanding_balance"


class InvalidStatusTransition(StateError):
    """Agreement status change is not allowed."""

    code = "invalid_status_transition"


class TooSoon(StateError):
    """Reminder was recently sent."""

    code = "too_soon"
    status_code = 429

    def __init__(self, last_sent_at: datetime, can_send_after: datetime, now: datetime):
        remaining: timedelta = can_send_after - now
        self.hours_remaining = round(remaining.total_seconds() / 3600, 2)
        self.minutes_remaining = math.ceil(remaining.total_seconds() / 60)
        self.can_send_after = can_send_after
        super().__init__(
            f"Reminder was recently sent. Please wait {math.ceil(self.hours_remaining)} "
            "hour(s) before sending another reminder.",
            last_reminder_sent_at=last_sent_at.isoformat(),
            hours_remaining=self.hours_remaining,
            minutes_remaining=self.minutes_remaining,
            can_send_after=can_send_after.isoformat(),
        )


class NotFoundError(BillingError):
    code = "not_found"
    status_code = 404


class AgreementNotFound(NotFoundError):
    """Agreement not found."""

    code = "agreement_not_found"


class AuthenticityError(BillingError):
    code = "authenticity_error"
    status_code = 401


class InvalidSignature(AuthenticityError):
    """Invalid signature."""

    code = "invalid_signature"


class PaymentNotVerified(AuthenticityError):
    """Payment verification failed."""

    code = "payment_not_verified"
    status_code = 400


class InternalBillingError(BillingError):
    code = "internal_error"
    status_code = 500


def not_active(status: Any) -> AgreementNotActive:
    value: Optional[str] = getattr(status, "value", status)
    return AgreementNotActive(f"Agreement is not active (status: {value})", status=value)
