"""
Escrow-specific exceptions.

Exception Hierarchy:
    EscrowError (base for the escrow domain)
    ├── PaymentNotFoundError - Payment lookup failures
    ├── AmountMismatchError - Processor-confirmed amount differs from expected
    ├── DeliveryNotSettleableError - Delivery has not reached a settleable status
    └── StripeError - Base for all Stripe errors (ExternalServiceError)
        ├── StripeCardDeclinedError - Card declined (permanent)
        ├── StripeInvalidAccountError - Invalid Connect account (permanent)
        ├── StripeInvalidRequestError - Invalid request params (permanent)
        ├── StripeRateLimitError - Rate limited (transient, retry)
        ├── StripeAPIUnavailableError - API unavailable (transient, retry)
        └── StripeTimeoutError - Request timeout (transient, outcome unknown)
    EscrowValidationError - Rejected input (ValidationError)
    └── SplitValidationError - Malformed split amounts
    WebhookAuthenticationError - Bad or missing webhook signature (PermissionDeniedError)
    InvalidStateTransitionError - Payment transition not allowed (ConflictError)
    StaleRecordError - Concurrent modification detected (ConflictError)
    LockAcquisitionError - Distributed lock timeout (ConflictError)

Usage:
    from escrow.exceptions import InvalidStateTransitionError

    raise InvalidStateTransitionError(
        current_state="pending",
        target_state="released",
        transition="release",
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Escrow Domain Exceptions
# =============================================================================


class EscrowError(BaseApplicationError):
    """Base exception for escrow operations."""

    default_error_code: str = "ESCROW_ERROR"


class PaymentNotFoundError(NotFoundError):
    """
    Raised when a Payment cannot be found.

    Example:
        payment = Payment.objects.filter(id=payment_id).first()
        if not payment:
            raise PaymentNotFoundError(
                f"Payment {payment_id} not found",
                details={"payment_id": str(payment_id)},
            )
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"


class AmountMismatchError(EscrowError):
    """
    Raised when the processor-confirmed amount differs from the expected total.

    Never auto-corrected. The payment is flagged for manual reconciliation
    and settlement refuses to run until the flag is cleared.
    """

    default_error_code: str = "AMOUNT_MISMATCH"
    http_status = 409

    def __init__(
        self,
        expected_amount_cents: int,
        confirmed_amount_cents: int | None,
        details: dict[str, Any] | None = None,
    ):
        details = {
            **(details or {}),
            "expected_amount_cents": expected_amount_cents,
            "confirmed_amount_cents": confirmed_amount_cents,
        }
        super().__init__(
            f"Confirmed amount {confirmed_amount_cents} does not match "
            f"expected amount {expected_amount_cents}",
            details=details,
        )
        self.expected_amount_cents = expected_amount_cents
        self.confirmed_amount_cents = confirmed_amount_cents


class DeliveryNotSettleableError(EscrowError):
    """Raised when settlement is attempted before the delivery is completed."""

    default_error_code: str = "DELIVERY_NOT_SETTLEABLE"
    http_status = 409


class EscrowValidationError(ValidationError):
    """Raised when an escrow request is rejected before any mutation."""

    default_error_code: str = "ESCROW_VALIDATION_ERROR"


class SplitValidationError(EscrowValidationError):
    """
    Raised for malformed split inputs or amounts.

    Covers non-positive totals, fee percentages outside [0, 100] and
    dispute resolutions whose parts do not sum to the payment total.
    """

    default_error_code: str = "SPLIT_VALIDATION_ERROR"


class WebhookAuthenticationError(PermissionDeniedError):
    """
    Raised when a webhook signature is missing or invalid.

    The message is deliberately generic: it never reveals whether the
    referenced payment exists.
    """

    default_error_code: str = "WEBHOOK_AUTHENTICATION_FAILED"
    http_status = 401


# =============================================================================
# Stripe-Specific Exceptions
# =============================================================================


class StripeError(ExternalServiceError):
    """
    A Stripe call failed. Only escrow.adapters raises these.

    Two class flags drive the disbursement retry policy: is_retryable
    keeps the disbursement pending for another attempt, and
    outcome_unknown means the request may already have taken effect.
    """

    default_error_code: str = "STRIPE_ERROR"
    is_retryable: bool = False
    outcome_unknown: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        stripe_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if stripe_code:
            details["stripe_code"] = stripe_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.stripe_code = stripe_code
        self.decline_code = decline_code


# Permanent: the disbursement is marked failed


class StripeCardDeclinedError(StripeError):
    """Issuer declined the card; decline_code is kept in details."""

    default_error_code: str = "CARD_DECLINED"


class StripeInvalidAccountError(StripeError):
    """
    Invalid Stripe Connect account.

    Raised when the company's destination account is missing, disabled
    or not able to receive transfers. Requires manual intervention.
    """

    default_error_code: str = "INVALID_STRIPE_ACCOUNT"


class StripeInvalidRequestError(StripeError):
    """Stripe refused the parameters; retrying the same request cannot succeed."""

    default_error_code: str = "INVALID_STRIPE_REQUEST"


# Transient: the disbursement stays pending


class StripeRateLimitError(StripeError):
    """429 from Stripe; the request was not executed."""

    default_error_code: str = "STRIPE_RATE_LIMITED"
    is_retryable: bool = True


class StripeAPIUnavailableError(StripeError):
    """
    Stripe API is temporarily unavailable.

    Covers connection failures and Stripe 5xx responses. The request may
    or may not have reached Stripe, so the outcome is unknown.
    """

    default_error_code: str = "STRIPE_UNAVAILABLE"
    is_retryable: bool = True
    outcome_unknown: bool = True


class StripeTimeoutError(StripeError):
    """
    No answer before the client timeout.

    Stripe may have executed the request. The disbursement stays pending
    and the retry sends the stored idempotency key, so Stripe replays the
    original result rather than moving money twice.
    """

    default_error_code: str = "STRIPE_TIMEOUT"
    is_retryable: bool = True
    outcome_unknown: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a Payment transition is not allowed from its current state.

    Attributes:
        current_state: State the payment was in
        target_state: State the caller tried to reach
        transition: Name of the attempted transition
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        current_state: str,
        target_state: str,
        transition: str = "",
        details: dict[str, Any] | None = None,
    ):
        details = {
            **(details or {}),
            "current_state": str(current_state),
            "target_state": str(target_state),
        }
        if transition:
            details["transition"] = transition
        super().__init__(
            f"Cannot move payment from '{current_state}' to '{target_state}'",
            details=details,
        )
        self.current_state = str(current_state)
        self.target_state = str(target_state)
        self.transition = transition


class StaleRecordError(ConflictError):
    """
    Raised when a conditional write finds the record already changed.

    The caller should retry the whole unit of work with fresh data.
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """Raised when a distributed lock cannot be acquired in time."""

    default_error_code: str = "LOCK_ACQUISITION_FAILED"
