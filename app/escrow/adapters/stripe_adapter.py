"""
Stripe gateway for the escrow engine.

The engine talks to Stripe for four things: creating the PaymentIntent a
customer checks out with, re-reading it when a webhook is late, moving the
company's share to its connected account, and refunding the customer.
Every one of those calls runs inside stripe_call(), which configures the
SDK, times and logs the request, and converts SDK exceptions into the
StripeError family from escrow.exceptions. Callers never see a raw
stripe.* exception.

Money-moving calls always carry an idempotency key that the caller
stored beforehand, so a retry after an unknown outcome replays the same
request on Stripe's side.

Configuration (via settings):
- STRIPE_SECRET_KEY
- STRIPE_WEBHOOK_SECRET
- STRIPE_API_TIMEOUT_SECONDS (default: 10)
- STRIPE_MAX_RETRIES (SDK network retries, default: 3)
"""

from __future__ import annotations

import hashlib
import json
import logging
import random
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import stripe
from django.conf import settings

from escrow.exceptions import (
    EscrowValidationError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeError,
    StripeInvalidAccountError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
    WebhookAuthenticationError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Request / Result Types
# =============================================================================


@dataclass
class CreatePaymentIntentParams:
    """
    What the engine asks Stripe for when a card payment is initiated.

    Attributes:
        amount_cents: The delivery total in minor units
        currency: Lowercase ISO 4217 code
        idempotency_key: Key derived from the payment id
        metadata: Payment id, delivery id and fee breakdown, echoed back in webhooks
        customer_email: Receipt address, if the customer has one
    """

    amount_cents: int
    currency: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)
    customer_email: str | None = None

    def __post_init__(self) -> None:
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        if not self.currency:
            raise ValueError("currency is required")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")


@dataclass(frozen=True)
class PaymentIntentResult:
    """
    The parts of a PaymentIntent the engine acts on.

    amount_received_cents is what Stripe actually captured; the charge
    service compares it with the payment total.
    """

    id: str
    status: str
    amount_cents: int
    amount_received_cents: int
    currency: str
    client_secret: str | None = None
    failure_message: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TransferResult:
    id: str
    amount_cents: int
    currency: str
    destination_account: str


@dataclass(frozen=True)
class RefundResult:
    id: str
    amount_cents: int
    currency: str
    status: str
    payment_intent_id: str


# =============================================================================
# Idempotency Keys and Backoff
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Deterministic idempotency keys: "{operation}:{entity_id}:{attempt}:{hash}".

    The same operation on the same entity always yields the same key, so
    the key can be recomputed or stored and replayed. The attempt number
    only changes when an operator re-arms a disbursement Stripe rejected
    for good, which is a deliberately new request.

    Example:
        IdempotencyKeyGenerator.generate("settlement_transfer", payment.pk)
        # "settlement_transfer:550e8400-...:1:a1b2c3d4"
    """

    @staticmethod
    def generate(operation: str, entity_id: uuid.UUID | str, attempt: int = 1) -> str:
        entity = str(entity_id)
        digest = hashlib.sha256(
            f"{operation}:{entity}:{attempt}:{settings.SECRET_KEY}".encode()
        ).hexdigest()[:8]
        return f"{operation}:{entity}:{attempt}:{digest}"


def is_retryable_stripe_error(error: Exception) -> bool:
    """True for StripeErrors worth another attempt (rate limits, timeouts, 5xx)."""
    return isinstance(error, StripeError) and error.is_retryable


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Exponential backoff with up to 25% jitter.

    Args:
        attempt: Zero-based attempt number
        base: Delay for the first attempt, in seconds
        max_delay: Cap applied before jitter

    Returns:
        Seconds to wait; attempt 0 gives 1.0 to 1.25 with the defaults
    """
    delay = min(base * (2**attempt), max_delay)
    return delay + delay * random.uniform(0, 0.25)


# =============================================================================
# Error Translation
# =============================================================================


def _translate(error: Exception) -> StripeError:
    """Map an SDK exception onto the escrow StripeError family."""
    if isinstance(error, stripe.CardError):
        return StripeCardDeclinedError(
            str(error.user_message or error),
            stripe_code=error.code,
            decline_code=getattr(error, "decline_code", None),
        )

    if isinstance(error, stripe.InvalidRequestError):
        # A bad connected account surfaces as an invalid request on "destination"
        if error.param == "destination" or "account" in str(error).lower():
            return StripeInvalidAccountError(str(error), stripe_code=error.code)
        return StripeInvalidRequestError(str(error), stripe_code=error.code)

    if isinstance(error, stripe.RateLimitError):
        return StripeRateLimitError("Stripe rate limit exceeded", stripe_code="rate_limit")

    if isinstance(error, stripe.APIConnectionError):
        text = str(error).lower()
        if "timeout" in text or "timed out" in text:
            return StripeTimeoutError(
                "Stripe request timed out, outcome unknown",
                stripe_code="timeout",
            )
        return StripeAPIUnavailableError(
            "Could not connect to Stripe",
            stripe_code="api_connection_error",
        )

    if isinstance(error, stripe.APIError):
        return StripeAPIUnavailableError("Stripe returned a server error", stripe_code="api_error")

    if isinstance(error, stripe.AuthenticationError):
        return StripeInvalidRequestError(
            "Stripe rejected the API key",
            stripe_code="authentication_error",
        )

    return StripeAPIUnavailableError(
        f"Unexpected Stripe error: {error}",
        stripe_code="unknown_error",
    )


def _configure_sdk() -> None:
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.max_network_retries = settings.STRIPE_MAX_RETRIES
    stripe.default_http_client = stripe.RequestsClient(
        timeout=getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10),
    )


@contextmanager
def stripe_call(operation: str, **context: Any) -> Iterator[dict[str, Any]]:
    """
    Run one Stripe request with logging and error translation.

    Yields a dict the caller can add result fields to; they are logged
    with the completion line.

    Raises:
        StripeError: Any SDK exception, translated
    """
    _configure_sdk()
    log_context = {"operation": operation, **context}
    outcome: dict[str, Any] = {}
    started = time.monotonic()
    logger.info("Stripe request started", extra=log_context)

    try:
        yield outcome
    except StripeError:
        raise
    except Exception as e:
        translated = _translate(e)
        failure_context = {
            **log_context,
            "duration_ms": round((time.monotonic() - started) * 1000, 1),
            "error_code": translated.error_code,
            "stripe_code": translated.stripe_code,
        }
        if isinstance(e, stripe.AuthenticationError):
            logger.critical("Stripe authentication failed, check the API key", extra=failure_context)
        elif translated.is_retryable or isinstance(translated, StripeCardDeclinedError):
            logger.warning("Stripe request failed", extra=failure_context)
        else:
            logger.error("Stripe request failed", extra=failure_context, exc_info=True)
        raise translated from e

    logger.info(
        "Stripe request completed",
        extra={
            **log_context,
            **outcome,
            "duration_ms": round((time.monotonic() - started) * 1000, 1),
        },
    )


# =============================================================================
# Gateway
# =============================================================================


class StripeAdapter:
    """
    Stateless gateway; every method is a classmethod.

    Services reach it through get_stripe_adapter() so tests can swap in a
    double with the same method names.
    """

    @classmethod
    def create_payment_intent(cls, params: CreatePaymentIntentParams) -> PaymentIntentResult:
        """
        Create the PaymentIntent for a card payment.

        Returns:
            PaymentIntentResult carrying the client_secret for checkout

        Raises:
            StripeError: Translated SDK failure
        """
        with stripe_call(
            "create_payment_intent",
            amount_cents=params.amount_cents,
            idempotency_key=params.idempotency_key,
        ) as outcome:
            intent = stripe.PaymentIntent.create(
                amount=params.amount_cents,
                currency=params.currency,
                metadata=params.metadata,
                receipt_email=params.customer_email,
                payment_method_types=["card"],
                idempotency_key=params.idempotency_key,
            )
            outcome["payment_intent_id"] = intent.id
        return cls._intent_result(intent)

    @classmethod
    def retrieve_payment_intent(cls, payment_intent_id: str) -> PaymentIntentResult:
        """Re-read a PaymentIntent for the verification fallback."""
        with stripe_call("retrieve_payment_intent", payment_intent_id=payment_intent_id) as outcome:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
            outcome["status"] = intent.status
        return cls._intent_result(intent)

    @classmethod
    def create_transfer(
        cls,
        amount_cents: int,
        destination_account: str,
        idempotency_key: str,
        currency: str = "usd",
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        """
        Move funds from the platform balance to a company's connected account.

        Args:
            amount_cents: Company share in minor units
            destination_account: Connected account id (acct_xxx)
            idempotency_key: The disbursement's stored key
            currency: Payment currency
            metadata: Payment and disbursement ids, echoed in transfer webhooks

        Raises:
            StripeInvalidAccountError: Destination cannot receive transfers
            StripeTimeoutError: Outcome unknown, retry with the same key
        """
        with stripe_call(
            "create_transfer",
            amount_cents=amount_cents,
            destination_account=destination_account,
            idempotency_key=idempotency_key,
        ) as outcome:
            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=currency,
                destination=destination_account,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
            outcome["transfer_id"] = transfer.id

        return TransferResult(
            id=transfer.id,
            amount_cents=transfer.amount,
            currency=transfer.currency,
            destination_account=transfer.destination,
        )

    @classmethod
    def create_refund(
        cls,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Refund a captured PaymentIntent, in full when amount_cents is None.

        Raises:
            StripeInvalidRequestError: Nothing left to refund, or bad intent id
        """
        params: dict[str, Any] = {"payment_intent": payment_intent_id, "metadata": metadata or {}}
        if amount_cents is not None:
            params["amount"] = amount_cents

        with stripe_call(
            "create_refund",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        ) as outcome:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
            outcome["refund_id"] = refund.id

        return RefundResult(
            id=refund.id,
            amount_cents=refund.amount,
            currency=refund.currency,
            status=refund.status,
            payment_intent_id=refund.payment_intent,
        )

    @classmethod
    def verify_webhook_signature(cls, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Authenticate a webhook delivery and return the parsed event.

        The SDK computes the HMAC-SHA256 of the raw body with
        STRIPE_WEBHOOK_SECRET, compares it in constant time and rejects
        timestamps outside its tolerance window.

        Raises:
            WebhookAuthenticationError: Missing or invalid signature
            EscrowValidationError: Signed body is not JSON
        """
        if not signature:
            raise WebhookAuthenticationError("Missing webhook signature")

        try:
            event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature rejected", extra={"error": str(e)})
            raise WebhookAuthenticationError("Invalid webhook signature") from e
        except json.JSONDecodeError as e:
            raise EscrowValidationError(
                "Webhook payload is not valid JSON",
                error_code="INVALID_WEBHOOK_PAYLOAD",
            ) from e

        return event.to_dict()

    @staticmethod
    def _intent_result(intent: Any) -> PaymentIntentResult:
        last_error = getattr(intent, "last_payment_error", None)
        return PaymentIntentResult(
            id=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            amount_received_cents=intent.amount_received or 0,
            currency=intent.currency,
            client_secret=intent.client_secret,
            failure_message=last_error.message if last_error else None,
            metadata=dict(intent.metadata or {}),
        )
