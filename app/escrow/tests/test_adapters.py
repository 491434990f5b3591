"""
Tests for the Stripe adapter.

Tests cover:
- Idempotency key generation
- Parameter validation
- Translation of Stripe SDK errors into domain errors
- Webhook signature verification
"""

import json
import time

import pytest
import stripe

from escrow.adapters import (
    CreatePaymentIntentParams,
    IdempotencyKeyGenerator,
    StripeAdapter,
    backoff_delay,
    is_retryable_stripe_error,
)
from escrow.exceptions import (
    EscrowValidationError,
    StripeAPIUnavailableError,
    StripeCardDeclinedError,
    StripeInvalidAccountError,
    StripeInvalidRequestError,
    StripeRateLimitError,
    StripeTimeoutError,
    WebhookAuthenticationError,
)
from escrow.tests.helpers import sign_payload


class TestIdempotencyKeyGenerator:
    def test_same_inputs_give_same_key(self):
        first = IdempotencyKeyGenerator.generate("settlement_transfer", "abc")
        second = IdempotencyKeyGenerator.generate("settlement_transfer", "abc")

        assert first == second
        assert first.startswith("settlement_transfer:abc:1:")

    def test_attempt_changes_key(self):
        first = IdempotencyKeyGenerator.generate("settlement_transfer", "abc", attempt=1)
        rearmed = IdempotencyKeyGenerator.generate("settlement_transfer", "abc", attempt=2)

        assert first != rearmed

    def test_operation_changes_key(self):
        transfer = IdempotencyKeyGenerator.generate("dispute_transfer", "abc")
        refund = IdempotencyKeyGenerator.generate("dispute_refund", "abc")

        assert transfer != refund


class TestCreatePaymentIntentParams:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"amount_cents": 0, "currency": "usd", "idempotency_key": "k"},
            {"amount_cents": 100, "currency": "", "idempotency_key": "k"},
            {"amount_cents": 100, "currency": "usd", "idempotency_key": ""},
        ],
    )
    def test_invalid_params_rejected(self, kwargs):
        with pytest.raises(ValueError):
            CreatePaymentIntentParams(**kwargs)


class TestRetryHelpers:
    def test_transient_errors_are_retryable(self):
        assert is_retryable_stripe_error(StripeTimeoutError("timeout")) is True
        assert is_retryable_stripe_error(StripeRateLimitError("slow down")) is True

    def test_permanent_errors_are_not_retryable(self):
        assert is_retryable_stripe_error(StripeCardDeclinedError("declined")) is False
        assert is_retryable_stripe_error(ValueError("other")) is False

    def test_timeout_outcome_is_unknown(self):
        assert StripeTimeoutError("timeout").outcome_unknown is True
        assert StripeRateLimitError("slow down").outcome_unknown is False

    def test_backoff_is_capped(self, mocker):
        mocker.patch("escrow.adapters.stripe_adapter.random.uniform", return_value=0)

        assert backoff_delay(0) == 1.0
        assert backoff_delay(3) == 8.0
        assert backoff_delay(10) == 60.0


class TestErrorTranslation:
    """Stripe SDK errors map onto the escrow exception hierarchy."""

    @pytest.fixture(autouse=True)
    def _patch_transfer(self, mocker):
        self.transfer_create = mocker.patch("escrow.adapters.stripe_adapter.stripe.Transfer.create")

    def _create_transfer(self):
        return StripeAdapter.create_transfer(
            amount_cents=9_000,
            destination_account="acct_test",
            idempotency_key="settlement_transfer:abc:1:deadbeef",
        )

    def test_success_passes_idempotency_key(self, mocker):
        self.transfer_create.return_value = mocker.Mock(
            id="tr_123", amount=9_000, currency="usd", destination="acct_test"
        )

        result = self._create_transfer()

        assert result.id == "tr_123"
        assert result.amount_cents == 9_000
        kwargs = self.transfer_create.call_args.kwargs
        assert kwargs["idempotency_key"] == "settlement_transfer:abc:1:deadbeef"
        assert kwargs["destination"] == "acct_test"
        assert kwargs["amount"] == 9_000

    @pytest.mark.parametrize(
        "stripe_error,expected",
        [
            (stripe.CardError("Your card was declined.", None, "card_declined"), StripeCardDeclinedError),
            (
                stripe.InvalidRequestError("No such destination: acct_test", "destination"),
                StripeInvalidAccountError,
            ),
            (stripe.InvalidRequestError("Invalid amount", "amount"), StripeInvalidRequestError),
            (stripe.RateLimitError("Too many requests"), StripeRateLimitError),
            (stripe.APIConnectionError("Request timed out"), StripeTimeoutError),
            (stripe.APIConnectionError("Connection refused"), StripeAPIUnavailableError),
            (stripe.APIError("Internal server error"), StripeAPIUnavailableError),
            (stripe.AuthenticationError("Invalid API key"), StripeInvalidRequestError),
            (RuntimeError("socket closed"), StripeAPIUnavailableError),
        ],
    )
    def test_error_mapping(self, stripe_error, expected):
        self.transfer_create.side_effect = stripe_error

        with pytest.raises(expected) as exc_info:
            self._create_transfer()

        assert exc_info.value.__cause__ is stripe_error


class TestVerifyWebhookSignature:
    """Tests for verify_webhook_signature()."""

    def _payload(self) -> str:
        return json.dumps({"id": "evt_1", "object": "event", "type": "ping", "data": {"object": {}}})

    def test_valid_signature_returns_event(self):
        payload = self._payload()

        event = StripeAdapter.verify_webhook_signature(payload.encode(), sign_payload(payload))

        assert event["id"] == "evt_1"
        assert event["type"] == "ping"

    def test_missing_signature_rejected(self):
        with pytest.raises(WebhookAuthenticationError):
            StripeAdapter.verify_webhook_signature(self._payload().encode(), None)

    def test_wrong_secret_rejected(self):
        payload = self._payload()

        with pytest.raises(WebhookAuthenticationError) as exc_info:
            StripeAdapter.verify_webhook_signature(
                payload.encode(), sign_payload(payload, secret="whsec_other")
            )

        assert exc_info.value.http_status == 401

    def test_tampered_payload_rejected(self):
        payload = self._payload()
        signature = sign_payload(payload)

        with pytest.raises(WebhookAuthenticationError):
            StripeAdapter.verify_webhook_signature(payload.replace("evt_1", "evt_2").encode(), signature)

    def test_stale_timestamp_rejected(self):
        payload = self._payload()
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookAuthenticationError):
            StripeAdapter.verify_webhook_signature(payload.encode(), signature)

    def test_signed_garbage_is_a_payload_error(self):
        payload = "not json"

        with pytest.raises(EscrowValidationError):
            StripeAdapter.verify_webhook_signature(payload.encode(), sign_payload(payload))
