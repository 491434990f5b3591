"""
Pytest fixtures for escrow tests.

Every test runs against MockStripeAdapter and a mocked Redis client, so
nothing here ever talks to Stripe or Redis.

Usage:
    def test_settle(held_delivered_payment, mock_stripe_adapter):
        result = SettlementService.settle_payment(held_delivered_payment.id)
        assert mock_stripe_adapter.calls["create_transfer"]
"""

import json
import uuid
from typing import Any

import pytest
from rest_framework.test import APIClient

from deliveries.models import DeliveryStatus
from deliveries.tests.factories import StaffUserFactory, UserFactory
from escrow.adapters import PaymentIntentResult, RefundResult, TransferResult
from escrow.services import DisbursementService, PaymentService
from escrow.tests.factories import (
    CashPaymentFactory,
    HeldPaymentFactory,
    PaymentFactory,
)
from escrow.tests.helpers import sign_payload


# =============================================================================
# Mock Stripe Adapter
# =============================================================================


class MockStripeAdapter:
    """
    Mock Stripe adapter for testing.

    Provides configurable responses for all Stripe operations.
    Use the class attributes to customize behavior per test.
    """

    # Default responses (can be overridden in tests)
    create_payment_intent_response: PaymentIntentResult = None
    create_payment_intent_side_effect: Exception = None
    retrieve_payment_intent_response: PaymentIntentResult = None
    retrieve_payment_intent_side_effect: Exception = None
    create_transfer_side_effect: Exception | list = None
    create_refund_side_effect: Exception | list = None

    # Track calls for assertions
    calls: dict[str, list[Any]] = {}

    @classmethod
    def reset(cls):
        """Reset all mock state."""
        cls.create_payment_intent_response = None
        cls.create_payment_intent_side_effect = None
        cls.retrieve_payment_intent_response = None
        cls.retrieve_payment_intent_side_effect = None
        cls.create_transfer_side_effect = None
        cls.create_refund_side_effect = None
        cls.calls = {}

    @classmethod
    def _track(cls, operation: str, **kwargs) -> None:
        cls.calls.setdefault(operation, []).append(kwargs)

    @classmethod
    def _raise_configured(cls, side_effect) -> None:
        """Raise the configured error; a list is consumed one call at a time."""
        if isinstance(side_effect, list):
            if side_effect:
                error = side_effect.pop(0)
                if error is not None:
                    raise error
            return
        if side_effect:
            raise side_effect

    @classmethod
    def create_payment_intent(cls, params):
        cls._track("create_payment_intent", params=params)
        cls._raise_configured(cls.create_payment_intent_side_effect)

        if cls.create_payment_intent_response:
            return cls.create_payment_intent_response

        intent_id = f"pi_test_{uuid.uuid4().hex[:12]}"
        return PaymentIntentResult(
            id=intent_id,
            status="requires_payment_method",
            amount_cents=params.amount_cents,
            amount_received_cents=0,
            currency=params.currency,
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:8]}",
            metadata=params.metadata,
        )

    @classmethod
    def retrieve_payment_intent(cls, payment_intent_id):
        cls._track("retrieve_payment_intent", payment_intent_id=payment_intent_id)
        cls._raise_configured(cls.retrieve_payment_intent_side_effect)
        return cls.retrieve_payment_intent_response

    @classmethod
    def create_transfer(
        cls,
        amount_cents,
        destination_account,
        idempotency_key,
        currency="usd",
        metadata=None,
        source_transaction=None,
    ):
        cls._track(
            "create_transfer",
            amount_cents=amount_cents,
            destination_account=destination_account,
            idempotency_key=idempotency_key,
            currency=currency,
            metadata=metadata,
        )
        cls._raise_configured(cls.create_transfer_side_effect)
        return TransferResult(
            id=f"tr_test_{uuid.uuid4().hex[:12]}",
            amount_cents=amount_cents,
            currency=currency,
            destination_account=destination_account,
        )

    @classmethod
    def create_refund(cls, payment_intent_id, idempotency_key, amount_cents=None, metadata=None):
        cls._track(
            "create_refund",
            payment_intent_id=payment_intent_id,
            idempotency_key=idempotency_key,
            amount_cents=amount_cents,
            metadata=metadata,
        )
        cls._raise_configured(cls.create_refund_side_effect)
        return RefundResult(
            id=f"re_test_{uuid.uuid4().hex[:12]}",
            amount_cents=amount_cents,
            currency="usd",
            status="succeeded",
            payment_intent_id=payment_intent_id,
        )


@pytest.fixture(autouse=True)
def mock_stripe_adapter():
    """Inject a clean MockStripeAdapter into the services for each test."""
    MockStripeAdapter.reset()
    PaymentService.set_stripe_adapter(MockStripeAdapter)
    DisbursementService.set_stripe_adapter(MockStripeAdapter)
    yield MockStripeAdapter
    PaymentService.set_stripe_adapter(None)
    DisbursementService.set_stripe_adapter(None)
    MockStripeAdapter.reset()


@pytest.fixture(autouse=True)
def mock_redis(mocker):
    """
    Mock Redis client for distributed lock tests.

    Returns a MagicMock configured so every lock is free.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1
    mocker.patch("escrow.locks.get_redis_connection", return_value=mock_client)
    return mock_client


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def staff_user(db):
    return StaffUserFactory()


@pytest.fixture
def stranger(db):
    """A user with no role in any delivery."""
    return UserFactory()


# =============================================================================
# Payment State Fixtures
# =============================================================================


@pytest.fixture
def pending_payment(db):
    """Card payment waiting for the charge to be confirmed."""
    return PaymentFactory()


@pytest.fixture
def held_payment(db):
    """Held card payment whose delivery is still in transit."""
    return HeldPaymentFactory(delivery__status=DeliveryStatus.IN_TRANSIT)


@pytest.fixture
def held_delivered_payment(db):
    """Held card payment ready for settlement."""
    return HeldPaymentFactory(delivery__status=DeliveryStatus.DELIVERED)


@pytest.fixture
def pending_cash_payment(db):
    return CashPaymentFactory()


# =============================================================================
# API Client Fixtures
# =============================================================================


@pytest.fixture
def api_client():
    """Unauthenticated API client."""
    return APIClient()


@pytest.fixture
def post_webhook(api_client):
    """
    Post a signed Stripe event to the webhook endpoint.

    Usage:
        response = post_webhook(build_event("payment_intent.succeeded", {...}))
    """

    def _post(event: dict, signature: str | None = None):
        payload = json.dumps(event)
        headers = {"HTTP_STRIPE_SIGNATURE": signature or sign_payload(payload)}
        return api_client.post(
            "/api/v1/escrow/webhooks/stripe/",
            data=payload,
            content_type="application/json",
            **headers,
        )

    return _post
