"""
Tests for the delivery aggregates the escrow engine reads and updates.
"""

import pytest
from django.db import IntegrityError
from django.utils import timezone

from deliveries.models import Delivery, DeliveryStatus
from deliveries.tests.factories import CompanyFactory, DeliveryFactory, DriverFactory
from escrow.state_machines import PaymentState


@pytest.mark.django_db
class TestDelivery:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (DeliveryStatus.PENDING, False),
            (DeliveryStatus.ASSIGNED, False),
            (DeliveryStatus.IN_TRANSIT, False),
            (DeliveryStatus.DELIVERED, True),
            (DeliveryStatus.COMPLETED, True),
            (DeliveryStatus.CANCELLED, False),
        ],
    )
    def test_is_settleable(self, status, expected):
        delivery = DeliveryFactory(status=status)
        assert delivery.is_settleable is expected

    def test_mirror_payment_status_persists(self):
        delivery = DeliveryFactory()

        delivery.mirror_payment_status(PaymentState.HELD)

        assert delivery.payment_status == PaymentState.HELD
        assert Delivery.objects.get(pk=delivery.pk).payment_status == PaymentState.HELD

    def test_price_must_be_positive(self):
        with pytest.raises(IntegrityError):
            DeliveryFactory(price_cents=0)

    def test_driver_belongs_to_delivery_company(self):
        delivery = DeliveryFactory()
        assert delivery.driver.company_id == delivery.company_id


@pytest.mark.django_db
class TestCompanyCounters:
    def test_record_settlement_increments(self):
        company = CompanyFactory()
        at = timezone.now()

        company.record_settlement(9000, at=at)
        company.record_settlement(4500, at=at)
        company.refresh_from_db()

        assert company.total_earnings_cents == 13500
        assert company.total_deliveries == 2
        assert company.last_payment_received_at == at


@pytest.mark.django_db
class TestDriverCounters:
    def test_record_delivery_without_share_counts_only(self):
        driver = DriverFactory()

        driver.record_delivery(None)
        driver.refresh_from_db()

        assert driver.total_deliveries == 1
        assert driver.total_earnings_cents == 0
        assert driver.last_delivery_at is not None

    def test_record_delivery_with_share(self):
        driver = DriverFactory()

        driver.record_delivery(1500)
        driver.refresh_from_db()

        assert driver.total_earnings_cents == 1500
