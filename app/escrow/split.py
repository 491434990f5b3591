"""
Split calculator for escrowed funds.

Pure functions that divide a payment total into the platform fee, the
company amount and (where policy asks for it) the driver amount. All
amounts are integers in the smallest currency unit.

The fee is rounded once and every other share is derived by subtraction,
so the parts always add back to the total exactly.

Usage:
    from escrow.split import calculate_split

    split = calculate_split(10_000, platform_fee_percent=10)
    split.platform_fee_cents    # 1000
    split.company_amount_cents  # 9000
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from django.conf import settings

from escrow.exceptions import SplitValidationError
from escrow.state_machines import PaymentMethod

DEFAULT_PLATFORM_FEE_PERCENT = 10

_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class SplitResult:
    """
    Outcome of a split computation.

    Attributes:
        total_amount_cents: The amount that was split
        platform_fee_cents: Share retained by the platform
        company_amount_cents: Share released to the company
        driver_amount_cents: Share credited to the driver, None when the
            policy does not track a driver share
    """

    total_amount_cents: int
    platform_fee_cents: int
    company_amount_cents: int
    driver_amount_cents: int | None = None

    @property
    def is_balanced(self) -> bool:
        return (
            self.platform_fee_cents
            + self.company_amount_cents
            + (self.driver_amount_cents or 0)
            == self.total_amount_cents
        )


def _validate_amount(amount_cents: int, field: str = "total_amount_cents") -> None:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise SplitValidationError(
            "Amount must be an integer number of minor currency units",
            details={field: repr(amount_cents)},
        )
    if amount_cents <= 0:
        raise SplitValidationError(
            "Amount must be positive",
            details={field: amount_cents},
        )


def _to_percent(value: int | float | Decimal | str, field: str) -> Decimal:
    try:
        percent = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise SplitValidationError(
            "Percentage must be a number",
            details={field: repr(value)},
        )
    if not percent.is_finite() or percent < 0 or percent > _HUNDRED:
        raise SplitValidationError(
            "Percentage must be between 0 and 100",
            details={field: str(value)},
        )
    return percent


def _percent_of(amount_cents: int, percent: Decimal) -> int:
    # Half-up, so 0.5 of a minor unit always goes to the fee
    share = Decimal(amount_cents) * percent / _HUNDRED
    return int(share.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def calculate_split(
    total_amount_cents: int,
    platform_fee_percent: int | float | Decimal | str = DEFAULT_PLATFORM_FEE_PERCENT,
    driver_share_percent: int | float | Decimal | str = 0,
) -> SplitResult:
    """
    Split a total into platform fee, company amount and driver amount.

    platform_fee = round(total * fee% / 100)
    company_amount = total - platform_fee

    When driver_share_percent is non-zero the driver amount is carved out
    of the company amount the same way (rounded once, company keeps the
    remainder).

    Args:
        total_amount_cents: Positive amount in minor units
        platform_fee_percent: Fee policy, 0 to 100 inclusive
        driver_share_percent: Driver policy, 0 to 100 inclusive

    Returns:
        SplitResult whose parts sum exactly to total_amount_cents

    Raises:
        SplitValidationError: Non-positive total or percentage out of range
    """
    _validate_amount(total_amount_cents)
    fee_percent = _to_percent(platform_fee_percent, "platform_fee_percent")
    driver_percent = _to_percent(driver_share_percent, "driver_share_percent")

    platform_fee = _percent_of(total_amount_cents, fee_percent)
    company_amount = total_amount_cents - platform_fee

    driver_amount = None
    if driver_percent:
        driver_amount = _percent_of(company_amount, driver_percent)
        company_amount -= driver_amount

    return SplitResult(
        total_amount_cents=total_amount_cents,
        platform_fee_cents=platform_fee,
        company_amount_cents=company_amount,
        driver_amount_cents=driver_amount,
    )


def driver_share_percent_for(payment_method: str) -> int:
    """Return the configured driver share for a payment method."""
    if payment_method == PaymentMethod.CASH:
        return settings.ESCROW_DRIVER_SHARE_PERCENT_CASH
    return settings.ESCROW_DRIVER_SHARE_PERCENT_CARD


def split_for_payment_method(total_amount_cents: int, payment_method: str) -> SplitResult:
    """
    Split a total using the configured policy for a payment method.

    Driver compensation is configured independently per payment method
    (ESCROW_DRIVER_SHARE_PERCENT_CARD / ESCROW_DRIVER_SHARE_PERCENT_CASH).
    """
    return calculate_split(
        total_amount_cents,
        platform_fee_percent=settings.PLATFORM_FEE_PERCENT,
        driver_share_percent=driver_share_percent_for(payment_method),
    )


def validate_resolution_split(
    total_amount_cents: int,
    customer_amount_cents: int,
    company_amount_cents: int,
) -> None:
    """
    Check that a dispute split covers the whole payment exactly.

    Both parts must be non-negative integers and sum to the total.

    Raises:
        SplitValidationError: When the parts are malformed or do not sum
    """
    for field, value in (
        ("customer_amount_cents", customer_amount_cents),
        ("company_amount_cents", company_amount_cents),
    ):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise SplitValidationError(
                "Split amounts must be non-negative integers",
                details={field: repr(value)},
            )

    if customer_amount_cents + company_amount_cents != total_amount_cents:
        raise SplitValidationError(
            "Split amounts must sum to the payment total",
            details={
                "total_amount_cents": total_amount_cents,
                "customer_amount_cents": customer_amount_cents,
                "company_amount_cents": company_amount_cents,
            },
        )
