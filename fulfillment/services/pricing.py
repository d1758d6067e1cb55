"""
Order pricing.

Amounts are integer minor units; percentages are plain numbers (7.7 means
7.7 %). Rounding is half-up on the exact decimal value, so 0.5 Rappen
always rounds away from zero regardless of float representation.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


def percent_of(amount: int, percent: float) -> int:
    """round(amount * percent / 100), half-up."""
    value = Decimal(amount) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class OrderTotals:
    subtotal: int
    vat_rate: float
    vat_amount: int
    discount: int
    tip: int
    total: int

    def as_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "vat_rate": self.vat_rate,
            "vat_amount": self.vat_amount,
            "discount": self.discount,
            "tip": self.tip,
            "total": self.total,
        }


def line_subtotal(unit_price: int, quantity: int) -> int:
    return unit_price * quantity


def calculate_totals(
    lines: list[tuple[int, float]],
    default_vat_rate: float,
    discount: int = 0,
    tip: int = 0,
) -> OrderTotals:
    """
    Compute order totals from (line subtotal, vat rate) pairs.

    VAT is computed per rate group and summed, so a product with its own
    rate is taxed at that rate. ``vat_rate`` on the result is the order's
    default rate.

    total = subtotal + vat - discount + tip
    """
    subtotal = sum(amount for amount, _ in lines)

    by_rate: dict[float, int] = {}
    for amount, rate in lines:
        by_rate[rate] = by_rate.get(rate, 0) + amount
    vat_amount = sum(percent_of(amount, rate) for rate, amount in by_rate.items())

    return OrderTotals(
        subtotal=subtotal,
        vat_rate=default_vat_rate,
        vat_amount=vat_amount,
        discount=discount,
        tip=tip,
        total=subtotal + vat_amount - discount + tip,
    )


def platform_fee(amount: int, tip: int, percent: float) -> int:
    """Platform share of the order total including the tip."""
    return percent_of(amount + tip, percent)
