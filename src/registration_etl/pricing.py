"""Bulk-registration pricing.

compute_total() is pure: the caller passes the unit fee and the event's
discount tiers as a snapshot.  Discount tiers are non-cumulative; the
single tier with the largest min_students not above the student count
wins.  The discount is rounded once, half-up, to the currency's minor
unit, and the total is always base - discount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence

from registration_etl.event_config import DiscountTier

# Minor-unit exponent per currency (INR paise, USD cents).
CURRENCY_QUANTUM = {
    "INR": Decimal("0.01"),
    "USD": Decimal("0.01"),
}

_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class PricingResult:
    student_count: int
    unit_fee: Decimal
    base_amount: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    applied_tier: DiscountTier | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_count": self.student_count,
            "unit_fee": str(self.unit_fee),
            "base_amount": str(self.base_amount),
            "discount_percent": str(self.discount_percent),
            "discount_amount": str(self.discount_amount),
            "total_amount": str(self.total_amount),
            "currency": self.currency,
        }


def select_tier(student_count: int, tiers: Sequence[DiscountTier]) -> DiscountTier | None:
    """Highest qualifying tier, or None when no tier's threshold is reached."""
    eligible = [t for t in tiers if t.min_students <= student_count]
    if not eligible:
        return None
    return max(eligible, key=lambda t: t.min_students)


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    quantum = CURRENCY_QUANTUM.get(currency.upper())
    if quantum is None:
        raise ValueError(f"Unsupported currency: {currency}")
    return amount.quantize(quantum, rounding=ROUND_HALF_UP)


def compute_total(
    student_count: int,
    unit_fee: Decimal | int | str,
    tiers: Sequence[DiscountTier],
    currency: str = "INR",
) -> PricingResult:
    if student_count < 0:
        raise ValueError(f"student_count must be >= 0, got {student_count}")
    fee = Decimal(str(unit_fee))
    if fee < 0:
        raise ValueError(f"unit_fee must be >= 0, got {fee}")

    base = quantize_amount(fee * student_count, currency)
    tier = select_tier(student_count, tiers)
    percent = tier.discount_percent if tier else Decimal(0)
    discount = quantize_amount(base * percent / _HUNDRED, currency)
    # discount <= base
    discount = min(discount, base)
    return PricingResult(
        student_count=student_count,
        unit_fee=fee,
        base_amount=base,
        discount_percent=percent,
        discount_amount=discount,
        total_amount=base - discount,
        currency=currency.upper(),
        applied_tier=tier,
    )
