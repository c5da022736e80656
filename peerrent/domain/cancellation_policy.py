"""Refund & cancellation calculator.

Pure functions: given a rental's total price, its start instant and the
current time, return how much of the price goes back to the renter.

Current policy is binary:
- 24h or more before the start: 100% refund
- less than 24h before the start: no refund (cancellation is also refused)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from peerrent.domain.time_gate import hours_until

# Refund rules: list of (hours_before_start, refund_percentage)
# Evaluated in order - first match wins
REFUND_RULES: list[tuple[int, Decimal]] = [
    (24, Decimal("100")),
    (0, Decimal("0")),
]


def full_refund_rules(cutoff_hours: int) -> list[tuple[int, Decimal]]:
    """All-or-nothing rules with a configurable cutoff."""
    return [(cutoff_hours, Decimal("100")), (0, Decimal("0"))]


@dataclass(frozen=True)
class RefundQuote:
    """Outcome of a refund calculation."""

    amount: int
    percentage: Decimal
    hours_until_start: float

    @property
    def eligible(self) -> bool:
        return self.amount > 0


def calculate_refund_percentage(
    start_date: datetime,
    now: datetime,
    rules: list[tuple[int, Decimal]] | None = None,
) -> Decimal:
    """Refund percentage (0-100) for a cancellation at ``now``."""
    hours_before = hours_until(start_date, now)
    for min_hours, refund_pct in rules or REFUND_RULES:
        if hours_before >= min_hours:
            return refund_pct
    return Decimal("0")


def apply_percentage(amount: int, percentage: Decimal) -> int:
    """Percentage of an amount in minor units, rounded half up."""
    return int(
        (Decimal(amount) * percentage / Decimal("100")).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )


def calculate_refund(
    total_price: int,
    start_date: datetime,
    now: datetime,
    rules: list[tuple[int, Decimal]] | None = None,
) -> RefundQuote:
    """Calculate the refund for cancelling a rental.

    Args:
        total_price: Rental total in smallest currency unit
        start_date: Rental start instant
        now: Time of the cancellation
        rules: Optional refund bands overriding the default policy

    Returns:
        RefundQuote with amount, percentage and the hours left before start
    """
    percentage = calculate_refund_percentage(start_date, now, rules)
    return RefundQuote(
        amount=apply_percentage(total_price, percentage),
        percentage=percentage,
        hours_until_start=hours_until(start_date, now),
    )
