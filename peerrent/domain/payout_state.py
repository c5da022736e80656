"""Payout eligibility and platform fee split.

A completed rental pays out once the post-return hold has elapsed and no
dispute has frozen it. Anything short of that is reported as a reason,
never raised.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from peerrent.domain.cancellation_policy import apply_percentage
from peerrent.domain.time_gate import is_at_or_past, whole_hours_remaining


class PayoutStatus(str, Enum):
    COMPLETED = "completed"


class PayoutBlock(str, Enum):
    """Why a settlement attempt did not transfer money."""

    FROZEN = "frozen"
    HOLD_PERIOD = "hold_period"
    NOT_SCHEDULED = "not_scheduled"


@dataclass(frozen=True)
class PayoutEligibility:
    eligible: bool
    blocked_by: PayoutBlock | None = None
    hours_remaining: int = 0


@dataclass(frozen=True)
class PayoutSplit:
    """Gross rental total split between the owner and the platform."""

    gross_amount: int
    platform_fee: int
    owner_amount: int


def evaluate_payout_eligibility(
    payout_eligible_at: datetime | None,
    payout_frozen: bool,
    now: datetime,
) -> PayoutEligibility:
    """Check whether settlement may happen at ``now``.

    The freeze is reported ahead of the hold period, since a frozen payout
    stays blocked even after the hold elapses.
    """
    if payout_frozen:
        return PayoutEligibility(eligible=False, blocked_by=PayoutBlock.FROZEN)
    if payout_eligible_at is None:
        return PayoutEligibility(eligible=False, blocked_by=PayoutBlock.NOT_SCHEDULED)
    if not is_at_or_past(now, payout_eligible_at):
        return PayoutEligibility(
            eligible=False,
            blocked_by=PayoutBlock.HOLD_PERIOD,
            hours_remaining=whole_hours_remaining(now, payout_eligible_at),
        )
    return PayoutEligibility(eligible=True)


def split_payout(total_price: int, platform_fee_percent: int | Decimal) -> PayoutSplit:
    """Split ``total_price`` into platform fee and owner share."""
    fee = apply_percentage(total_price, Decimal(platform_fee_percent))
    return PayoutSplit(
        gross_amount=total_price,
        platform_fee=fee,
        owner_amount=total_price - fee,
    )
