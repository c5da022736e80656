"""Refund, payout and settlement schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from peerrent.domain.payout_state import PayoutBlock


class RefundResponse(BaseModel):
    """Schema for refund response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rental_id: UUID
    dispute_id: UUID | None
    user_id: UUID
    amount: int
    currency: str
    reason: str
    status: str
    payment_reference: str | None
    processor_refund_id: str | None
    processed_at: datetime | None
    error_message: str | None
    created_at: datetime


class PayoutResponse(BaseModel):
    """Schema for owner payout response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rental_id: UUID
    owner_id: UUID
    gross_amount: int
    platform_fee: int
    amount: int
    deposit_claim_amount: int
    currency: str
    transfer_reference: str | None
    status: str
    created_at: datetime


class SettlementResponse(BaseModel):
    """Result of a payout attempt.

    Not being eligible yet, or being frozen by a dispute, is reported here
    rather than as an error.
    """

    model_config = ConfigDict(from_attributes=True)

    rental_id: UUID
    status: str
    settled: bool
    blocked_by: PayoutBlock | None = None
    hours_remaining: int = 0
    already_settled: bool = False
    payout: PayoutResponse | None = None


class CancellationResponse(BaseModel):
    """Cancelled rental with the refund it produced."""

    rental_id: UUID
    status: str
    refund: RefundResponse | None = None
    refund_percentage: str | None = None


class EarningsResponse(BaseModel):
    """Schema for owner earnings summary."""

    model_config = ConfigDict(from_attributes=True)

    owner_id: UUID
    total_earnings: int
    platform_fees: int
    completed_payouts: int
    pending_amount: int
    frozen_amount: int
    currency: str
    history: list[PayoutResponse]
