"""Rental-related Pydantic schemas."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from peerrent.domain.rental_state import HandoffStage


class RentalCreate(BaseModel):
    """Schema for requesting a booking."""

    item_id: UUID
    item_title: str = Field(..., min_length=1, max_length=200)
    owner_id: UUID
    owner_name: str = Field(default="", max_length=200)
    start_date: datetime
    end_date: datetime
    total_price: int = Field(..., gt=0)  # In cents
    security_deposit: int = Field(default=0, ge=0)
    insurance_tier: str | None = Field(default=None, max_length=30)
    insurance_premium: int = Field(default=0, ge=0)
    insurance_coverage_max: int = Field(default=0, ge=0)
    owner_payout_account: str | None = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def validate_dates(self) -> "RentalCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class RentalApprove(BaseModel):
    payout_account: str | None = Field(default=None, max_length=100)


class RentalDecline(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class RentalPay(BaseModel):
    payment_method: str | None = Field(default=None, max_length=100)


class RentalCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class HandoffPhotoCreate(BaseModel):
    """Schema for a pickup or return photo."""

    stage: HandoffStage
    photo_url: str = Field(..., min_length=1, max_length=2000)


class RentalResponse(BaseModel):
    """Schema for rental response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    item_id: UUID
    item_title: str
    owner_id: UUID
    owner_name: str
    renter_id: UUID
    renter_name: str
    start_date: datetime
    end_date: datetime
    total_price: int
    currency: str
    security_deposit: int
    deposit_status: str
    deposit_claimed_amount: int
    insurance_tier: str | None
    insurance_premium: int
    insurance_coverage_max: int
    status: str
    payment_status: str
    payment_reference: str | None
    pickup_confirmed_by_owner: bool
    pickup_confirmed_by_renter: bool
    return_confirmed_by_owner: bool
    return_confirmed_by_renter: bool
    renter_confirmed_return: bool
    payout_eligible_at: datetime | None
    payout_frozen: bool
    version: int
    approved_at: datetime | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    completion_requested_at: datetime | None
    return_confirmed_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class RefundQuoteResponse(BaseModel):
    """What cancelling now would refund."""

    amount: int
    percentage: Decimal
    hours_until_start: float
    eligible: bool
