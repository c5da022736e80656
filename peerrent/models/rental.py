"""Rental database model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from peerrent.database import Base
from peerrent.domain.rental_state import DepositStatus, PaymentStatus, RentalStatus
from peerrent.domain.time_gate import utcnow


class Rental(Base):
    """One booking of an item by a renter from its owner.

    Rentals are never deleted; they end in a terminal status instead.
    ``version`` is bumped by every conditional status write.
    """

    __tablename__ = "rentals"
    __table_args__ = (
        Index("ix_rentals_settlement_queue", "status", "payout_frozen", "payout_eligible_at"),
        CheckConstraint(
            "NOT payout_frozen OR status = 'completed_pending_payout'",
            name="ck_rentals_freeze_pending_payout",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Parties and item
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    item_title: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    owner_name: Mapped[str] = mapped_column(String(200), default="")
    renter_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    renter_name: Mapped[str] = mapped_column(String(200), default="")

    # Dates (instants, hour-precision gating)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Commercial (minor units)
    total_price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    security_deposit: Mapped[int] = mapped_column(Integer, default=0)
    deposit_status: Mapped[str] = mapped_column(String(20), default=DepositStatus.NONE.value)
    deposit_claimed_amount: Mapped[int] = mapped_column(Integer, default=0)
    deposit_id: Mapped[str | None] = mapped_column(String(100))
    insurance_tier: Mapped[str | None] = mapped_column(String(30))
    insurance_premium: Mapped[int] = mapped_column(Integer, default=0)
    insurance_coverage_max: Mapped[int] = mapped_column(Integer, default=0)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(30), default=RentalStatus.PENDING.value, nullable=False, index=True
    )
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.UNPAID.value)
    payment_reference: Mapped[str | None] = mapped_column(String(100))
    renter_confirmed_return: Mapped[bool] = mapped_column(Boolean, default=False)
    payout_eligible_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payout_frozen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    owner_payout_account: Mapped[str | None] = mapped_column(String(100))
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Handoff photos
    pickup_photo_owner: Mapped[str | None] = mapped_column(Text)
    pickup_photo_renter: Mapped[str | None] = mapped_column(Text)
    return_photo_owner: Mapped[str | None] = mapped_column(Text)
    return_photo_renter: Mapped[str | None] = mapped_column(Text)

    # Timestamps
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completion_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    return_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    @property
    def pickup_confirmed_by_owner(self) -> bool:
        return bool(self.pickup_photo_owner)

    @property
    def pickup_confirmed_by_renter(self) -> bool:
        return bool(self.pickup_photo_renter)

    @property
    def return_confirmed_by_owner(self) -> bool:
        return bool(self.return_photo_owner)

    @property
    def return_confirmed_by_renter(self) -> bool:
        return bool(self.return_photo_renter)

    def party_role(self, user_id: uuid.UUID) -> str | None:
        """``owner``, ``renter`` or None for outsiders."""
        if user_id == self.owner_id:
            return "owner"
        if user_id == self.renter_id:
            return "renter"
        return None

    def __repr__(self) -> str:
        return f"<Rental {self.id} status={self.status} v{self.version}>"
