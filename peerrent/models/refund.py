"""Refund database model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from peerrent.database import Base
from peerrent.domain.payment_state import RefundStatus
from peerrent.domain.time_gate import utcnow

__all__ = ["Refund", "RefundStatus"]


class Refund(Base):
    """Money returned to a renter after cancellation or a dispute.

    Immutable once ``status`` is completed.
    """

    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rental_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rentals.id"), nullable=False, index=True
    )
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("disputes.id"), index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_name: Mapped[str] = mapped_column(String(200), default="")

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=RefundStatus.PENDING.value, nullable=False, index=True
    )
    payment_reference: Mapped[str | None] = mapped_column(String(100))
    processor_refund_id: Mapped[str | None] = mapped_column(String(100))
    processed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Refund {self.id} rental={self.rental_id} {self.amount} {self.status}>"
