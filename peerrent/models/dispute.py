"""Dispute database models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from peerrent.database import Base, JSONVariant
from peerrent.domain.dispute_state import DisputeStatus, ProposalStatus
from peerrent.domain.time_gate import utcnow


class Dispute(Base):
    """A disagreement about exactly one rental.

    Concurrent edits are detected through ``version`` (optimistic locking).
    """

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rental_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rentals.id"), nullable=False, index=True
    )
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    item_title: Mapped[str] = mapped_column(String(200), default="")

    # Parties
    reporter_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    reporter_name: Mapped[str] = mapped_column(String(200), default="")
    reporter_role: Mapped[str] = mapped_column(String(10), nullable=False)
    accused_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    accused_name: Mapped[str] = mapped_column(String(200), default="")

    # Classification
    dispute_type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    photos: Mapped[list[str]] = mapped_column(JSONVariant, default=list)
    estimated_cost: Mapped[int | None] = mapped_column(Integer)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(30), default=DisputeStatus.AWAITING_RESPONSE.value, nullable=False, index=True
    )
    counter_response: Mapped[str | None] = mapped_column(Text)
    counter_response_photos: Mapped[list[str] | None] = mapped_column(JSONVariant)
    counter_response_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    escalation_reason: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[str | None] = mapped_column(String(30))
    resolution_notes: Mapped[str | None] = mapped_column(Text)
    admin_notes: Mapped[str | None] = mapped_column(Text)
    refund_amount: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    activities: Mapped[list["DisputeActivity"]] = relationship(
        "DisputeActivity",
        back_populates="dispute",
        order_by="DisputeActivity.sequence",
        lazy="selectin",
    )
    proposals: Mapped[list["ResolutionProposal"]] = relationship(
        "ResolutionProposal",
        back_populates="dispute",
        order_by="ResolutionProposal.sequence",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def involves(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.reporter_id, self.accused_id)

    def other_party(self, user_id: uuid.UUID) -> uuid.UUID:
        return self.accused_id if user_id == self.reporter_id else self.reporter_id

    def party_name(self, user_id: uuid.UUID) -> str:
        return self.reporter_name if user_id == self.reporter_id else self.accused_name

    def __repr__(self) -> str:
        return f"<Dispute {self.id} rental={self.rental_id} status={self.status}>"


class DisputeActivity(Base):
    """Append-only history entry of a dispute."""

    __tablename__ = "dispute_activities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    actor_name: Mapped[str] = mapped_column(String(200), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    photos: Mapped[list[str] | None] = mapped_column(JSONVariant)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    dispute: Mapped["Dispute"] = relationship("Dispute", back_populates="activities")


class ResolutionProposal(Base):
    """Settlement offer made by one party to the other."""

    __tablename__ = "resolution_proposals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    proposed_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    proposed_by_name: Mapped[str] = mapped_column(String(200), default="")
    resolution_type: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int | None] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ProposalStatus.PENDING.value)
    responded_by: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    dispute: Mapped["Dispute"] = relationship("Dispute", back_populates="proposals")
