"""Dispute-related Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from peerrent.domain.dispute_state import DisputeStatus, DisputeType, ResolutionType, ResolvedBy


class DisputeCreate(BaseModel):
    """Schema for filing a dispute."""

    rental_id: UUID
    dispute_type: DisputeType
    description: str = Field(..., min_length=10, max_length=5000)
    photos: list[str] = Field(default_factory=list)
    estimated_cost: int | None = Field(default=None, ge=0)  # In cents


class CounterResponseCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    photos: list[str] = Field(default_factory=list)


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    photos: list[str] = Field(default_factory=list)


class ProposalCreate(BaseModel):
    """Schema for proposing a resolution."""

    resolution_type: ResolutionType
    description: str = Field(..., min_length=1, max_length=2000)
    amount: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_amount(self) -> "ProposalCreate":
        if self.resolution_type == ResolutionType.PARTIAL_REFUND and not self.amount:
            raise ValueError("partial_refund requires an amount")
        return self


class ProposalDecision(BaseModel):
    accept: bool
    reason: str | None = Field(default=None, max_length=2000)


class EscalationCreate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class DisputeStatusUpdate(BaseModel):
    """Schema for an admin status change."""

    status: DisputeStatus
    resolved_by: ResolvedBy | None = None
    notes: str | None = Field(default=None, max_length=5000)


class AdminNoteCreate(BaseModel):
    note: str = Field(..., min_length=1, max_length=5000)


class DisputeRefundCreate(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str = Field(default="Dispute refund", max_length=1000)


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int
    activity_type: str
    actor_id: UUID
    actor_name: str
    content: str
    photos: list[str] | None
    created_at: datetime


class ProposalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int
    proposed_by: UUID
    proposed_by_name: str
    resolution_type: str
    amount: int | None
    description: str
    status: str
    responded_by: UUID | None
    responded_at: datetime | None
    rejection_reason: str | None
    created_at: datetime


class DisputeSummary(BaseModel):
    """Schema for dispute list entries."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rental_id: UUID
    item_title: str
    reporter_id: UUID
    reporter_role: str
    accused_id: UUID
    dispute_type: str
    status: str
    refund_amount: int
    created_at: datetime
    updated_at: datetime


class DisputeResponse(DisputeSummary):
    """Schema for a dispute with its history."""

    item_id: UUID
    reporter_name: str
    accused_name: str
    description: str
    photos: list[str]
    estimated_cost: int | None
    counter_response: str | None
    counter_response_photos: list[str] | None
    counter_response_at: datetime | None
    escalated_at: datetime | None
    escalation_reason: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    resolution_notes: str | None
    admin_notes: str | None
    activities: list[ActivityResponse]
    proposals: list[ProposalResponse]
