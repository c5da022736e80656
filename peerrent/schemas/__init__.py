"""Pydantic schemas for API validation."""

from peerrent.schemas.dispute import (
    DisputeCreate,
    DisputeResponse,
    DisputeSummary,
    ProposalCreate,
    ProposalResponse,
)
from peerrent.schemas.payment import (
    CancellationResponse,
    EarningsResponse,
    PayoutResponse,
    RefundResponse,
    SettlementResponse,
)
from peerrent.schemas.rental import RentalCreate, RentalResponse

__all__ = [
    "CancellationResponse",
    "DisputeCreate",
    "DisputeResponse",
    "DisputeSummary",
    "EarningsResponse",
    "PayoutResponse",
    "ProposalCreate",
    "ProposalResponse",
    "RefundResponse",
    "RentalCreate",
    "RentalResponse",
    "SettlementResponse",
]
