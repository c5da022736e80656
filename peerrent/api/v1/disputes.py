"""Dispute endpoints."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.api.deps import (
    get_current_actor,
    get_current_admin,
    get_db,
    get_dispute_service,
    get_now,
)
from peerrent.core.security import Actor
from peerrent.domain.dispute_state import DisputeStatus
from peerrent.models.dispute import Dispute, ResolutionProposal
from peerrent.models.refund import Refund
from peerrent.schemas.dispute import (
    AdminNoteCreate,
    CounterResponseCreate,
    DisputeCreate,
    DisputeRefundCreate,
    DisputeResponse,
    DisputeStatusUpdate,
    DisputeSummary,
    EscalationCreate,
    MessageCreate,
    ProposalCreate,
    ProposalDecision,
    ProposalResponse,
)
from peerrent.schemas.payment import RefundResponse
from peerrent.services.dispute_service import DisputeService

router = APIRouter()


@router.post("", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
async def create_dispute(
    data: DisputeCreate,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Dispute:
    """File a dispute. Freezes the payout if the rental is awaiting one."""
    return await service.create_dispute(
        db,
        current_actor,
        rental_id=data.rental_id,
        dispute_type=data.dispute_type,
        description=data.description,
        photos=data.photos,
        estimated_cost=data.estimated_cost,
        now=now,
    )


@router.get("", response_model=list[DisputeSummary])
async def list_my_disputes(
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    status_filter: DisputeStatus | None = Query(default=None, alias="status"),
) -> list[Dispute]:
    """Disputes the caller filed or is accused in."""
    return await service.list_user_disputes(
        db, current_actor.id, status_filter.value if status_filter else None
    )


@router.get("/admin/all", response_model=list[DisputeSummary])
async def list_all_disputes(
    current_actor: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    status_filter: DisputeStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> list[Dispute]:
    """All disputes, newest first (admin only)."""
    return await service.list_all_disputes(
        db,
        current_actor,
        status_filter.value if status_filter else None,
        limit=page_size,
        offset=(page - 1) * page_size,
    )


@router.get("/rental/{rental_id}", response_model=list[DisputeSummary])
async def list_rental_disputes(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
) -> list[Dispute]:
    return await service.list_rental_disputes(db, rental_id, current_actor)


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
) -> Dispute:
    """Get a dispute with its activity log and proposals."""
    return await service.get_dispute(db, dispute_id, current_actor)


# ============ PARTY ACTIONS ============


@router.post("/{dispute_id}/response", response_model=DisputeResponse)
async def submit_counter_response(
    dispute_id: UUID,
    data: CounterResponseCreate,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Dispute:
    """Respond to a dispute (accused party only)."""
    return await service.submit_counter_response(
        db, dispute_id, current_actor, data.content, data.photos, now
    )


@router.post("/{dispute_id}/messages", response_model=DisputeResponse)
async def add_message(
    dispute_id: UUID,
    data: MessageCreate,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Dispute:
    return await service.add_message(db, dispute_id, current_actor, data.content, data.photos, now)


@router.post(
    "/{dispute_id}/proposals",
    response_model=ProposalResponse,
    status_code=status.HTTP_201_CREATED,
)
async def propose_resolution(
    dispute_id: UUID,
    data: ProposalCreate,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> ResolutionProposal:
    return await service.propose_resolution(
        db,
        dispute_id,
        current_actor,
        data.resolution_type,
        data.description,
        data.amount,
        now,
    )


@router.post("/{dispute_id}/proposals/{proposal_id}/respond", response_model=DisputeResponse)
async def respond_to_proposal(
    dispute_id: UUID,
    proposal_id: UUID,
    data: ProposalDecision,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Dispute:
    """Accept or reject the other party's proposal."""
    return await service.respond_to_proposal(
        db, dispute_id, proposal_id, current_actor, data.accept, data.reason, now
    )


@router.post("/{dispute_id}/escalate", response_model=DisputeResponse)
async def escalate_dispute(
    dispute_id: UUID,
    data: EscalationCreate,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Dispute:
    return await service.escalate(db, dispute_id, current_actor, data.reason, now)


# ============ ADMIN ============


@router.patch("/{dispute_id}/status", response_model=DisputeResponse)
async def update_dispute_status(
    dispute_id: UUID,
    data: DisputeStatusUpdate,
    current_actor: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Dispute:
    """Set investigating, resolved or closed (admin only)."""
    return await service.admin_update_status(
        db, dispute_id, current_actor, data.status, data.resolved_by, data.notes, now
    )


@router.post("/{dispute_id}/notes", response_model=DisputeResponse)
async def add_admin_note(
    dispute_id: UUID,
    data: AdminNoteCreate,
    current_actor: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Dispute:
    return await service.add_admin_note(db, dispute_id, current_actor, data.note, now)


@router.post("/{dispute_id}/refund", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def issue_dispute_refund(
    dispute_id: UUID,
    data: DisputeRefundCreate,
    current_actor: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[DisputeService, Depends(get_dispute_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Refund:
    """Refund the renter and process it immediately (admin only)."""
    return await service.issue_refund(db, dispute_id, current_actor, data.amount, data.reason, now)
