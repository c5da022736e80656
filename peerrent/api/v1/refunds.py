"""Refund endpoints."""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.api.deps import (
    get_current_actor,
    get_current_admin,
    get_db,
    get_now,
    get_refund_service,
)
from peerrent.core.exceptions import RecordNotFound
from peerrent.core.security import Actor
from peerrent.models.refund import Refund
from peerrent.schemas.payment import RefundResponse
from peerrent.services.refund_service import RefundService

router = APIRouter()


@router.get("/mine", response_model=list[RefundResponse])
async def list_my_refunds(
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RefundService, Depends(get_refund_service)],
) -> list[Refund]:
    return await service.list_user_refunds(db, current_actor.id)


@router.get("/pending", response_model=list[RefundResponse])
async def list_pending_refunds(
    current_actor: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RefundService, Depends(get_refund_service)],
    limit: int = Query(default=100, ge=1, le=500),
) -> list[Refund]:
    """Refunds waiting to be sent to the processor (admin only)."""
    return await service.list_pending_refunds(db, limit)


@router.get("/{refund_id}", response_model=RefundResponse)
async def get_refund(
    refund_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RefundService, Depends(get_refund_service)],
) -> Refund:
    refund = await service.get_refund(db, refund_id)
    if not current_actor.is_admin and refund.user_id != current_actor.id:
        raise RecordNotFound("Refund", str(refund_id))
    return refund


@router.post("/{refund_id}/process", response_model=RefundResponse)
async def process_refund(
    refund_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RefundService, Depends(get_refund_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Refund:
    """Send a pending or failed refund to the processor (admin only)."""
    return await service.process_refund(db, refund_id, current_actor, now)
