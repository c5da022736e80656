"""Payout endpoints for owners and admins."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.api.deps import (
    get_current_actor,
    get_current_admin,
    get_db,
    get_rental_service,
    get_settlement_service,
)
from peerrent.core.exceptions import RecordNotFound
from peerrent.core.security import Actor
from peerrent.models.payout import Payout
from peerrent.models.rental import Rental
from peerrent.schemas.payment import EarningsResponse, PayoutResponse
from peerrent.schemas.rental import RentalResponse
from peerrent.services.rental_service import RentalService
from peerrent.services.settlement_service import SettlementService

router = APIRouter()


@router.get("/earnings", response_model=EarningsResponse)
async def get_my_earnings(
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[SettlementService, Depends(get_settlement_service)],
) -> EarningsResponse:
    """Settled, pending and frozen payouts for the calling owner."""
    earnings = await service.owner_earnings(db, current_actor.id)
    return EarningsResponse.model_validate(earnings, from_attributes=True)


@router.get("/rental/{rental_id}", response_model=PayoutResponse)
async def get_rental_payout(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[SettlementService, Depends(get_settlement_service)],
    rentals: Annotated[RentalService, Depends(get_rental_service)],
) -> Payout:
    rental = await rentals.get_rental(db, rental_id, current_actor)
    payout = await service.get_payout(db, rental.id)
    if payout is None:
        raise RecordNotFound("Payout", str(rental_id))
    return payout


@router.post("/rentals/{rental_id}/release-freeze", response_model=RentalResponse)
async def release_payout_freeze(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[SettlementService, Depends(get_settlement_service)],
) -> Rental:
    """Lift a dispute freeze once no dispute on the rental is open (admin only)."""
    return await service.release_freeze(db, rental_id, current_actor)
