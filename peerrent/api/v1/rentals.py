"""Rental lifecycle endpoints."""

from datetime import datetime
from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.api.deps import get_current_actor, get_db, get_now, get_rental_service
from peerrent.core.security import Actor
from peerrent.domain.rental_state import RentalStatus
from peerrent.models.rental import Rental
from peerrent.schemas.payment import CancellationResponse, RefundResponse, SettlementResponse
from peerrent.schemas.rental import (
    HandoffPhotoCreate,
    RefundQuoteResponse,
    RentalApprove,
    RentalCancel,
    RentalCreate,
    RentalDecline,
    RentalPay,
    RentalResponse,
)
from peerrent.services.rental_service import RentalService

router = APIRouter()


@router.post("", response_model=RentalResponse, status_code=status.HTTP_201_CREATED)
async def create_rental(
    data: RentalCreate,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Rental:
    """Request a booking as the renter."""
    return await service.create_rental(
        db,
        current_actor,
        item_id=data.item_id,
        item_title=data.item_title,
        owner_id=data.owner_id,
        owner_name=data.owner_name,
        start_date=data.start_date,
        end_date=data.end_date,
        total_price=data.total_price,
        security_deposit=data.security_deposit,
        insurance_tier=data.insurance_tier,
        insurance_premium=data.insurance_premium,
        insurance_coverage_max=data.insurance_coverage_max,
        owner_payout_account=data.owner_payout_account,
        now=now,
    )


@router.get("", response_model=list[RentalResponse])
async def list_rentals(
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    role: Literal["owner", "renter"] = Query(default="renter", alias="as"),
    status_filter: RentalStatus | None = Query(default=None, alias="status"),
) -> list[Rental]:
    """List the caller's rentals as owner or renter."""
    status_value = status_filter.value if status_filter else None
    if role == "owner":
        return await service.list_owner_rentals(db, current_actor.id, status_value)
    return await service.list_renter_rentals(db, current_actor.id, status_value)


@router.get("/{rental_id}", response_model=RentalResponse)
async def get_rental(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
) -> Rental:
    return await service.get_rental(db, rental_id, current_actor)


@router.get("/{rental_id}/refund-quote", response_model=RefundQuoteResponse)
async def get_refund_quote(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> RefundQuoteResponse:
    """Refund the renter would get by cancelling now."""
    quote = await service.refund_quote(db, rental_id, current_actor, now)
    return RefundQuoteResponse.model_validate(quote, from_attributes=True)


# ============ OWNER DECISION ============


@router.post("/{rental_id}/approve", response_model=RentalResponse)
async def approve_rental(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
    data: RentalApprove | None = None,
) -> Rental:
    payout_account = data.payout_account if data else None
    return await service.approve(db, rental_id, current_actor, payout_account, now)


@router.post("/{rental_id}/decline", response_model=RentalResponse)
async def decline_rental(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
    data: RentalDecline | None = None,
) -> Rental:
    return await service.decline(db, rental_id, current_actor, data.reason if data else None, now)


# ============ RENTER PAYMENT & CANCELLATION ============


@router.post("/{rental_id}/pay", response_model=RentalResponse)
async def pay_rental(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
    data: RentalPay | None = None,
) -> Rental:
    """Pay for an approved rental.

    A processor failure returns 503 with ``retryable: true`` and leaves the
    rental approved and unpaid.
    """
    payment_method = data.payment_method if data else None
    return await service.pay(db, rental_id, current_actor, payment_method, now)


@router.post("/{rental_id}/cancel", response_model=CancellationResponse)
async def cancel_rental(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
    data: RentalCancel | None = None,
) -> CancellationResponse:
    """Cancel an approved rental while the cancellation window is open."""
    outcome = await service.cancel(db, rental_id, current_actor, data.reason if data else None, now)
    return CancellationResponse(
        rental_id=outcome.rental.id,
        status=outcome.rental.status,
        refund=RefundResponse.model_validate(outcome.refund) if outcome.refund else None,
        refund_percentage=str(outcome.quote.percentage) if outcome.quote else None,
    )


# ============ HANDOFF & RETURN ============


@router.post("/{rental_id}/handoff-photos", response_model=RentalResponse)
async def add_handoff_photo(
    rental_id: UUID,
    data: HandoffPhotoCreate,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
) -> Rental:
    return await service.record_handoff_photo(db, rental_id, current_actor, data.stage, data.photo_url)


@router.post("/{rental_id}/complete", response_model=RentalResponse)
async def initiate_completion(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Rental:
    """Owner marks the rental period over (after the end date)."""
    return await service.initiate_completion(db, rental_id, current_actor, now)


@router.post("/{rental_id}/confirm-return", response_model=RentalResponse)
async def confirm_return(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> Rental:
    """Renter confirms the return; the payout hold starts."""
    return await service.confirm_return(db, rental_id, current_actor, now)


@router.post("/{rental_id}/payout", response_model=SettlementResponse)
async def process_payout(
    rental_id: UUID,
    current_actor: Annotated[Actor, Depends(get_current_actor)],
    db: Annotated[AsyncSession, Depends(get_db)],
    service: Annotated[RentalService, Depends(get_rental_service)],
    now: Annotated[datetime, Depends(get_now)],
) -> SettlementResponse:
    """Settle the payout if eligible; otherwise report the wait or the freeze."""
    outcome = await service.process_payout_if_eligible(db, rental_id, current_actor, now)
    return SettlementResponse.model_validate(outcome, from_attributes=True)
