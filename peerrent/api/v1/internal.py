"""Internal endpoints for the scheduler and operators."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from peerrent.api.deps import (
    get_now,
    get_push_transport,
    get_scheduler_service,
    get_system_or_admin,
)
from peerrent.core.security import Actor
from peerrent.services.notification_service import PushTransport
from peerrent.services.scheduler_service import SchedulerService

router = APIRouter()


class SettlementRunResponse(BaseModel):
    settled: int
    skipped: int
    failed: int


class DeliveryRunResponse(BaseModel):
    delivered: int
    failed: int


@router.post("/settle-eligible", response_model=SettlementRunResponse)
async def settle_eligible(
    current_actor: Annotated[Actor, Depends(get_system_or_admin)],
    scheduler: Annotated[SchedulerService, Depends(get_scheduler_service)],
    now: Annotated[datetime, Depends(get_now)],
    limit: int = Query(default=200, ge=1, le=1000),
) -> SettlementRunResponse:
    """Settle every rental whose payout hold has elapsed."""
    counts = await scheduler.settle_eligible(now, current_actor, limit)
    return SettlementRunResponse(**counts)


@router.post("/deliver-notifications", response_model=DeliveryRunResponse)
async def deliver_notifications(
    current_actor: Annotated[Actor, Depends(get_system_or_admin)],
    scheduler: Annotated[SchedulerService, Depends(get_scheduler_service)],
    transport: Annotated[PushTransport, Depends(get_push_transport)],
    now: Annotated[datetime, Depends(get_now)],
) -> DeliveryRunResponse:
    """Flush the notification outbox."""
    counts = await scheduler.deliver_notifications(transport, now)
    return DeliveryRunResponse(**counts)
