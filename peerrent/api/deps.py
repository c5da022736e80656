"""API dependencies for authentication, clock and services."""

from datetime import datetime
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peerrent.config import settings
from peerrent.core.exceptions import AuthorizationError
from peerrent.core.security import Actor, actor_from_token
from peerrent.database import async_session_maker, get_db
from peerrent.domain.time_gate import utcnow
from peerrent.gateways.base import PaymentGateway
from peerrent.services.audit_service import AuditService
from peerrent.services.dispute_service import DisputeService
from peerrent.services.gateway_service import get_configured_gateway
from peerrent.services.notification_service import NotificationService, PushTransport
from peerrent.services.refund_service import RefundService
from peerrent.services.rental_service import RentalService
from peerrent.services.scheduler_service import SchedulerService
from peerrent.services.settlement_service import SettlementService

__all__ = ["get_db"]

# Security scheme
security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """Resolve the caller from the bearer token."""
    return actor_from_token(credentials.credentials)


async def get_current_admin(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Get current actor and verify they are an admin."""
    if not actor.is_admin:
        raise AuthorizationError("Admin access required")
    return actor


async def get_system_or_admin(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """Scheduler or admin callers for internal endpoints."""
    if not (actor.is_admin or actor.is_system):
        raise AuthorizationError("Internal access required")
    return actor


def get_now() -> datetime:
    """Request clock. Overridden in tests to pin time gates."""
    return utcnow()


def get_payment_gateway() -> PaymentGateway:
    return get_configured_gateway()


def get_refund_service(
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
) -> RefundService:
    return RefundService(gateway, AuditService(), NotificationService())


def get_settlement_service(
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
) -> SettlementService:
    return SettlementService(gateway, settings, AuditService(), NotificationService())


def get_rental_service(
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    refunds: Annotated[RefundService, Depends(get_refund_service)],
    settlement: Annotated[SettlementService, Depends(get_settlement_service)],
) -> RentalService:
    return RentalService(
        gateway,
        settings,
        refunds.audit,
        refunds.notifier,
        refunds=refunds,
        settlement=settlement,
    )


def get_dispute_service(
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
    refunds: Annotated[RefundService, Depends(get_refund_service)],
    settlement: Annotated[SettlementService, Depends(get_settlement_service)],
) -> DisputeService:
    return DisputeService(
        gateway,
        settings,
        refunds.audit,
        refunds.notifier,
        refunds=refunds,
        settlement=settlement,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for batch endpoints that commit per item."""
    return async_session_maker


_push_transport: PushTransport | None = None


def get_push_transport() -> PushTransport:
    global _push_transport
    if _push_transport is None:
        _push_transport = PushTransport()
    return _push_transport


def get_scheduler_service(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
) -> SchedulerService:
    return SchedulerService(session_factory, gateway, settings)
