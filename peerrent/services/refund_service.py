"""Refund creation and processing."""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.core.exceptions import (
    ConcurrentUpdate,
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    RecordNotFound,
    ValidationError,
)
from peerrent.core.idempotency import refund_key
from peerrent.core.security import Actor
from peerrent.utils.money import format_amount
from peerrent.domain.payment_state import (
    OUTSTANDING_REFUND_STATUSES,
    RefundStatus,
    assert_refund_transition,
    can_process_refund,
)
from peerrent.domain.time_gate import ensure_utc, utcnow
from peerrent.gateways.base import PaymentGateway
from peerrent.models.refund import Refund
from peerrent.models.rental import Rental
from peerrent.services.audit_service import AuditService
from peerrent.services.notification_service import NotificationService, NotificationType

logger = logging.getLogger(__name__)


class RefundService:
    """Creates refund records and sends them to the payment processor."""

    def __init__(
        self,
        gateway: PaymentGateway,
        audit: AuditService | None = None,
        notifier: NotificationService | None = None,
    ) -> None:
        self.gateway = gateway
        self.audit = audit or AuditService()
        self.notifier = notifier or NotificationService()

    async def refundable_balance(self, db: AsyncSession, rental: Rental) -> int:
        """Part of the rental total not yet claimed by a refund."""
        result = await db.execute(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.rental_id == rental.id,
                Refund.status.in_([s.value for s in OUTSTANDING_REFUND_STATUSES]),
            )
        )
        return rental.total_price - int(result.scalar_one())

    async def create_refund(
        self,
        db: AsyncSession,
        rental: Rental,
        amount: int,
        reason: str,
        actor: Actor,
        dispute_id: UUID | None = None,
    ) -> Refund:
        """Record a pending refund to the rental's renter.

        Raises:
            ValidationError: If the amount is not positive or exceeds what
                is left to refund on the rental
        """
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")
        await db.flush()
        balance = await self.refundable_balance(db, rental)
        if amount > balance:
            raise ValidationError(
                f"Refund of {format_amount(amount, rental.currency)} exceeds the refundable "
                f"balance of {format_amount(balance, rental.currency)}"
            )

        refund = Refund(
            rental_id=rental.id,
            dispute_id=dispute_id,
            user_id=rental.renter_id,
            user_name=rental.renter_name,
            amount=amount,
            currency=rental.currency,
            reason=reason,
            status=RefundStatus.PENDING.value,
            payment_reference=rental.payment_reference,
        )
        db.add(refund)
        await db.flush()

        await self.audit.record(
            db,
            actor,
            "refund.create",
            "refund",
            refund.id,
            new_values={"rental_id": rental.id, "amount": amount, "dispute_id": dispute_id},
        )
        logger.info(f"Refund {refund.id} of {amount} created for rental {rental.id}")
        return refund

    async def process_refund(
        self,
        db: AsyncSession,
        refund_id: UUID,
        actor: Actor,
        now: datetime | None = None,
    ) -> Refund:
        """Send a pending or failed refund to the processor.

        A refund with no captured payment behind it completes without a
        processor call. Retryable processor failures raise and leave the
        refund untouched; definitive rejections mark it failed.
        """
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "refund.process", "refund", refund_id):
            if not (actor.is_admin or actor.is_system):
                raise InvalidActor("Only admins can process refunds")

            refund = await self.get_refund(db, refund_id)
            if refund.status == RefundStatus.COMPLETED:
                return refund

            can_process, error = can_process_refund(refund.status)
            if not can_process:
                raise InvalidSourceState("Refund", refund.status, detail=error)

            previous = refund.status
            assert_refund_transition(previous, RefundStatus.PROCESSING)
            claimed = await db.execute(
                update(Refund)
                .where(Refund.id == refund.id, Refund.status == previous)
                .values(status=RefundStatus.PROCESSING.value)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise ConcurrentUpdate("Refund", str(refund.id))
            await db.refresh(refund)

            if refund.payment_reference:
                result = await self.gateway.refund(
                    payment_reference=refund.payment_reference,
                    amount=refund.amount,
                    reason=refund.reason,
                    idempotency_key=refund_key(refund.id),
                )
                if not result.success:
                    if result.retryable:
                        raise ExternalProcessorFailure("refund", result.error_message)
                    refund.status = RefundStatus.FAILED.value
                    refund.error_message = result.error_message
                    refund.processed_by = actor.id
                    refund.processed_at = now
                    await db.flush()
                    await self.audit.record(
                        db, actor, "refund.fail", "refund", refund.id,
                        new_values={"error": result.error_message},
                    )
                    return refund
                refund.processor_refund_id = result.refund_id

            refund.status = RefundStatus.COMPLETED.value
            refund.error_message = None
            refund.processed_by = actor.id
            refund.processed_at = now
            await db.flush()

            await self.audit.record(
                db,
                actor,
                "refund.complete",
                "refund",
                refund.id,
                old_values={"status": previous},
                new_values={"status": refund.status, "processor_refund_id": refund.processor_refund_id},
            )
            await self.notifier.notify(
                db,
                refund.user_id,
                NotificationType.REFUND_PROCESSED,
                "Refund processed",
                f"Your refund of {format_amount(refund.amount, refund.currency)} has been processed.",
                {"rental_id": refund.rental_id, "refund_id": refund.id},
            )
            return refund

    async def get_refund(self, db: AsyncSession, refund_id: UUID) -> Refund:
        result = await db.execute(select(Refund).where(Refund.id == refund_id))
        refund = result.scalar_one_or_none()
        if refund is None:
            raise RecordNotFound("Refund", str(refund_id))
        return refund

    async def list_user_refunds(self, db: AsyncSession, user_id: UUID) -> list[Refund]:
        result = await db.execute(
            select(Refund).where(Refund.user_id == user_id).order_by(Refund.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_rental_refunds(self, db: AsyncSession, rental_id: UUID) -> list[Refund]:
        result = await db.execute(
            select(Refund).where(Refund.rental_id == rental_id).order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    async def list_pending_refunds(self, db: AsyncSession, limit: int = 100) -> list[Refund]:
        result = await db.execute(
            select(Refund)
            .where(Refund.status == RefundStatus.PENDING.value)
            .order_by(Refund.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())
