"""Payout settlement coordinator.

``check_and_settle`` is the only operation that moves a rental from
completed_pending_payout to completed. It transfers money only when the
post-return hold has elapsed and no dispute has frozen the payout; in every
other case it reports why and changes nothing.

Settlement order inside one transaction:
1. conditional write claiming the rental (status, version, not frozen, hold elapsed)
2. processor transfer keyed by the rental id, including any captured
   deposit claim
3. release of a security deposit hold that was never claimed
4. payout row, notifications, audit

A failed transfer or release raises, the transaction rolls back, and the rental stays
in completed_pending_payout for the next attempt.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.config import Settings, settings as default_settings
from peerrent.core.exceptions import (
    ConcurrentUpdate,
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    PayoutFrozen,
    ValidationError,
)
from peerrent.core.idempotency import deposit_release_key, transfer_key
from peerrent.core.security import Actor
from peerrent.domain.dispute_state import TERMINAL_STATUSES as DISPUTE_TERMINAL
from peerrent.domain.payment_state import RefundStatus
from peerrent.domain.payout_state import (
    PayoutBlock,
    PayoutStatus,
    evaluate_payout_eligibility,
    split_payout,
)
from peerrent.domain.rental_state import DepositStatus, RentalStatus
from peerrent.domain.time_gate import ensure_utc, utcnow
from peerrent.gateways.base import PaymentGateway
from peerrent.models.dispute import Dispute
from peerrent.models.payout import Payout
from peerrent.models.refund import Refund
from peerrent.models.rental import Rental
from peerrent.services.audit_service import AuditService
from peerrent.services.notification_service import NotificationService, NotificationType
from peerrent.utils.concurrency import compare_and_set, load_rental, reload
from peerrent.utils.money import format_amount

logger = logging.getLogger(__name__)


@dataclass
class SettlementOutcome:
    """Result of a settlement attempt.

    ``blocked_by`` is ``frozen`` or ``hold_period`` when nothing was paid.
    """

    rental_id: UUID
    status: str
    settled: bool
    blocked_by: PayoutBlock | None = None
    hours_remaining: int = 0
    already_settled: bool = False
    payout: Payout | None = None


@dataclass
class OwnerEarnings:
    owner_id: UUID
    total_earnings: int = 0
    platform_fees: int = 0
    completed_payouts: int = 0
    pending_amount: int = 0
    frozen_amount: int = 0
    currency: str = "usd"
    history: list[Payout] = field(default_factory=list)


class SettlementService:
    """Settles completed rentals and manages the payout freeze."""

    def __init__(
        self,
        gateway: PaymentGateway,
        settings: Settings | None = None,
        audit: AuditService | None = None,
        notifier: NotificationService | None = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings or default_settings
        self.audit = audit or AuditService()
        self.notifier = notifier or NotificationService()

    async def check_and_settle(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        now: datetime | None = None,
    ) -> SettlementOutcome:
        """Settle the rental if eligible, otherwise report why not.

        Safe to call repeatedly: after a successful settlement further calls
        return the existing payout without another transfer.

        Raises:
            InvalidActor: If the caller is neither the owner, an admin nor the scheduler
            InvalidSourceState: If the rental has not reached completed_pending_payout
            ExternalProcessorFailure: If the transfer failed (retryable)
        """
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "rental.settle", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            if not (actor.is_admin or actor.is_system or actor.id == rental.owner_id):
                raise InvalidActor("Only the owner can request this payout")

            if rental.status == RentalStatus.COMPLETED:
                return await self._already_settled(db, rental)
            if rental.status != RentalStatus.COMPLETED_PENDING_PAYOUT:
                raise InvalidSourceState("Rental", rental.status, "settle")

            eligibility = evaluate_payout_eligibility(
                rental.payout_eligible_at, rental.payout_frozen, now
            )
            if not eligibility.eligible:
                logger.info(
                    f"Payout for rental {rental.id} not settled: {eligibility.blocked_by.value} "
                    f"({eligibility.hours_remaining}h remaining)"
                )
                return SettlementOutcome(
                    rental_id=rental.id,
                    status=rental.status,
                    settled=False,
                    blocked_by=eligibility.blocked_by,
                    hours_remaining=eligibility.hours_remaining,
                )

            destination = rental.owner_payout_account
            if not destination:
                raise ValidationError("Owner has not connected a payout account")

            split = split_payout(rental.total_price, self.settings.platform_fee_percent)
            deposit_claim = (
                rental.deposit_claimed_amount
                if rental.deposit_status in (DepositStatus.PARTIAL_CLAIM, DepositStatus.FULL_CLAIM)
                else 0
            )
            hold_reference = (
                rental.deposit_id if rental.deposit_status == DepositStatus.HELD else None
            )
            changes: dict = {"status": RentalStatus.COMPLETED.value, "completed_at": now}
            if rental.deposit_status == DepositStatus.HELD:
                changes["deposit_status"] = DepositStatus.RELEASED.value

            won = await compare_and_set(
                db,
                rental,
                RentalStatus.COMPLETED_PENDING_PAYOUT.value,
                changes,
                Rental.payout_frozen.is_(False),
                Rental.payout_eligible_at <= now,
            )
            if not won:
                await reload(db, rental)
                if rental.status == RentalStatus.COMPLETED:
                    return await self._already_settled(db, rental)
                if rental.payout_frozen:
                    return SettlementOutcome(
                        rental_id=rental.id,
                        status=rental.status,
                        settled=False,
                        blocked_by=PayoutBlock.FROZEN,
                    )
                raise ConcurrentUpdate("Rental", str(rental.id))

            result = await self.gateway.transfer(
                destination=destination,
                amount=split.owner_amount + deposit_claim,
                currency=rental.currency,
                rental_id=str(rental.id),
                idempotency_key=transfer_key(rental.id),
            )
            if not result.success:
                raise ExternalProcessorFailure("transfer", result.error_message)

            if hold_reference:
                release = await self.gateway.release_hold(
                    hold_reference=hold_reference,
                    idempotency_key=deposit_release_key(rental.id),
                )
                if not release.success:
                    raise ExternalProcessorFailure("deposit release", release.error_message)
                logger.info(f"Deposit hold {hold_reference} released for rental {rental.id}")

            payout = Payout(
                rental_id=rental.id,
                owner_id=rental.owner_id,
                gross_amount=split.gross_amount,
                platform_fee=split.platform_fee,
                amount=split.owner_amount + deposit_claim,
                deposit_claim_amount=deposit_claim,
                currency=rental.currency,
                destination=destination,
                transfer_reference=result.transfer_id,
                status=PayoutStatus.COMPLETED.value,
            )
            db.add(payout)
            await db.flush()

            await self.audit.record(
                db,
                actor,
                "rental.settle",
                "rental",
                rental.id,
                old_values={"status": RentalStatus.COMPLETED_PENDING_PAYOUT.value},
                new_values={
                    "status": rental.status,
                    "payout_id": payout.id,
                    "amount": payout.amount,
                    "platform_fee": split.platform_fee,
                    "deposit_claim_amount": deposit_claim,
                    "deposit_status": rental.deposit_status,
                    "transfer_reference": result.transfer_id,
                },
            )
            await self.notifier.notify(
                db,
                rental.owner_id,
                NotificationType.PAYOUT_SENT,
                "Payout sent",
                f"{format_amount(payout.amount, rental.currency)} for \"{rental.item_title}\" "
                "is on its way to your account.",
                {"rental_id": rental.id, "payout_id": payout.id},
            )
            await self.notifier.notify(
                db,
                rental.renter_id,
                NotificationType.RENTAL_COMPLETED,
                "Rental completed",
                f"Your rental of \"{rental.item_title}\" is complete.",
                {"rental_id": rental.id},
            )
            logger.info(f"Rental {rental.id} settled: payout {payout.id} of {payout.amount}")
            return SettlementOutcome(
                rental_id=rental.id,
                status=rental.status,
                settled=True,
                payout=payout,
            )

    async def _already_settled(self, db: AsyncSession, rental: Rental) -> SettlementOutcome:
        return SettlementOutcome(
            rental_id=rental.id,
            status=rental.status,
            settled=True,
            already_settled=True,
            payout=await self.get_payout(db, rental.id),
        )

    async def release_freeze(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
    ) -> Rental:
        """Clear the payout freeze once every dispute on the rental is closed out.

        Raises:
            InvalidActor: If the caller is not an admin
            InvalidSourceState: If the rental is not awaiting payout
            PayoutFrozen: If a dispute on the rental is still open
        """
        async with self.audit.attempt(actor, "rental.release_freeze", "rental", rental_id):
            if not actor.is_admin:
                raise InvalidActor("Only admins can release a payout freeze")
            rental = await load_rental(db, rental_id)
            if rental.status != RentalStatus.COMPLETED_PENDING_PAYOUT:
                raise InvalidSourceState("Rental", rental.status, "release the payout freeze of")
            if not rental.payout_frozen:
                return rental

            open_disputes = await self.count_open_disputes(db, rental.id)
            if open_disputes:
                raise PayoutFrozen(f"Rental has {open_disputes} unresolved dispute(s)")

            await self._unfreeze(db, rental, actor)
            return rental

    async def release_freeze_if_clear(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
    ) -> bool:
        """Clear the freeze when no dispute is open and no refund is outstanding.

        Used by the automatic release policy after a dispute resolves.
        """
        await db.flush()
        rental = await load_rental(db, rental_id)
        if rental.status != RentalStatus.COMPLETED_PENDING_PAYOUT or not rental.payout_frozen:
            return False
        if await self.count_open_disputes(db, rental.id):
            return False
        pending_refunds = await db.execute(
            select(Refund.id).where(
                Refund.rental_id == rental.id,
                Refund.status.in_([RefundStatus.PENDING.value, RefundStatus.PROCESSING.value]),
            )
        )
        if pending_refunds.first() is not None:
            logger.info(f"Freeze on rental {rental.id} kept: refund still pending")
            return False
        return await self._unfreeze(db, rental, actor)

    async def _unfreeze(self, db: AsyncSession, rental: Rental, actor: Actor) -> bool:
        won = await compare_and_set(
            db,
            rental,
            RentalStatus.COMPLETED_PENDING_PAYOUT.value,
            {"payout_frozen": False},
        )
        if not won:
            raise ConcurrentUpdate("Rental", str(rental.id))
        await self.audit.record(
            db,
            actor,
            "rental.release_freeze",
            "rental",
            rental.id,
            old_values={"payout_frozen": True},
            new_values={"payout_frozen": False},
        )
        await self.notifier.notify(
            db,
            rental.owner_id,
            NotificationType.DISPUTE_UPDATED,
            "Payout released",
            f"The payout hold on \"{rental.item_title}\" has been lifted.",
            {"rental_id": rental.id},
        )
        logger.info(f"Payout freeze released on rental {rental.id}")
        return True

    async def count_open_disputes(self, db: AsyncSession, rental_id: UUID) -> int:
        result = await db.execute(
            select(Dispute.id).where(
                Dispute.rental_id == rental_id,
                Dispute.status.not_in([s.value for s in DISPUTE_TERMINAL]),
            )
        )
        return len(result.all())

    async def list_settleable_ids(
        self,
        db: AsyncSession,
        now: datetime | None = None,
        limit: int = 200,
    ) -> list[UUID]:
        """Rentals whose hold has elapsed and that are not frozen."""
        now = ensure_utc(now or utcnow())
        result = await db.execute(
            select(Rental.id)
            .where(
                Rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT.value,
                Rental.payout_frozen.is_(False),
                Rental.payout_eligible_at <= now,
            )
            .order_by(Rental.payout_eligible_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_payout(self, db: AsyncSession, rental_id: UUID) -> Payout | None:
        result = await db.execute(select(Payout).where(Payout.rental_id == rental_id))
        return result.scalar_one_or_none()

    async def owner_earnings(self, db: AsyncSession, owner_id: UUID) -> OwnerEarnings:
        """Settled and upcoming payouts for an owner."""
        earnings = OwnerEarnings(owner_id=owner_id, currency=self.settings.currency)

        result = await db.execute(
            select(Payout).where(Payout.owner_id == owner_id).order_by(Payout.created_at.desc())
        )
        earnings.history = list(result.scalars().all())
        for payout in earnings.history:
            earnings.total_earnings += payout.amount
            earnings.platform_fees += payout.platform_fee
        earnings.completed_payouts = len(earnings.history)

        result = await db.execute(
            select(Rental).where(
                Rental.owner_id == owner_id,
                Rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT.value,
            )
        )
        for rental in result.scalars().all():
            share = split_payout(rental.total_price, self.settings.platform_fee_percent).owner_amount
            if rental.payout_frozen:
                earnings.frozen_amount += share
            else:
                earnings.pending_amount += share
        return earnings
