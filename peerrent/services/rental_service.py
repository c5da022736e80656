"""Rental lifecycle service.

Every transition follows the same order:
1. the caller must be the party the action belongs to
2. the rental must be in the action's source (or already in its target) state
3. the time gate, if any, must hold
4. a rental already in the target state is returned unchanged
5. a conditional write moves it from source to target

Rejections raise before anything is written.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.config import Settings, settings as default_settings
from peerrent.core.exceptions import (
    CancellationWindowClosed,
    ConcurrentUpdate,
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    RecordNotFound,
    RentalStillInProgress,
    ValidationError,
)
from peerrent.core.idempotency import charge_key, deposit_hold_key
from peerrent.core.security import Actor
from peerrent.domain.cancellation_policy import RefundQuote, calculate_refund, full_refund_rules
from peerrent.utils.money import format_amount
from peerrent.domain.rental_state import (
    HANDOFF_STAGE_STATUSES,
    DepositStatus,
    HandoffStage,
    PaymentStatus,
    RentalAction,
    RentalStatus,
    edge_for,
)
from peerrent.domain.time_gate import (
    ensure_utc,
    hours_until,
    is_at_least_hours_before,
    is_at_or_past,
    utcnow,
)
from peerrent.gateways.base import PaymentGateway
from peerrent.models.refund import Refund
from peerrent.models.rental import Rental
from peerrent.services.audit_service import AuditService
from peerrent.services.notification_service import NotificationService, NotificationType
from peerrent.services.refund_service import RefundService
from peerrent.services.settlement_service import SettlementOutcome, SettlementService
from peerrent.utils.concurrency import compare_and_set, load_rental, reload

logger = logging.getLogger(__name__)

OWNER = "owner"
RENTER = "renter"

# Which party may trigger each action
ACTION_ROLES: dict[RentalAction, str] = {
    RentalAction.APPROVE: OWNER,
    RentalAction.DECLINE: OWNER,
    RentalAction.PAY: RENTER,
    RentalAction.CANCEL: RENTER,
    RentalAction.INITIATE_COMPLETION: OWNER,
    RentalAction.CONFIRM_RETURN: RENTER,
}


@dataclass
class CancellationOutcome:
    rental: Rental
    refund: Refund | None
    quote: RefundQuote | None = None


class RentalService:
    """Owns rental records and their status transitions.

    Collaborators are injected; instances hold no per-rental state and can
    be created per request.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        settings: Settings | None = None,
        audit: AuditService | None = None,
        notifier: NotificationService | None = None,
        refunds: RefundService | None = None,
        settlement: SettlementService | None = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings or default_settings
        self.audit = audit or AuditService()
        self.notifier = notifier or NotificationService()
        self.refunds = refunds or RefundService(gateway, self.audit, self.notifier)
        self.settlement = settlement or SettlementService(
            gateway, self.settings, self.audit, self.notifier
        )

    # ==================== CREATION & QUERIES ====================

    async def create_rental(
        self,
        db: AsyncSession,
        actor: Actor,
        item_id: UUID,
        item_title: str,
        owner_id: UUID,
        owner_name: str,
        start_date: datetime,
        end_date: datetime,
        total_price: int,
        security_deposit: int = 0,
        insurance_tier: str | None = None,
        insurance_premium: int = 0,
        insurance_coverage_max: int = 0,
        owner_payout_account: str | None = None,
        now: datetime | None = None,
    ) -> Rental:
        """Request a booking; the caller becomes the renter."""
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "rental.create", "rental", None):
            start_date = ensure_utc(start_date)
            end_date = ensure_utc(end_date)
            if actor.id == owner_id:
                raise InvalidActor("Owners cannot rent their own items")
            if end_date <= start_date:
                raise ValidationError("Rental must end after it starts")
            if total_price <= 0:
                raise ValidationError("Total price must be positive")
            if security_deposit < 0 or insurance_premium < 0:
                raise ValidationError("Deposit and insurance premium cannot be negative")

            rental = Rental(
                item_id=item_id,
                item_title=item_title,
                owner_id=owner_id,
                owner_name=owner_name,
                renter_id=actor.id,
                renter_name=actor.name,
                start_date=start_date,
                end_date=end_date,
                total_price=total_price,
                currency=self.settings.currency,
                security_deposit=security_deposit,
                deposit_status=(
                    DepositStatus.PENDING.value if security_deposit else DepositStatus.NONE.value
                ),
                insurance_tier=insurance_tier,
                insurance_premium=insurance_premium,
                insurance_coverage_max=insurance_coverage_max,
                owner_payout_account=owner_payout_account,
                status=RentalStatus.PENDING.value,
                payment_status=PaymentStatus.UNPAID.value,
                created_at=now,
            )
            db.add(rental)
            await db.flush()

            await self.audit.record(
                db, actor, "rental.create", "rental", rental.id,
                new_values={"status": rental.status, "total_price": total_price},
            )
            await self.notifier.notify(
                db,
                owner_id,
                NotificationType.RENTAL_REQUESTED,
                "New rental request",
                f"{actor.name} wants to rent \"{item_title}\".",
                {"rental_id": rental.id},
            )
            return rental

    async def get_rental(self, db: AsyncSession, rental_id: UUID, actor: Actor) -> Rental:
        """Fetch a rental visible to the caller."""
        rental = await load_rental(db, rental_id)
        if not actor.is_admin and rental.party_role(actor.id) is None:
            raise RecordNotFound("Rental", str(rental_id))
        return rental

    async def list_owner_rentals(
        self, db: AsyncSession, owner_id: UUID, status: str | None = None
    ) -> list[Rental]:
        query = select(Rental).where(Rental.owner_id == owner_id)
        if status:
            query = query.where(Rental.status == status)
        result = await db.execute(query.order_by(Rental.created_at.desc()))
        return list(result.scalars().all())

    async def list_renter_rentals(
        self, db: AsyncSession, renter_id: UUID, status: str | None = None
    ) -> list[Rental]:
        query = select(Rental).where(Rental.renter_id == renter_id)
        if status:
            query = query.where(Rental.status == status)
        result = await db.execute(query.order_by(Rental.created_at.desc()))
        return list(result.scalars().all())

    async def refund_quote(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        now: datetime | None = None,
    ) -> RefundQuote:
        """What cancelling right now would refund. No side effects."""
        now = ensure_utc(now or utcnow())
        rental = await self.get_rental(db, rental_id, actor)
        return calculate_refund(
            rental.total_price,
            rental.start_date,
            now,
            full_refund_rules(self.settings.cancellation_cutoff_hours),
        )

    # ==================== TRANSITION HELPERS ====================

    def _check_actor(self, rental: Rental, actor: Actor, action: RentalAction) -> None:
        required = ACTION_ROLES[action]
        if rental.party_role(actor.id) != required:
            raise InvalidActor(f"Only the {required} can {action.value.replace('_', ' ')} this rental")

    def _check_source(self, rental: Rental, action: RentalAction) -> bool:
        """True if the action was already applied; raises if it cannot apply."""
        source, target = edge_for(action)
        if rental.status == target:
            return True
        if rental.status != source:
            raise InvalidSourceState("Rental", rental.status, action.value.replace("_", " "))
        return False

    async def _apply(
        self,
        db: AsyncSession,
        rental: Rental,
        action: RentalAction,
        values: dict,
        *conditions,
    ) -> bool:
        """Conditionally move ``rental`` along ``action``'s edge.

        Returns False if a concurrent caller applied the same transition
        first; raises if the rental moved anywhere else.
        """
        source, target = edge_for(action)
        won = await compare_and_set(
            db, rental, source.value, {"status": target.value, **values}, *conditions
        )
        if won:
            return True
        await reload(db, rental)
        if rental.status == target:
            logger.info(f"Rental {rental.id} {action.value} already applied by a concurrent caller")
            return False
        if rental.status != source:
            raise InvalidSourceState("Rental", rental.status, action.value.replace("_", " "))
        raise ConcurrentUpdate("Rental", str(rental.id))

    async def _record(
        self,
        db: AsyncSession,
        actor: Actor,
        rental: Rental,
        action: RentalAction,
        **extra,
    ) -> None:
        source, target = edge_for(action)
        await self.audit.record(
            db,
            actor,
            f"rental.{action.value}",
            "rental",
            rental.id,
            old_values={"status": source.value},
            new_values={"status": target.value, "version": rental.version, **extra},
        )

    # ==================== OWNER DECISION ====================

    async def approve(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        payout_account: str | None = None,
        now: datetime | None = None,
    ) -> Rental:
        """Owner accepts the request; the renter is asked to pay."""
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "rental.approve", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            self._check_actor(rental, actor, RentalAction.APPROVE)
            if self._check_source(rental, RentalAction.APPROVE):
                return rental

            values: dict = {"approved_at": now}
            if payout_account:
                values["owner_payout_account"] = payout_account
            if not await self._apply(db, rental, RentalAction.APPROVE, values):
                return rental

            await self._record(db, actor, rental, RentalAction.APPROVE)
            await self.notifier.notify(
                db,
                rental.renter_id,
                NotificationType.RENTAL_APPROVED,
                "Rental approved",
                f"{rental.owner_name} approved your request for \"{rental.item_title}\". "
                "Complete payment to confirm.",
                {"rental_id": rental.id},
            )
            return rental

    async def decline(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Rental:
        """Owner turns the request down. Nothing was charged, so nothing is refunded."""
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "rental.decline", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            self._check_actor(rental, actor, RentalAction.DECLINE)
            if self._check_source(rental, RentalAction.DECLINE):
                return rental

            if not await self._apply(db, rental, RentalAction.DECLINE, {"declined_at": now}):
                return rental

            await self._record(db, actor, rental, RentalAction.DECLINE, reason=reason)
            body = f"Your request for \"{rental.item_title}\" was declined."
            if reason:
                body = f"{body} Reason: {reason}"
            await self.notifier.notify(
                db,
                rental.renter_id,
                NotificationType.RENTAL_DECLINED,
                "Rental declined",
                body,
                {"rental_id": rental.id},
            )
            return rental

    # ==================== PAYMENT ====================

    async def pay(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        payment_method: str | None = None,
        now: datetime | None = None,
    ) -> Rental:
        """Renter pays; the rental becomes active.

        The rental is claimed before the processor is called, so a failed
        charge rolls the claim back and leaves it approved and unpaid. A
        security deposit is authorized on the card but not captured.
        """
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "rental.pay", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            self._check_actor(rental, actor, RentalAction.PAY)
            if self._check_source(rental, RentalAction.PAY):
                return rental
            if rental.payment_status != PaymentStatus.UNPAID:
                raise InvalidSourceState("Rental", rental.status, detail="Rental is already paid")

            if not await self._apply(
                db,
                rental,
                RentalAction.PAY,
                {"payment_status": PaymentStatus.PAID.value, "paid_at": now},
                Rental.payment_status == PaymentStatus.UNPAID.value,
            ):
                return rental

            charge = await self.gateway.charge(
                payer_id=str(rental.renter_id),
                amount=rental.total_price,
                currency=rental.currency,
                idempotency_key=charge_key(rental.id),
                description=f"Rental of {rental.item_title}",
                payment_method=payment_method,
                metadata={"rental_id": str(rental.id)},
            )
            if not charge.success:
                raise ExternalProcessorFailure("charge", charge.error_message)

            values: dict = {"payment_reference": charge.transaction_id}
            if rental.security_deposit > 0:
                hold = await self.gateway.hold(
                    payer_id=str(rental.renter_id),
                    amount=rental.security_deposit,
                    currency=rental.currency,
                    idempotency_key=deposit_hold_key(rental.id),
                    description=f"Security deposit for {rental.item_title}",
                    payment_method=payment_method,
                    metadata={"rental_id": str(rental.id), "kind": "security_deposit"},
                )
                if not hold.success:
                    raise ExternalProcessorFailure("deposit hold", hold.error_message)
                values["deposit_id"] = hold.transaction_id
                values["deposit_status"] = DepositStatus.HELD.value

            if not await compare_and_set(db, rental, RentalStatus.ACTIVE.value, values):
                raise ConcurrentUpdate("Rental", str(rental.id))

            await self._record(
                db, actor, rental, RentalAction.PAY,
                payment_reference=charge.transaction_id,
                amount=rental.total_price,
            )
            await self.notifier.notify(
                db,
                rental.owner_id,
                NotificationType.RENTAL_PAID,
                "Payment received",
                f"{rental.renter_name} paid {format_amount(rental.total_price, rental.currency)} "
                f"for \"{rental.item_title}\".",
                {"rental_id": rental.id},
            )
            return rental

    # ==================== CANCELLATION ====================

    async def cancel(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> CancellationOutcome:
        """Renter cancels an approved rental at least the cutoff before it starts.

        Raises:
            CancellationWindowClosed: Inside the cutoff, whether or not the
                rental was already cancelled
        """
        now = ensure_utc(now or utcnow())
        cutoff = self.settings.cancellation_cutoff_hours
        async with self.audit.attempt(actor, "rental.cancel", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            self._check_actor(rental, actor, RentalAction.CANCEL)
            source, target = edge_for(RentalAction.CANCEL)
            if rental.status not in (source, target):
                raise InvalidSourceState("Rental", rental.status, "cancel")
            if not is_at_least_hours_before(now, rental.start_date, cutoff):
                raise CancellationWindowClosed(cutoff, hours_until(rental.start_date, now))
            if rental.status == target:
                refunds = await self.refunds.list_rental_refunds(db, rental.id)
                return CancellationOutcome(rental=rental, refund=refunds[0] if refunds else None)

            quote = calculate_refund(rental.total_price, rental.start_date, now, full_refund_rules(cutoff))
            if not await self._apply(db, rental, RentalAction.CANCEL, {"cancelled_at": now}):
                refunds = await self.refunds.list_rental_refunds(db, rental.id)
                return CancellationOutcome(rental=rental, refund=refunds[0] if refunds else None)

            refund = None
            if quote.amount > 0:
                refund_reason = f"Rental cancelled {quote.hours_until_start:.0f}h before start"
                if reason:
                    refund_reason = f"{refund_reason}: {reason}"
                refund = await self.refunds.create_refund(
                    db, rental, quote.amount, refund_reason, actor
                )

            await self._record(
                db, actor, rental, RentalAction.CANCEL,
                refund_amount=quote.amount,
                refund_percentage=str(quote.percentage),
            )
            await self.notifier.notify(
                db,
                rental.owner_id,
                NotificationType.RENTAL_CANCELLED,
                "Rental cancelled",
                f"{rental.renter_name} cancelled the rental of \"{rental.item_title}\".",
                {"rental_id": rental.id},
            )
            await self.notifier.notify(
                db,
                rental.renter_id,
                NotificationType.RENTAL_CANCELLED,
                "Cancellation confirmed",
                f"Your rental was cancelled. Refund: {format_amount(quote.amount, rental.currency)} "
                f"({quote.percentage}%).",
                {"rental_id": rental.id},
            )
            return CancellationOutcome(rental=rental, refund=refund, quote=quote)

    # ==================== HANDOFF & RETURN ====================

    async def record_handoff_photo(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        stage: HandoffStage,
        photo_url: str,
    ) -> Rental:
        """Store the caller's pickup or return photo and tell the other party."""
        stage = HandoffStage(stage)
        async with self.audit.attempt(actor, f"rental.{stage.value}_photo", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            role = rental.party_role(actor.id)
            if role is None:
                raise InvalidActor("Only the owner or renter can add handoff photos")
            if rental.status not in HANDOFF_STAGE_STATUSES[stage]:
                raise InvalidSourceState(
                    "Rental", rental.status, f"record a {stage.value} photo for"
                )

            column = f"{stage.value}_photo_{role}"
            if not await compare_and_set(db, rental, rental.status, {column: photo_url}):
                raise ConcurrentUpdate("Rental", str(rental.id))

            await self.audit.record(
                db, actor, f"rental.{stage.value}_photo", "rental", rental.id,
                new_values={column: photo_url},
            )
            other = rental.renter_id if role == OWNER else rental.owner_id
            await self.notifier.notify(
                db,
                other,
                NotificationType.HANDOFF_PHOTO,
                f"{stage.value.capitalize()} photo added",
                f"{actor.name} added a {stage.value} photo for \"{rental.item_title}\".",
                {"rental_id": rental.id, "stage": stage.value},
            )
            return rental

    async def initiate_completion(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        now: datetime | None = None,
    ) -> Rental:
        """Owner marks the rental period over. Only legal once the end date has passed."""
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "rental.initiate_completion", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            self._check_actor(rental, actor, RentalAction.INITIATE_COMPLETION)
            source, target = edge_for(RentalAction.INITIATE_COMPLETION)
            if rental.status not in (source, target):
                raise InvalidSourceState("Rental", rental.status, "complete")
            if not is_at_or_past(now, rental.end_date):
                raise RentalStillInProgress(hours_until(rental.end_date, now))
            if rental.status == target:
                return rental

            if not await self._apply(
                db, rental, RentalAction.INITIATE_COMPLETION, {"completion_requested_at": now}
            ):
                return rental

            await self._record(db, actor, rental, RentalAction.INITIATE_COMPLETION)
            await self.notifier.notify(
                db,
                rental.renter_id,
                NotificationType.COMPLETION_REQUESTED,
                "Confirm your return",
                f"{rental.owner_name} marked \"{rental.item_title}\" as returned. "
                "Please confirm the return.",
                {"rental_id": rental.id},
            )
            return rental

    async def confirm_return(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        now: datetime | None = None,
    ) -> Rental:
        """Renter confirms the item is back; starts the payout hold.

        ``payout_eligible_at`` is written only here and only once.
        """
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "rental.confirm_return", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            self._check_actor(rental, actor, RentalAction.CONFIRM_RETURN)
            if self._check_source(rental, RentalAction.CONFIRM_RETURN):
                return rental

            eligible_at = now + timedelta(hours=self.settings.payout_hold_hours)
            if not await self._apply(
                db,
                rental,
                RentalAction.CONFIRM_RETURN,
                {
                    "renter_confirmed_return": True,
                    "return_confirmed_at": now,
                    "payout_eligible_at": eligible_at,
                },
                Rental.payout_eligible_at.is_(None),
            ):
                return rental

            await self._record(
                db, actor, rental, RentalAction.CONFIRM_RETURN,
                payout_eligible_at=eligible_at.isoformat(),
            )
            await self.notifier.notify(
                db,
                rental.owner_id,
                NotificationType.RETURN_CONFIRMED,
                "Return confirmed",
                f"{rental.renter_name} confirmed the return of \"{rental.item_title}\". "
                f"Your payout will be released in {self.settings.payout_hold_hours} hours.",
                {"rental_id": rental.id},
            )
            return rental

    # ==================== PAYOUT ====================

    async def process_payout_if_eligible(
        self,
        db: AsyncSession,
        rental_id: UUID,
        actor: Actor,
        now: datetime | None = None,
    ) -> SettlementOutcome:
        """Delegate to the settlement coordinator."""
        return await self.settlement.check_and_settle(db, rental_id, actor, now)
