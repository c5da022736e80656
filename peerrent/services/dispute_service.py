"""Dispute resolution service.

A dispute lives beside its rental and shares exactly one thing with it: the
payout freeze. Filing a dispute against a rental that is waiting for payout
sets the freeze in the same transaction as the dispute insert.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from peerrent.config import Settings, settings as default_settings
from peerrent.core.exceptions import (
    ConcurrentUpdate,
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    RecordNotFound,
    ValidationError,
)
from peerrent.core.idempotency import deposit_capture_key
from peerrent.core.security import Actor
from peerrent.domain.dispute_state import (
    ADMIN_RESOLVED_BY,
    ADMIN_TARGET_STATUSES,
    DISPUTE_TYPE_LABELS,
    RESOLUTION_TYPE_LABELS,
    ActivityType,
    DisputeStatus,
    DisputeType,
    ProposalStatus,
    ReporterRole,
    ResolutionType,
    ResolvedBy,
    assert_dispute_transition,
    can_escalate,
    describe_proposal,
    is_terminal,
)
from peerrent.domain.rental_state import DepositStatus, RentalStatus
from peerrent.domain.time_gate import ensure_utc, utcnow
from peerrent.gateways.base import PaymentGateway
from peerrent.models.dispute import Dispute, DisputeActivity, ResolutionProposal
from peerrent.models.refund import Refund
from peerrent.models.rental import Rental
from peerrent.services.audit_service import AuditService
from peerrent.services.notification_service import NotificationService, NotificationType
from peerrent.services.refund_service import RefundService
from peerrent.services.settlement_service import SettlementService
from peerrent.utils.concurrency import compare_and_set, load_rental
from peerrent.utils.money import format_amount

logger = logging.getLogger(__name__)

REFUND_RESOLUTIONS = frozenset({ResolutionType.FULL_REFUND, ResolutionType.PARTIAL_REFUND})
DEPOSIT_RESOLUTIONS = frozenset({ResolutionType.REPAIR_COST, ResolutionType.REPLACEMENT})


class DisputeService:
    """Owns disputes, their activity log and resolution proposals."""

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

    # ==================== HELPERS ====================

    async def _get_dispute(self, db: AsyncSession, dispute_id: UUID) -> Dispute:
        result = await db.execute(
            select(Dispute)
            .where(Dispute.id == dispute_id)
            .execution_options(populate_existing=True)
        )
        dispute = result.scalar_one_or_none()
        if dispute is None:
            raise RecordNotFound("Dispute", str(dispute_id))
        return dispute

    async def _flush(self, db: AsyncSession, dispute: Dispute) -> None:
        """Flush pending changes; a version mismatch means another caller won.

        The failed flush rolls the session back and expires every instance,
        so the id is read up front.
        """
        dispute_id = dispute.id
        try:
            await db.flush()
        except StaleDataError as e:
            raise ConcurrentUpdate("Dispute", str(dispute_id)) from e

    def _require_party(self, dispute: Dispute, actor: Actor) -> None:
        if not dispute.involves(actor.id):
            raise InvalidActor("Only the parties to this dispute can do that")

    def _require_admin(self, actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise InvalidActor(f"Only admins can {action}")

    def _add_activity(
        self,
        dispute: Dispute,
        activity_type: ActivityType,
        actor: Actor,
        content: str,
        now: datetime,
        photos: list[str] | None = None,
    ) -> DisputeActivity:
        activity = DisputeActivity(
            sequence=len(dispute.activities) + 1,
            activity_type=activity_type.value,
            actor_id=actor.id,
            actor_name=actor.name,
            content=content,
            photos=photos or None,
            created_at=now,
        )
        dispute.activities.append(activity)
        dispute.updated_at = now
        return activity

    def _expire_pending_proposals(self, dispute: Dispute, keep: ResolutionProposal | None = None) -> int:
        expired = 0
        for proposal in dispute.proposals:
            if proposal is not keep and proposal.status == ProposalStatus.PENDING:
                proposal.status = ProposalStatus.EXPIRED.value
                expired += 1
        return expired

    async def _freeze_payout(self, db: AsyncSession, rental: Rental) -> bool:
        """Freeze the payout if the rental is still waiting for it.

        Conditioned on status alone: any concurrent write that keeps the
        rental in completed_pending_payout must not lose the freeze.
        """
        result = await db.execute(
            update(Rental)
            .where(
                Rental.id == rental.id,
                Rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT.value,
            )
            .values(payout_frozen=True, version=Rental.version + 1)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(rental)
        return result.rowcount == 1

    async def _maybe_release_freeze(self, db: AsyncSession, dispute: Dispute, actor: Actor) -> bool:
        if not self.settings.release_freeze_on_dispute_resolution:
            return False
        return await self.settlement.release_freeze_if_clear(db, dispute.rental_id, actor)

    async def _notify_party(
        self,
        db: AsyncSession,
        dispute: Dispute,
        recipient_id: UUID,
        event_type: str,
        title: str,
        body: str,
    ) -> None:
        await self.notifier.notify(
            db,
            recipient_id,
            event_type,
            title,
            body,
            {"dispute_id": dispute.id, "rental_id": dispute.rental_id},
        )

    async def _notify_both(
        self, db: AsyncSession, dispute: Dispute, event_type: str, title: str, body: str
    ) -> None:
        for recipient in (dispute.reporter_id, dispute.accused_id):
            await self._notify_party(db, dispute, recipient, event_type, title, body)

    # ==================== CREATION ====================

    async def create_dispute(
        self,
        db: AsyncSession,
        actor: Actor,
        rental_id: UUID,
        dispute_type: DisputeType,
        description: str,
        photos: list[str] | None = None,
        estimated_cost: int | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """File a dispute against the other party of a rental.

        Args:
            actor: Reporter; must be the rental's owner or renter
            rental_id: Rental the dispute is about
            dispute_type: Classification of the problem
            description: What went wrong
            photos: Evidence photo URLs
            estimated_cost: Claimed cost in minor units

        Returns:
            The new dispute, in awaiting_response

        Raises:
            InvalidActor: If the caller is not a party to the rental
        """
        now = ensure_utc(now or utcnow())
        dispute_type = DisputeType(dispute_type)
        async with self.audit.attempt(actor, "dispute.create", "rental", rental_id):
            rental = await load_rental(db, rental_id)
            role = rental.party_role(actor.id)
            if role is None:
                raise InvalidActor("Only the owner or renter can file a dispute")
            if not description or not description.strip():
                raise ValidationError("A dispute needs a description")
            if estimated_cost is not None and estimated_cost < 0:
                raise ValidationError("Estimated cost cannot be negative")

            if role == ReporterRole.OWNER:
                accused_id, accused_name = rental.renter_id, rental.renter_name
            else:
                accused_id, accused_name = rental.owner_id, rental.owner_name

            dispute = Dispute(
                rental_id=rental.id,
                item_id=rental.item_id,
                item_title=rental.item_title,
                reporter_id=actor.id,
                reporter_name=actor.name,
                reporter_role=role,
                accused_id=accused_id,
                accused_name=accused_name,
                dispute_type=dispute_type.value,
                description=description,
                photos=photos or [],
                estimated_cost=estimated_cost,
                status=DisputeStatus.AWAITING_RESPONSE.value,
                created_at=now,
                updated_at=now,
                activities=[],
                proposals=[],
            )
            db.add(dispute)
            self._add_activity(
                dispute,
                ActivityType.CREATED,
                actor,
                f"{DISPUTE_TYPE_LABELS[dispute_type]}: {description}",
                now,
                photos,
            )

            frozen = False
            if rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT:
                frozen = await self._freeze_payout(db, rental)
            await self._flush(db, dispute)

            await self.audit.record(
                db,
                actor,
                "dispute.create",
                "dispute",
                dispute.id,
                new_values={
                    "rental_id": rental.id,
                    "dispute_type": dispute_type.value,
                    "payout_frozen": frozen,
                },
            )
            if frozen:
                logger.info(f"Payout for rental {rental.id} frozen by dispute {dispute.id}")

            await self._notify_party(
                db,
                dispute,
                accused_id,
                NotificationType.DISPUTE_CREATED,
                "Dispute filed",
                f"{actor.name} filed a dispute about \"{rental.item_title}\". Please respond.",
            )
            await self._notify_party(
                db,
                dispute,
                actor.id,
                NotificationType.DISPUTE_CREATED,
                "Dispute submitted",
                f"Your dispute about \"{rental.item_title}\" was submitted.",
            )
            return dispute

    # ==================== PARTY ACTIONS ====================

    async def submit_counter_response(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        actor: Actor,
        content: str,
        photos: list[str] | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """Accused party answers the dispute; it moves to investigating.

        Accepted from any open status. Proposals still pending are expired,
        since the answer reopens the investigation.
        """
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "dispute.respond", "dispute", dispute_id):
            dispute = await self._get_dispute(db, dispute_id)
            if actor.id != dispute.accused_id:
                raise InvalidActor("Only the accused party can respond to this dispute")
            if is_terminal(dispute.status):
                raise InvalidSourceState("Dispute", dispute.status, "respond to")
            if not content or not content.strip():
                raise ValidationError("Response cannot be empty")

            previous = dispute.status
            assert_dispute_transition(previous, DisputeStatus.INVESTIGATING)
            dispute.counter_response = content
            dispute.counter_response_photos = photos or None
            dispute.counter_response_at = now
            self._expire_pending_proposals(dispute)
            dispute.status = DisputeStatus.INVESTIGATING.value
            self._add_activity(dispute, ActivityType.RESPONSE, actor, content, now, photos)
            await self._flush(db, dispute)

            await self.audit.record(
                db, actor, "dispute.respond", "dispute", dispute.id,
                old_values={"status": previous},
                new_values={"status": dispute.status},
            )
            await self._notify_party(
                db,
                dispute,
                dispute.reporter_id,
                NotificationType.DISPUTE_RESPONSE,
                "Dispute response",
                f"{actor.name} responded to your dispute about \"{dispute.item_title}\".",
            )
            return dispute

    async def add_message(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        actor: Actor,
        content: str,
        photos: list[str] | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "dispute.message", "dispute", dispute_id):
            dispute = await self._get_dispute(db, dispute_id)
            self._require_party(dispute, actor)
            if dispute.status == DisputeStatus.CLOSED:
                raise InvalidSourceState("Dispute", dispute.status, "message on")
            if not content or not content.strip():
                raise ValidationError("Message cannot be empty")

            self._add_activity(dispute, ActivityType.MESSAGE, actor, content, now, photos)
            await self._flush(db, dispute)

            await self._notify_party(
                db,
                dispute,
                dispute.other_party(actor.id),
                NotificationType.DISPUTE_MESSAGE,
                "New dispute message",
                f"{actor.name}: {content[:120]}",
            )
            return dispute

    async def propose_resolution(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        actor: Actor,
        resolution_type: ResolutionType,
        description: str,
        amount: int | None = None,
        now: datetime | None = None,
    ) -> ResolutionProposal:
        """Offer a settlement to the other party.

        Proposals on a resolved or closed dispute are still recorded, but
        arrive already expired and leave the dispute untouched.
        """
        now = ensure_utc(now or utcnow())
        resolution_type = ResolutionType(resolution_type)
        async with self.audit.attempt(actor, "dispute.propose", "dispute", dispute_id):
            dispute = await self._get_dispute(db, dispute_id)
            self._require_party(dispute, actor)
            if not description or not description.strip():
                raise ValidationError("A proposal needs a description")
            if amount is not None and amount < 0:
                raise ValidationError("Proposal amount cannot be negative")
            if resolution_type == ResolutionType.PARTIAL_REFUND and not amount:
                raise ValidationError("A partial refund needs an amount")

            rental = await load_rental(db, dispute.rental_id)
            if resolution_type in REFUND_RESOLUTIONS and amount and amount > rental.total_price:
                raise ValidationError(
                    f"Refund cannot exceed the rental total of "
                    f"{format_amount(rental.total_price, rental.currency)}"
                )

            terminal = is_terminal(dispute.status)
            proposal = ResolutionProposal(
                sequence=len(dispute.proposals) + 1,
                proposed_by=actor.id,
                proposed_by_name=actor.name,
                resolution_type=resolution_type.value,
                amount=amount,
                description=description,
                status=(ProposalStatus.EXPIRED if terminal else ProposalStatus.PENDING).value,
                created_at=now,
            )
            dispute.proposals.append(proposal)

            if terminal:
                await self._flush(db, dispute)
                logger.info(
                    f"Proposal {proposal.id} recorded as expired on {dispute.status} dispute {dispute.id}"
                )
                return proposal

            previous = dispute.status
            assert_dispute_transition(previous, DisputeStatus.PROPOSED_RESOLUTION)
            dispute.status = DisputeStatus.PROPOSED_RESOLUTION.value
            self._add_activity(
                dispute,
                ActivityType.RESOLUTION_PROPOSED,
                actor,
                describe_proposal(resolution_type, description, amount, rental.currency),
                now,
            )
            await self._flush(db, dispute)

            await self.audit.record(
                db, actor, "dispute.propose", "dispute", dispute.id,
                old_values={"status": previous},
                new_values={
                    "status": dispute.status,
                    "proposal_id": proposal.id,
                    "resolution_type": resolution_type.value,
                    "amount": amount,
                },
            )
            await self._notify_party(
                db,
                dispute,
                dispute.other_party(actor.id),
                NotificationType.RESOLUTION_PROPOSED,
                "Resolution proposed",
                f"{actor.name} proposed: {RESOLUTION_TYPE_LABELS[resolution_type]}.",
            )
            return proposal

    async def respond_to_proposal(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        proposal_id: UUID,
        actor: Actor,
        accept: bool,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """Accept or reject a pending proposal.

        Accepting resolves the dispute by mutual agreement and applies the
        proposal's money movement; rejecting sends it back to investigating.

        Raises:
            InvalidActor: If the caller made the proposal or is not a party
            InvalidSourceState: If the proposal is no longer pending
            ExternalProcessorFailure: If capturing a deposit claim failed (retryable)
        """
        now = ensure_utc(now or utcnow())
        action = "dispute.accept" if accept else "dispute.reject"
        async with self.audit.attempt(actor, action, "dispute", dispute_id):
            dispute = await self._get_dispute(db, dispute_id)
            proposal = next((p for p in dispute.proposals if p.id == proposal_id), None)
            if proposal is None:
                raise RecordNotFound("Proposal", str(proposal_id))
            self._require_party(dispute, actor)
            if proposal.proposed_by == actor.id:
                raise InvalidActor("You cannot respond to your own proposal")

            target = ProposalStatus.ACCEPTED if accept else ProposalStatus.REJECTED
            if proposal.status == target:
                return dispute
            if proposal.status != ProposalStatus.PENDING:
                raise InvalidSourceState("Proposal", proposal.status, "respond to")
            if is_terminal(dispute.status):
                raise InvalidSourceState("Dispute", dispute.status, "respond to a proposal on")

            previous = dispute.status
            proposal.status = target.value
            proposal.responded_by = actor.id
            proposal.responded_at = now

            if accept:
                assert_dispute_transition(previous, DisputeStatus.RESOLVED)
                self._expire_pending_proposals(dispute, keep=proposal)
                dispute.status = DisputeStatus.RESOLVED.value
                dispute.resolved_at = now
                dispute.resolved_by = ResolvedBy.MUTUAL_AGREEMENT.value
                dispute.resolution_notes = proposal.description
                self._add_activity(
                    dispute,
                    ActivityType.RESOLUTION_ACCEPTED,
                    actor,
                    f"Accepted: {RESOLUTION_TYPE_LABELS[ResolutionType(proposal.resolution_type)]}",
                    now,
                )
                await self._apply_resolution(db, dispute, proposal, actor, now)
            else:
                assert_dispute_transition(previous, DisputeStatus.INVESTIGATING)
                proposal.rejection_reason = reason
                dispute.status = DisputeStatus.INVESTIGATING.value
                self._add_activity(
                    dispute,
                    ActivityType.RESOLUTION_REJECTED,
                    actor,
                    f"Rejected: {reason}" if reason else "Rejected",
                    now,
                )
            await self._flush(db, dispute)

            await self.audit.record(
                db, actor, action, "dispute", dispute.id,
                old_values={"status": previous},
                new_values={
                    "status": dispute.status,
                    "proposal_id": proposal.id,
                    "resolved_by": dispute.resolved_by,
                },
            )
            if accept:
                await self._maybe_release_freeze(db, dispute, actor)
                await self._notify_party(
                    db,
                    dispute,
                    proposal.proposed_by,
                    NotificationType.RESOLUTION_ACCEPTED,
                    "Resolution accepted",
                    f"{actor.name} accepted your proposal. The dispute is resolved.",
                )
            else:
                await self._notify_party(
                    db,
                    dispute,
                    proposal.proposed_by,
                    NotificationType.RESOLUTION_REJECTED,
                    "Resolution rejected",
                    f"{actor.name} rejected your proposal.",
                )
            return dispute

    async def _apply_resolution(
        self,
        db: AsyncSession,
        dispute: Dispute,
        proposal: ResolutionProposal,
        actor: Actor,
        now: datetime,
    ) -> Refund | None:
        """Move the money an accepted proposal calls for."""
        resolution_type = ResolutionType(proposal.resolution_type)
        if resolution_type not in REFUND_RESOLUTIONS | DEPOSIT_RESOLUTIONS:
            return None

        rental = await load_rental(db, dispute.rental_id)
        if resolution_type in DEPOSIT_RESOLUTIONS:
            await self._claim_deposit(db, rental, proposal.amount or 0)
            return None

        if resolution_type == ResolutionType.FULL_REFUND:
            await db.flush()
            amount = await self.refunds.refundable_balance(db, rental)
        else:
            amount = proposal.amount or 0
        if amount <= 0:
            return None

        refund = await self.refunds.create_refund(
            db,
            rental,
            amount,
            f"Dispute resolution: {proposal.description}",
            actor,
            dispute_id=dispute.id,
        )
        dispute.refund_amount = (dispute.refund_amount or 0) + amount
        self._add_activity(
            dispute,
            ActivityType.REFUND_ISSUED,
            actor,
            f"Refund of {format_amount(amount, rental.currency)} issued",
            now,
        )
        return refund

    async def _claim_deposit(self, db: AsyncSession, rental: Rental, amount: int) -> None:
        """Capture up to ``amount`` of the held deposit; the rest returns to the renter.

        The captured sum is paid to the owner with the rental's settlement.
        """
        if rental.deposit_status != DepositStatus.HELD or amount <= 0:
            return
        if not rental.deposit_id:
            raise ValidationError("Deposit hold has no processor reference")
        claimed = min(amount, rental.security_deposit)
        status = (
            DepositStatus.FULL_CLAIM if claimed >= rental.security_deposit else DepositStatus.PARTIAL_CLAIM
        )
        won = await compare_and_set(
            db,
            rental,
            rental.status,
            {"deposit_status": status.value, "deposit_claimed_amount": claimed},
            Rental.deposit_status == DepositStatus.HELD.value,
        )
        if not won:
            raise ConcurrentUpdate("Rental", str(rental.id))

        result = await self.gateway.capture_hold(
            hold_reference=rental.deposit_id,
            amount=claimed,
            idempotency_key=deposit_capture_key(rental.id, claimed),
        )
        if not result.success:
            raise ExternalProcessorFailure("deposit capture", result.error_message)
        logger.info(f"Deposit claim of {claimed} captured on rental {rental.id} ({status.value})")

    async def escalate(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        actor: Actor,
        reason: str,
        now: datetime | None = None,
    ) -> Dispute:
        """Hand the dispute to an admin."""
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "dispute.escalate", "dispute", dispute_id):
            dispute = await self._get_dispute(db, dispute_id)
            self._require_party(dispute, actor)
            if dispute.status == DisputeStatus.ESCALATED:
                return dispute
            allowed, error = can_escalate(dispute.status)
            if not allowed:
                raise InvalidSourceState("Dispute", dispute.status, detail=error)
            if not reason or not reason.strip():
                raise ValidationError("Escalation needs a reason")

            previous = dispute.status
            assert_dispute_transition(previous, DisputeStatus.ESCALATED)
            dispute.status = DisputeStatus.ESCALATED.value
            dispute.escalated_at = now
            dispute.escalation_reason = reason
            self._add_activity(dispute, ActivityType.ESCALATED, actor, reason, now)
            await self._flush(db, dispute)

            await self.audit.record(
                db, actor, "dispute.escalate", "dispute", dispute.id,
                old_values={"status": previous},
                new_values={"status": dispute.status, "reason": reason},
            )
            await self._notify_party(
                db,
                dispute,
                dispute.other_party(actor.id),
                NotificationType.DISPUTE_ESCALATED,
                "Dispute escalated",
                f"{actor.name} escalated the dispute about \"{dispute.item_title}\" to our team.",
            )
            return dispute

    # ==================== ADMIN ACTIONS ====================

    async def admin_update_status(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        actor: Actor,
        status: DisputeStatus,
        resolved_by: ResolvedBy | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> Dispute:
        """Set a dispute to investigating, resolved or closed.

        Raises:
            InvalidActor: If the caller is not an admin
            ValidationError: If the target status or resolver is not allowed
        """
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "dispute.admin_update", "dispute", dispute_id):
            self._require_admin(actor, "update dispute status")
            status = DisputeStatus(status)
            if status not in ADMIN_TARGET_STATUSES:
                raise ValidationError(f"Admins cannot set a dispute to '{status.value}'")
            if is_terminal(status):
                resolved_by = ResolvedBy(resolved_by or ResolvedBy.ADMIN)
                if resolved_by not in ADMIN_RESOLVED_BY:
                    raise ValidationError(f"'{resolved_by.value}' is not an admin resolution")
            dispute = await self._get_dispute(db, dispute_id)

            previous = dispute.status
            dispute.status = status.value
            if is_terminal(status):
                dispute.resolved_by = resolved_by.value
                dispute.resolved_at = dispute.resolved_at or now
                self._expire_pending_proposals(dispute)
            else:
                dispute.resolved_by = None
                dispute.resolved_at = None
            if notes:
                dispute.resolution_notes = notes

            content = f"Status changed to {status.value}"
            if notes:
                content = f"{content}: {notes}"
            self._add_activity(dispute, ActivityType.ADMIN_NOTE, actor, content, now)
            await self._flush(db, dispute)

            await self.audit.record(
                db, actor, "dispute.admin_update", "dispute", dispute.id,
                old_values={"status": previous},
                new_values={"status": dispute.status, "resolved_by": dispute.resolved_by},
            )
            if is_terminal(status):
                await self._maybe_release_freeze(db, dispute, actor)
            await self._notify_both(
                db,
                dispute,
                NotificationType.DISPUTE_UPDATED,
                "Dispute updated",
                f"The dispute about \"{dispute.item_title}\" is now {status.value.replace('_', ' ')}.",
            )
            return dispute

    async def add_admin_note(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        actor: Actor,
        note: str,
        now: datetime | None = None,
    ) -> Dispute:
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "dispute.admin_note", "dispute", dispute_id):
            self._require_admin(actor, "add admin notes")
            if not note or not note.strip():
                raise ValidationError("Note cannot be empty")
            dispute = await self._get_dispute(db, dispute_id)

            dispute.admin_notes = f"{dispute.admin_notes}\n{note}" if dispute.admin_notes else note
            self._add_activity(dispute, ActivityType.ADMIN_NOTE, actor, note, now)
            await self._flush(db, dispute)
            return dispute

    async def issue_refund(
        self,
        db: AsyncSession,
        dispute_id: UUID,
        actor: Actor,
        amount: int,
        reason: str,
        now: datetime | None = None,
    ) -> Refund:
        """Refund the renter directly and process it right away.

        Raises:
            ValidationError: If the amount exceeds what is left to refund
            ExternalProcessorFailure: If the processor call failed (retryable)
        """
        now = ensure_utc(now or utcnow())
        async with self.audit.attempt(actor, "dispute.issue_refund", "dispute", dispute_id):
            self._require_admin(actor, "issue dispute refunds")
            dispute = await self._get_dispute(db, dispute_id)
            rental = await load_rental(db, dispute.rental_id)

            refund = await self.refunds.create_refund(
                db, rental, amount, reason or "Dispute refund", actor, dispute_id=dispute.id
            )
            refund = await self.refunds.process_refund(db, refund.id, actor, now)

            dispute.refund_amount = (dispute.refund_amount or 0) + amount
            self._add_activity(
                dispute,
                ActivityType.REFUND_ISSUED,
                actor,
                f"Refund of {format_amount(amount, rental.currency)} issued: {refund.status}",
                now,
            )
            await self._flush(db, dispute)
            return refund

    # ==================== QUERIES ====================

    async def get_dispute(self, db: AsyncSession, dispute_id: UUID, actor: Actor) -> Dispute:
        """Fetch a dispute with its activity log and proposals."""
        dispute = await self._get_dispute(db, dispute_id)
        if not actor.is_admin and not dispute.involves(actor.id):
            raise RecordNotFound("Dispute", str(dispute_id))
        return dispute

    async def list_user_disputes(
        self, db: AsyncSession, user_id: UUID, status: str | None = None
    ) -> list[Dispute]:
        query = select(Dispute).where(
            or_(Dispute.reporter_id == user_id, Dispute.accused_id == user_id)
        )
        if status:
            query = query.where(Dispute.status == status)
        result = await db.execute(query.order_by(Dispute.created_at.desc()))
        return list(result.scalars().all())

    async def list_rental_disputes(
        self, db: AsyncSession, rental_id: UUID, actor: Actor
    ) -> list[Dispute]:
        rental = await load_rental(db, rental_id)
        if not actor.is_admin and rental.party_role(actor.id) is None:
            raise RecordNotFound("Rental", str(rental_id))
        result = await db.execute(
            select(Dispute).where(Dispute.rental_id == rental_id).order_by(Dispute.created_at)
        )
        return list(result.scalars().all())

    async def list_all_disputes(
        self,
        db: AsyncSession,
        actor: Actor,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Dispute]:
        self._require_admin(actor, "list all disputes")
        query = select(Dispute)
        if status:
            query = query.where(Dispute.status == status)
        result = await db.execute(
            query.order_by(Dispute.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())
