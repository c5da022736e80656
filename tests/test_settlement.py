from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import NOW
from peerrent.config import settings
from peerrent.core.exceptions import (
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    PayoutFrozen,
    ValidationError,
)
from peerrent.core.security import SYSTEM_ACTOR
from peerrent.domain.dispute_state import DisputeStatus, DisputeType, ResolutionType
from peerrent.domain.payout_state import PayoutBlock
from peerrent.domain.rental_state import DepositStatus, RentalStatus
from peerrent.models.payout import Payout
from peerrent.services.scheduler_service import SchedulerService
from peerrent.utils.concurrency import load_rental


async def test_settles_once_hold_has_elapsed(db, settlement_service, make_rental, owner, gateway):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
    )

    outcome = await settlement_service.check_and_settle(db, rental.id, owner, now=NOW)

    assert outcome.settled
    assert not outcome.already_settled
    assert outcome.status == RentalStatus.COMPLETED
    assert outcome.payout.amount == 10800
    assert outcome.payout.platform_fee == 1200
    assert outcome.payout.destination == "acct_owner_1"
    assert gateway.transfer_log == [
        {"rental_id": str(rental.id), "destination": "acct_owner_1", "amount": 10800}
    ]


async def test_settlement_is_idempotent(db, settlement_service, make_rental, gateway):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
    )

    first = await settlement_service.check_and_settle(db, rental.id, SYSTEM_ACTOR, now=NOW)
    second = await settlement_service.check_and_settle(
        db, rental.id, SYSTEM_ACTOR, now=NOW + timedelta(hours=1)
    )

    assert second.settled
    assert second.already_settled
    assert second.payout.id == first.payout.id
    assert gateway.transfer_calls == 1
    assert len(gateway.transfer_log) == 1

    payouts = (await db.execute(select(Payout))).scalars().all()
    assert len(payouts) == 1


async def test_hold_period_reports_hours_remaining(db, settlement_service, make_rental, owner, gateway):
    rental = await make_rental(status=RentalStatus.COMPLETED_PENDING_PAYOUT)

    outcome = await settlement_service.check_and_settle(db, rental.id, owner, now=NOW)
    assert not outcome.settled
    assert outcome.blocked_by == PayoutBlock.HOLD_PERIOD
    assert outcome.hours_remaining == 48

    later = await settlement_service.check_and_settle(
        db, rental.id, owner, now=NOW + timedelta(hours=47, minutes=30)
    )
    assert later.hours_remaining == 1
    assert gateway.transfer_calls == 0

    rental = await load_rental(db, rental.id)
    assert rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT


async def test_dispute_during_hold_blocks_payout(
    db, rental_service, dispute_service, settlement_service, make_rental, owner, renter, gateway
):
    rental = await make_rental(
        status=RentalStatus.PENDING_COMPLETION,
        start_date=NOW - timedelta(days=3),
        end_date=NOW - timedelta(hours=1),
    )
    await rental_service.confirm_return(db, rental.id, renter, now=NOW)

    await dispute_service.create_dispute(
        db,
        owner,
        rental.id,
        DisputeType.DAMAGE,
        "Lens cracked on return",
        now=NOW + timedelta(hours=10),
    )
    rental = await load_rental(db, rental.id)
    assert rental.payout_frozen

    outcome = await settlement_service.check_and_settle(
        db, rental.id, owner, now=NOW + timedelta(hours=48)
    )

    assert not outcome.settled
    assert outcome.blocked_by == PayoutBlock.FROZEN
    assert gateway.transfer_calls == 0
    rental = await load_rental(db, rental.id)
    assert rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT


async def test_failed_transfer_rolls_back(db, settlement_service, make_rental, owner, gateway):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
    )
    rental_id = rental.id
    gateway.fail_transfers = True

    with pytest.raises(ExternalProcessorFailure) as exc_info:
        await settlement_service.check_and_settle(db, rental_id, owner, now=NOW)
    assert exc_info.value.retryable
    await db.rollback()

    rental = await load_rental(db, rental_id)
    assert rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT
    assert await settlement_service.get_payout(db, rental_id) is None

    gateway.fail_transfers = False
    outcome = await settlement_service.check_and_settle(db, rental_id, owner, now=NOW)
    assert outcome.settled
    assert gateway.transfer_calls == 2


async def test_settlement_requires_payout_account(db, settlement_service, make_rental, owner):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
        owner_payout_account=None,
    )

    with pytest.raises(ValidationError):
        await settlement_service.check_and_settle(db, rental.id, owner, now=NOW)


async def test_only_owner_or_operators_can_settle(db, settlement_service, make_rental, renter, admin):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
    )

    with pytest.raises(InvalidActor):
        await settlement_service.check_and_settle(db, rental.id, renter, now=NOW)
    outcome = await settlement_service.check_and_settle(db, rental.id, admin, now=NOW)
    assert outcome.settled


async def test_cannot_settle_active_rental(db, settlement_service, make_rental, owner):
    rental = await make_rental(status=RentalStatus.ACTIVE)

    with pytest.raises(InvalidSourceState):
        await settlement_service.check_and_settle(db, rental.id, owner, now=NOW)


async def test_settlement_releases_held_deposit(db, settlement_service, make_rental, owner, gateway):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
        security_deposit=5000,
    )

    outcome = await settlement_service.check_and_settle(db, rental.id, owner, now=NOW)

    rental = await load_rental(db, rental.id)
    assert rental.deposit_status == DepositStatus.RELEASED
    assert [r.transaction_id for r in gateway.releases.values()] == ["manual_au_seed"]
    assert gateway.captures == {}
    assert outcome.payout.amount == 10800
    assert outcome.payout.deposit_claim_amount == 0


async def test_failed_deposit_release_rolls_back_settlement(
    db, settlement_service, make_rental, owner, gateway
):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
        security_deposit=5000,
    )
    rental_id = rental.id
    gateway.fail_deposit_releases = True

    with pytest.raises(ExternalProcessorFailure):
        await settlement_service.check_and_settle(db, rental_id, owner, now=NOW)
    await db.rollback()

    rental = await load_rental(db, rental_id)
    assert rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT
    assert rental.deposit_status == DepositStatus.HELD
    assert await settlement_service.get_payout(db, rental_id) is None

    gateway.fail_deposit_releases = False
    outcome = await settlement_service.check_and_settle(db, rental_id, owner, now=NOW)
    assert outcome.settled
    assert len(gateway.transfer_log) == 1
    assert len(gateway.releases) == 1


async def test_claimed_deposit_is_paid_to_owner(
    db, dispute_service, settlement_service, make_rental, owner, renter, admin, gateway
):
    rental = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
        security_deposit=5000,
    )
    dispute = await dispute_service.create_dispute(
        db, owner, rental.id, DisputeType.DAMAGE, "Cracked chuck", estimated_cost=2000, now=NOW
    )
    proposal = await dispute_service.propose_resolution(
        db, dispute.id, renter, ResolutionType.REPAIR_COST, "I'll cover the chuck", 2000, now=NOW
    )
    await dispute_service.respond_to_proposal(db, dispute.id, proposal.id, owner, True, now=NOW)
    await settlement_service.release_freeze(db, rental.id, admin)

    outcome = await settlement_service.check_and_settle(db, rental.id, owner, now=NOW)

    assert outcome.settled
    assert outcome.payout.amount == 12800
    assert outcome.payout.deposit_claim_amount == 2000
    assert outcome.payout.platform_fee == 1200
    assert gateway.transfer_log[0]["amount"] == 12800
    assert len(gateway.captures) == 1
    assert gateway.releases == {}
    rental = await load_rental(db, rental.id)
    assert rental.deposit_status == DepositStatus.PARTIAL_CLAIM


# ==================== FREEZE RELEASE ====================


async def test_release_freeze_refused_while_dispute_open(
    db, dispute_service, settlement_service, make_rental, owner, admin
):
    rental = await make_rental(status=RentalStatus.COMPLETED_PENDING_PAYOUT)
    dispute = await dispute_service.create_dispute(
        db, owner, rental.id, DisputeType.LATE_RETURN, "Returned two days late", now=NOW
    )

    with pytest.raises(PayoutFrozen):
        await settlement_service.release_freeze(db, rental.id, admin)

    await dispute_service.admin_update_status(
        db, dispute.id, admin, DisputeStatus.CLOSED, notes="Withdrawn", now=NOW
    )
    rental = await settlement_service.release_freeze(db, rental.id, admin)
    assert not rental.payout_frozen

    outcome = await settlement_service.check_and_settle(
        db, rental.id, owner, now=NOW + timedelta(hours=48)
    )
    assert outcome.settled


async def test_only_admin_can_release_freeze(db, settlement_service, make_rental, owner):
    rental = await make_rental(status=RentalStatus.COMPLETED_PENDING_PAYOUT, payout_frozen=True)

    with pytest.raises(InvalidActor):
        await settlement_service.release_freeze(db, rental.id, owner)


# ==================== EARNINGS ====================


async def test_owner_earnings(db, settlement_service, make_rental, owner):
    settled = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
    )
    await make_rental(status=RentalStatus.COMPLETED_PENDING_PAYOUT, total_price=5000)
    await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT, total_price=8000, payout_frozen=True
    )
    await settlement_service.check_and_settle(db, settled.id, owner, now=NOW)
    await db.flush()

    earnings = await settlement_service.owner_earnings(db, owner.id)

    assert earnings.total_earnings == 10800
    assert earnings.platform_fees == 1200
    assert earnings.completed_payouts == 1
    assert earnings.pending_amount == 4500
    assert earnings.frozen_amount == 7200


# ==================== SCHEDULER ====================


async def test_scheduler_settles_only_eligible_rentals(session_factory, make_rental, gateway):
    eligible = await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
    )
    await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=1),
        payout_frozen=True,
    )
    await make_rental(status=RentalStatus.COMPLETED_PENDING_PAYOUT)
    await make_rental(
        status=RentalStatus.COMPLETED_PENDING_PAYOUT,
        payout_eligible_at=NOW - timedelta(hours=2),
        owner_payout_account=None,
    )

    scheduler = SchedulerService(session_factory, gateway, settings)
    counts = await scheduler.settle_eligible(now=NOW)

    assert counts == {"settled": 1, "skipped": 0, "failed": 1}
    assert [t["rental_id"] for t in gateway.transfer_log] == [str(eligible.id)]

    again = await scheduler.settle_eligible(now=NOW + timedelta(minutes=10))
    assert again["settled"] == 0
    assert gateway.transfer_calls == 1
