from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from conftest import NOW
from peerrent.core.exceptions import (
    CancellationWindowClosed,
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    RecordNotFound,
    RentalStillInProgress,
    TimeGateNotSatisfied,
    ValidationError,
)
from peerrent.domain.payment_state import RefundStatus
from peerrent.domain.rental_state import DepositStatus, HandoffStage, PaymentStatus, RentalStatus
from peerrent.domain.time_gate import ensure_utc
from peerrent.models.audit import AuditLog
from peerrent.models.notification import OutboxEvent
from peerrent.models.refund import Refund
from peerrent.utils.concurrency import compare_and_set, load_rental


async def count_refunds(db, rental_id) -> int:
    result = await db.execute(select(Refund.id).where(Refund.rental_id == rental_id))
    return len(result.all())


# ==================== CREATION ====================


async def test_create_rental_starts_pending_and_notifies_owner(db, rental_service, owner, renter):
    rental = await rental_service.create_rental(
        db,
        renter,
        item_id=uuid4(),
        item_title="Camping tent",
        owner_id=owner.id,
        owner_name=owner.name,
        start_date=NOW + timedelta(days=3),
        end_date=NOW + timedelta(days=5),
        total_price=12000,
        security_deposit=5000,
        now=NOW,
    )

    assert rental.status == RentalStatus.PENDING
    assert rental.payment_status == PaymentStatus.UNPAID
    assert rental.deposit_status == DepositStatus.PENDING
    assert rental.renter_id == renter.id
    assert rental.version == 1

    await db.flush()
    events = (await db.execute(select(OutboxEvent))).scalars().all()
    assert [e.recipient_id for e in events] == [owner.id]
    assert events[0].payload["rental_id"] == str(rental.id)


async def test_owner_cannot_rent_own_item(db, rental_service, owner):
    with pytest.raises(InvalidActor):
        await rental_service.create_rental(
            db,
            owner,
            item_id=uuid4(),
            item_title="Ladder",
            owner_id=owner.id,
            owner_name=owner.name,
            start_date=NOW + timedelta(days=1),
            end_date=NOW + timedelta(days=2),
            total_price=5000,
            now=NOW,
        )


async def test_create_rental_rejects_inverted_dates(db, rental_service, owner, renter):
    with pytest.raises(ValidationError):
        await rental_service.create_rental(
            db,
            renter,
            item_id=uuid4(),
            item_title="Ladder",
            owner_id=owner.id,
            owner_name=owner.name,
            start_date=NOW + timedelta(days=2),
            end_date=NOW + timedelta(days=1),
            total_price=5000,
            now=NOW,
        )


async def test_outsider_cannot_see_rental(db, rental_service, make_rental, outsider, admin):
    rental = await make_rental()

    with pytest.raises(RecordNotFound):
        await rental_service.get_rental(db, rental.id, outsider)
    assert (await rental_service.get_rental(db, rental.id, admin)).id == rental.id


# ==================== APPROVAL ====================


async def test_approve_sets_payout_account(db, rental_service, make_rental, owner):
    rental = await make_rental(status=RentalStatus.PENDING, owner_payout_account=None)

    rental = await rental_service.approve(db, rental.id, owner, "acct_new", now=NOW)

    assert rental.status == RentalStatus.APPROVED
    assert rental.owner_payout_account == "acct_new"
    assert rental.version == 2


async def test_renter_cannot_approve(db, rental_service, make_rental, renter):
    rental = await make_rental(status=RentalStatus.PENDING)

    with pytest.raises(InvalidActor):
        await rental_service.approve(db, rental.id, renter, now=NOW)


async def test_approve_twice_is_a_no_op(db, rental_service, make_rental, owner):
    rental = await make_rental(status=RentalStatus.PENDING)

    first = await rental_service.approve(db, rental.id, owner, now=NOW)
    version = first.version
    second = await rental_service.approve(db, rental.id, owner, now=NOW + timedelta(minutes=5))

    assert second.status == RentalStatus.APPROVED
    assert second.version == version


async def test_decline_then_approve_fails(db, rental_service, make_rental, owner):
    rental = await make_rental(status=RentalStatus.PENDING)

    await rental_service.decline(db, rental.id, owner, "Item is being repaired", now=NOW)

    with pytest.raises(InvalidSourceState):
        await rental_service.approve(db, rental.id, owner, now=NOW)


# ==================== PAYMENT ====================


async def test_pay_activates_rental_and_holds_deposit(db, rental_service, make_rental, renter, gateway):
    rental = await make_rental(security_deposit=5000)

    rental = await rental_service.pay(db, rental.id, renter, "pm_card_visa", now=NOW)

    assert rental.status == RentalStatus.ACTIVE
    assert rental.payment_status == PaymentStatus.PAID
    assert rental.payment_reference.startswith("manual_ch_")
    assert rental.deposit_status == DepositStatus.HELD
    assert rental.deposit_id.startswith("manual_au_")
    assert len(gateway.charges) == 1
    assert [h.raw_response["amount"] for h in gateway.holds.values()] == [5000]
    assert gateway.captures == {}


async def test_failed_charge_leaves_rental_approved(db, rental_service, make_rental, renter, gateway):
    rental_id = (await make_rental()).id
    gateway.fail_charges = True

    with pytest.raises(ExternalProcessorFailure) as exc_info:
        await rental_service.pay(db, rental_id, renter, now=NOW)
    assert exc_info.value.retryable
    await db.rollback()

    rental = await load_rental(db, rental_id)
    assert rental.status == RentalStatus.APPROVED
    assert rental.payment_status == PaymentStatus.UNPAID
    assert rental.payment_reference is None

    gateway.fail_charges = False
    rental = await rental_service.pay(db, rental_id, renter, now=NOW)
    assert rental.status == RentalStatus.ACTIVE


# ==================== CANCELLATION ====================


async def test_cancel_30_hours_before_start_refunds_in_full(db, rental_service, make_rental, renter):
    rental = await make_rental(start_date=NOW + timedelta(hours=30), total_price=12000)

    outcome = await rental_service.cancel(db, rental.id, renter, "Plans changed", now=NOW)

    assert outcome.rental.status == RentalStatus.CANCELLED
    assert ensure_utc(outcome.rental.cancelled_at) == NOW
    assert outcome.quote.percentage == Decimal("100")
    assert outcome.refund.amount == 12000
    assert outcome.refund.status == RefundStatus.PENDING
    assert outcome.refund.user_id == renter.id
    assert "Plans changed" in outcome.refund.reason


async def test_unpaid_cancellation_refund_completes_without_processor(
    db, rental_service, refund_service, make_rental, renter, admin, gateway
):
    rental = await make_rental()
    outcome = await rental_service.cancel(db, rental.id, renter, now=NOW)
    assert outcome.refund.payment_reference is None

    refund = await refund_service.process_refund(db, outcome.refund.id, admin, now=NOW)

    assert refund.status == RefundStatus.COMPLETED
    assert refund.processor_refund_id is None
    assert gateway.refunds == {}


async def test_cancel_exactly_at_cutoff_succeeds(db, rental_service, make_rental, renter):
    rental = await make_rental(start_date=NOW + timedelta(hours=24))

    outcome = await rental_service.cancel(db, rental.id, renter, now=NOW)

    assert outcome.rental.status == RentalStatus.CANCELLED
    assert outcome.refund.amount == 12000


async def test_cancel_inside_cutoff_is_refused(db, rental_service, make_rental, renter):
    rental = await make_rental(start_date=NOW + timedelta(hours=23, minutes=59))
    version = rental.version

    with pytest.raises(CancellationWindowClosed) as exc_info:
        await rental_service.cancel(db, rental.id, renter, now=NOW)
    assert isinstance(exc_info.value, TimeGateNotSatisfied)

    rental = await load_rental(db, rental.id)
    assert rental.status == RentalStatus.APPROVED
    assert rental.version == version
    assert await count_refunds(db, rental.id) == 0


async def test_cancel_is_idempotent(db, rental_service, make_rental, renter):
    rental = await make_rental()

    first = await rental_service.cancel(db, rental.id, renter, now=NOW)
    second = await rental_service.cancel(db, rental.id, renter, now=NOW + timedelta(minutes=1))

    assert second.rental.status == RentalStatus.CANCELLED
    assert second.refund.id == first.refund.id
    assert await count_refunds(db, rental.id) == 1


async def test_owner_cannot_cancel(db, rental_service, make_rental, owner):
    rental = await make_rental()

    with pytest.raises(InvalidActor):
        await rental_service.cancel(db, rental.id, owner, now=NOW)


async def test_cannot_cancel_active_rental(db, rental_service, make_rental, renter):
    rental = await make_rental(status=RentalStatus.ACTIVE)

    with pytest.raises(InvalidSourceState):
        await rental_service.cancel(db, rental.id, renter, now=NOW)


async def test_rejected_cancellation_writes_nothing(db, rental_service, make_rental, owner):
    rental = await make_rental()

    with pytest.raises(InvalidActor):
        await rental_service.cancel(db, rental.id, owner, now=NOW)
    await db.rollback()

    events = (await db.execute(select(OutboxEvent))).scalars().all()
    audits = (await db.execute(select(AuditLog))).scalars().all()
    assert events == []
    assert audits == []


# ==================== HANDOFF ====================


async def test_handoff_photos(db, rental_service, make_rental, owner, renter, outsider):
    rental = await make_rental()

    rental = await rental_service.record_handoff_photo(
        db, rental.id, owner, HandoffStage.PICKUP, "https://cdn.example.com/p1.jpg"
    )
    assert rental.pickup_confirmed_by_owner
    assert not rental.pickup_confirmed_by_renter

    with pytest.raises(InvalidSourceState):
        await rental_service.record_handoff_photo(
            db, rental.id, renter, HandoffStage.RETURN, "https://cdn.example.com/r1.jpg"
        )
    with pytest.raises(InvalidActor):
        await rental_service.record_handoff_photo(
            db, rental.id, outsider, HandoffStage.PICKUP, "https://cdn.example.com/x.jpg"
        )


# ==================== COMPLETION & RETURN ====================


async def test_completion_waits_for_end_date(db, rental_service, make_rental, owner):
    end = NOW + timedelta(hours=2)
    rental = await make_rental(
        status=RentalStatus.ACTIVE, start_date=NOW - timedelta(days=2), end_date=end
    )

    with pytest.raises(RentalStillInProgress):
        await rental_service.initiate_completion(db, rental.id, owner, now=NOW)
    assert (await load_rental(db, rental.id)).status == RentalStatus.ACTIVE

    rental = await rental_service.initiate_completion(db, rental.id, owner, now=end)
    assert rental.status == RentalStatus.PENDING_COMPLETION
    assert ensure_utc(rental.completion_requested_at) == end


async def test_confirm_return_starts_48_hour_hold(db, rental_service, make_rental, renter):
    rental = await make_rental(
        status=RentalStatus.PENDING_COMPLETION,
        start_date=NOW - timedelta(days=3),
        end_date=NOW - timedelta(hours=1),
    )

    rental = await rental_service.confirm_return(db, rental.id, renter, now=NOW)

    assert rental.status == RentalStatus.COMPLETED_PENDING_PAYOUT
    assert rental.renter_confirmed_return
    assert ensure_utc(rental.payout_eligible_at) == NOW + timedelta(hours=48)
    assert not rental.payout_frozen


async def test_confirm_return_never_moves_eligibility(db, rental_service, make_rental, renter):
    rental = await make_rental(
        status=RentalStatus.PENDING_COMPLETION,
        start_date=NOW - timedelta(days=3),
        end_date=NOW - timedelta(hours=1),
    )

    await rental_service.confirm_return(db, rental.id, renter, now=NOW)
    rental = await rental_service.confirm_return(db, rental.id, renter, now=NOW + timedelta(hours=10))

    assert ensure_utc(rental.payout_eligible_at) == NOW + timedelta(hours=48)


async def test_owner_cannot_confirm_return(db, rental_service, make_rental, owner):
    rental = await make_rental(status=RentalStatus.PENDING_COMPLETION)

    with pytest.raises(InvalidActor):
        await rental_service.confirm_return(db, rental.id, owner, now=NOW)


@pytest.mark.parametrize(
    "status", [RentalStatus.COMPLETED, RentalStatus.CANCELLED, RentalStatus.DECLINED]
)
async def test_terminal_rental_accepts_no_transition(
    db, rental_service, make_rental, owner, renter, status
):
    rental = await make_rental(status=status)

    with pytest.raises(InvalidSourceState):
        await rental_service.pay(db, rental.id, renter, now=NOW)
    with pytest.raises(InvalidSourceState):
        await rental_service.confirm_return(db, rental.id, renter, now=NOW)
    with pytest.raises(InvalidSourceState):
        await rental_service.initiate_completion(db, rental.id, owner, now=NOW)
    with pytest.raises(InvalidSourceState):
        await rental_service.approve(db, rental.id, owner, now=NOW)


# ==================== CONCURRENCY ====================


async def test_stale_writer_loses_conditional_update(
    session_factory, rental_service, make_rental, renter
):
    rental = await make_rental(status=RentalStatus.PENDING_COMPLETION)

    async with session_factory() as slow:
        stale = await load_rental(slow, rental.id)

        async with session_factory() as fast:
            await rental_service.confirm_return(fast, rental.id, renter, now=NOW)
            await fast.commit()

        won = await compare_and_set(
            slow,
            stale,
            RentalStatus.PENDING_COMPLETION.value,
            {"status": RentalStatus.COMPLETED_PENDING_PAYOUT.value},
        )
        assert not won
        await slow.rollback()
