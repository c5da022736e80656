import pytest

from conftest import NOW
from peerrent.config import settings
from peerrent.core.exceptions import (
    ExternalProcessorFailure,
    InvalidActor,
    InvalidSourceState,
    ValidationError,
)
from peerrent.core.immutability import ImmutabilityViolationError
from peerrent.core.security import SYSTEM_ACTOR
from peerrent.domain.payment_state import RefundStatus
from peerrent.domain.rental_state import RentalStatus
from peerrent.gateways.base import RefundResult
from peerrent.services.scheduler_service import SchedulerService


@pytest.fixture
def pending_refund(db, refund_service, make_rental, admin):
    """Committed pending refund against a paid rental."""

    async def _create(amount: int = 3000):
        rental = await make_rental(status=RentalStatus.ACTIVE)
        refund = await refund_service.create_refund(db, rental, amount, "Goodwill credit", admin)
        await db.commit()
        return refund

    return _create


async def test_processing_completes_refund(db, refund_service, pending_refund, admin, gateway):
    refund = await pending_refund()

    refund = await refund_service.process_refund(db, refund.id, admin, now=NOW)

    assert refund.status == RefundStatus.COMPLETED
    assert refund.processor_refund_id.startswith("manual_re_")
    assert refund.processed_by == admin.id
    assert refund.error_message is None

    again = await refund_service.process_refund(db, refund.id, admin, now=NOW)
    assert again.processor_refund_id == refund.processor_refund_id
    assert len(gateway.refunds) == 1


async def test_retryable_failure_leaves_refund_pending(
    db, refund_service, pending_refund, admin, gateway
):
    refund_id = (await pending_refund()).id
    gateway.refund_failure = RefundResult(success=False, error_message="processor timeout")

    with pytest.raises(ExternalProcessorFailure):
        await refund_service.process_refund(db, refund_id, admin, now=NOW)
    await db.rollback()

    refund = await refund_service.get_refund(db, refund_id)
    await db.refresh(refund)
    assert refund.status == RefundStatus.PENDING

    gateway.refund_failure = None
    refund = await refund_service.process_refund(db, refund_id, admin, now=NOW)
    assert refund.status == RefundStatus.COMPLETED


async def test_definitive_failure_marks_failed_and_can_be_retried(
    db, refund_service, pending_refund, admin, gateway
):
    refund = await pending_refund()
    gateway.refund_failure = RefundResult(
        success=False, error_message="charge already refunded", retryable=False
    )

    refund = await refund_service.process_refund(db, refund.id, admin, now=NOW)
    assert refund.status == RefundStatus.FAILED
    assert refund.error_message == "charge already refunded"

    gateway.refund_failure = None
    refund = await refund_service.process_refund(db, refund.id, admin, now=NOW)
    assert refund.status == RefundStatus.COMPLETED
    assert refund.error_message is None


async def test_only_admins_process_refunds(db, refund_service, pending_refund, renter):
    refund = await pending_refund()

    with pytest.raises(InvalidActor):
        await refund_service.process_refund(db, refund.id, renter, now=NOW)


async def test_processing_refund_cannot_be_processed_again(db, refund_service, pending_refund, admin):
    refund = await pending_refund()
    refund.status = RefundStatus.PROCESSING.value
    await db.commit()

    with pytest.raises(InvalidSourceState):
        await refund_service.process_refund(db, refund.id, admin, now=NOW)


async def test_refund_amount_guards(db, refund_service, make_rental, admin):
    rental = await make_rental(status=RentalStatus.ACTIVE, total_price=12000)

    with pytest.raises(ValidationError):
        await refund_service.create_refund(db, rental, 0, "Nothing", admin)
    await refund_service.create_refund(db, rental, 10000, "Most of it", admin)
    with pytest.raises(ValidationError):
        await refund_service.create_refund(db, rental, 2001, "Over the top", admin)
    assert await refund_service.refundable_balance(db, rental) == 2000


async def test_completed_refund_is_immutable(db, refund_service, pending_refund, admin):
    refund = await pending_refund()
    refund = await refund_service.process_refund(db, refund.id, admin, now=NOW)

    refund.amount = 1
    with pytest.raises(ImmutabilityViolationError):
        await db.flush()


async def test_scheduler_processes_pending_refunds(session_factory, pending_refund, gateway):
    await pending_refund(1000)
    await pending_refund(2000)
    scheduler = SchedulerService(session_factory, gateway, settings)

    gateway.refund_failure = RefundResult(success=False, error_message="processor timeout")
    counts = await scheduler.process_pending_refunds(now=NOW, actor=SYSTEM_ACTOR)
    assert counts == {"completed": 0, "failed": 0, "errored": 2}

    gateway.refund_failure = None
    counts = await scheduler.process_pending_refunds(now=NOW, actor=SYSTEM_ACTOR)
    assert counts == {"completed": 2, "failed": 0, "errored": 0}
