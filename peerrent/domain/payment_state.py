"""Refund state machine.

pending → processing → completed
pending → processing → failed → processing (retry)
Completed refunds are immutable.
"""

from enum import Enum

from peerrent.core.exceptions import InvalidSourceState


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


REFUND_TRANSITIONS: dict[RefundStatus, set[RefundStatus]] = {
    RefundStatus.PENDING: {RefundStatus.PROCESSING},
    RefundStatus.PROCESSING: {RefundStatus.COMPLETED, RefundStatus.FAILED},
    RefundStatus.FAILED: {RefundStatus.PROCESSING},
    RefundStatus.COMPLETED: set(),
}

# Refunds that still count against the rental's refundable total
OUTSTANDING_REFUND_STATUSES = frozenset(
    {RefundStatus.PENDING, RefundStatus.PROCESSING, RefundStatus.COMPLETED}
)


def assert_refund_transition(current: str | RefundStatus, target: str | RefundStatus) -> None:
    current = RefundStatus(current)
    target = RefundStatus(target)
    if target not in REFUND_TRANSITIONS[current]:
        raise InvalidSourceState(
            "Refund",
            current.value,
            detail=f"Invalid refund transition: {current.value} → {target.value}",
        )


def can_process_refund(status: str | RefundStatus) -> tuple[bool, str | None]:
    """Check if a refund can be sent to the processor."""
    status = RefundStatus(status)
    if status == RefundStatus.COMPLETED:
        return False, "Refund has already been completed"
    if status == RefundStatus.PROCESSING:
        return False, "Refund is already being processed"
    return True, None
