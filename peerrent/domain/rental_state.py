"""Rental state machine.

pending → approved → active → pending_completion → completed_pending_payout → completed
pending → declined, approved → cancelled (terminal short-circuits)
"""

from enum import Enum

from peerrent.core.exceptions import InvalidSourceState


class RentalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PENDING_COMPLETION = "pending_completion"
    COMPLETED_PENDING_PAYOUT = "completed_pending_payout"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class DepositStatus(str, Enum):
    """Security deposit sub-status."""

    NONE = "none"
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    PARTIAL_CLAIM = "partial_claim"
    FULL_CLAIM = "full_claim"


class HandoffStage(str, Enum):
    PICKUP = "pickup"
    RETURN = "return"


class RentalAction(str, Enum):
    """Operations that move a rental between states."""

    APPROVE = "approve"
    DECLINE = "decline"
    PAY = "pay"
    CANCEL = "cancel"
    INITIATE_COMPLETION = "initiate_completion"
    CONFIRM_RETURN = "confirm_return"
    SETTLE = "settle"


RENTAL_TRANSITIONS: dict[RentalStatus, set[RentalStatus]] = {
    RentalStatus.PENDING: {RentalStatus.APPROVED, RentalStatus.DECLINED},
    RentalStatus.APPROVED: {RentalStatus.ACTIVE, RentalStatus.CANCELLED},
    RentalStatus.ACTIVE: {RentalStatus.PENDING_COMPLETION},
    RentalStatus.PENDING_COMPLETION: {RentalStatus.COMPLETED_PENDING_PAYOUT},
    RentalStatus.COMPLETED_PENDING_PAYOUT: {RentalStatus.COMPLETED},
    RentalStatus.COMPLETED: set(),
    RentalStatus.DECLINED: set(),
    RentalStatus.CANCELLED: set(),
}

# Each action has exactly one legal source and one target
ACTION_EDGES: dict[RentalAction, tuple[RentalStatus, RentalStatus]] = {
    RentalAction.APPROVE: (RentalStatus.PENDING, RentalStatus.APPROVED),
    RentalAction.DECLINE: (RentalStatus.PENDING, RentalStatus.DECLINED),
    RentalAction.PAY: (RentalStatus.APPROVED, RentalStatus.ACTIVE),
    RentalAction.CANCEL: (RentalStatus.APPROVED, RentalStatus.CANCELLED),
    RentalAction.INITIATE_COMPLETION: (RentalStatus.ACTIVE, RentalStatus.PENDING_COMPLETION),
    RentalAction.CONFIRM_RETURN: (
        RentalStatus.PENDING_COMPLETION,
        RentalStatus.COMPLETED_PENDING_PAYOUT,
    ),
    RentalAction.SETTLE: (RentalStatus.COMPLETED_PENDING_PAYOUT, RentalStatus.COMPLETED),
}

TERMINAL_STATUSES = frozenset(
    {RentalStatus.COMPLETED, RentalStatus.DECLINED, RentalStatus.CANCELLED}
)

HANDOFF_STAGE_STATUSES: dict[HandoffStage, frozenset[RentalStatus]] = {
    HandoffStage.PICKUP: frozenset({RentalStatus.APPROVED, RentalStatus.ACTIVE}),
    HandoffStage.RETURN: frozenset({RentalStatus.ACTIVE, RentalStatus.PENDING_COMPLETION}),
}


def is_terminal(status: str | RentalStatus) -> bool:
    return RentalStatus(status) in TERMINAL_STATUSES


def assert_rental_transition(current: str | RentalStatus, target: str | RentalStatus) -> None:
    """Validate rental state transition.

    Raises:
        InvalidSourceState: If ``target`` is not reachable from ``current``
    """
    current = RentalStatus(current)
    target = RentalStatus(target)
    if target not in RENTAL_TRANSITIONS[current]:
        raise InvalidSourceState(
            "Rental",
            current.value,
            detail=f"Invalid rental transition: {current.value} → {target.value}",
        )


def edge_for(action: RentalAction) -> tuple[RentalStatus, RentalStatus]:
    """Source and target status of ``action``."""
    return ACTION_EDGES[action]
