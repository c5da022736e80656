"""Dispute resolution state machine.

awaiting_response → investigating → proposed_resolution → resolved → closed
Any non-terminal state may be escalated by either party. Admins may move a
dispute to investigating, resolved or closed at any time.
"""

from enum import Enum

from peerrent.core.exceptions import InvalidSourceState
from peerrent.utils.money import format_amount


class DisputeStatus(str, Enum):
    OPEN = "open"
    AWAITING_RESPONSE = "awaiting_response"
    INVESTIGATING = "investigating"
    PROPOSED_RESOLUTION = "proposed_resolution"
    RESOLVED = "resolved"
    CLOSED = "closed"
    ESCALATED = "escalated"


class DisputeType(str, Enum):
    DAMAGE = "damage"
    NOT_AS_DESCRIBED = "not_as_described"
    LATE_RETURN = "late_return"
    PAYMENT_ISSUE = "payment_issue"
    OTHER = "other"


class ReporterRole(str, Enum):
    OWNER = "owner"
    RENTER = "renter"


class ResolutionType(str, Enum):
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    REPLACEMENT = "replacement"
    REPAIR_COST = "repair_cost"
    NO_ACTION = "no_action"
    OTHER = "other"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ActivityType(str, Enum):
    CREATED = "created"
    RESPONSE = "response"
    MESSAGE = "message"
    RESOLUTION_PROPOSED = "resolution_proposed"
    RESOLUTION_ACCEPTED = "resolution_accepted"
    RESOLUTION_REJECTED = "resolution_rejected"
    ESCALATED = "escalated"
    ADMIN_NOTE = "admin_note"
    REFUND_ISSUED = "refund_issued"


class ResolvedBy(str, Enum):
    MUTUAL_AGREEMENT = "mutual_agreement"
    ADMIN = "admin"
    REFUND_ISSUED = "refund_issued"
    NO_ACTION = "no_action"


DISPUTE_TYPE_LABELS: dict[DisputeType, str] = {
    DisputeType.DAMAGE: "Item Damage",
    DisputeType.NOT_AS_DESCRIBED: "Not As Described",
    DisputeType.LATE_RETURN: "Late Return",
    DisputeType.PAYMENT_ISSUE: "Payment Issue",
    DisputeType.OTHER: "Other",
}

RESOLUTION_TYPE_LABELS: dict[ResolutionType, str] = {
    ResolutionType.FULL_REFUND: "Full Refund",
    ResolutionType.PARTIAL_REFUND: "Partial Refund",
    ResolutionType.REPLACEMENT: "Replacement",
    ResolutionType.REPAIR_COST: "Repair Cost Coverage",
    ResolutionType.NO_ACTION: "No Action Needed",
    ResolutionType.OTHER: "Other",
}

TERMINAL_STATUSES = frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED})

# Party-driven transitions; admin updates bypass this table
DISPUTE_TRANSITIONS: dict[DisputeStatus, set[DisputeStatus]] = {
    DisputeStatus.OPEN: {
        DisputeStatus.AWAITING_RESPONSE,
        DisputeStatus.INVESTIGATING,
        DisputeStatus.PROPOSED_RESOLUTION,
        DisputeStatus.ESCALATED,
    },
    DisputeStatus.AWAITING_RESPONSE: {
        DisputeStatus.INVESTIGATING,
        DisputeStatus.PROPOSED_RESOLUTION,
        DisputeStatus.ESCALATED,
    },
    DisputeStatus.INVESTIGATING: {
        DisputeStatus.INVESTIGATING,
        DisputeStatus.PROPOSED_RESOLUTION,
        DisputeStatus.RESOLVED,
        DisputeStatus.ESCALATED,
    },
    DisputeStatus.PROPOSED_RESOLUTION: {
        DisputeStatus.PROPOSED_RESOLUTION,
        DisputeStatus.INVESTIGATING,
        DisputeStatus.RESOLVED,
        DisputeStatus.ESCALATED,
    },
    DisputeStatus.ESCALATED: {
        DisputeStatus.PROPOSED_RESOLUTION,
        DisputeStatus.INVESTIGATING,
        DisputeStatus.RESOLVED,
    },
    DisputeStatus.RESOLVED: set(),
    DisputeStatus.CLOSED: set(),
}

ADMIN_TARGET_STATUSES = frozenset(
    {DisputeStatus.INVESTIGATING, DisputeStatus.RESOLVED, DisputeStatus.CLOSED}
)

ADMIN_RESOLVED_BY = frozenset(
    {ResolvedBy.ADMIN, ResolvedBy.REFUND_ISSUED, ResolvedBy.NO_ACTION}
)


def is_terminal(status: str | DisputeStatus) -> bool:
    return DisputeStatus(status) in TERMINAL_STATUSES


def assert_dispute_transition(current: str | DisputeStatus, target: str | DisputeStatus) -> None:
    """Validate a party-driven dispute transition.

    Raises:
        InvalidSourceState: If the transition is not allowed
    """
    current = DisputeStatus(current)
    target = DisputeStatus(target)
    if target not in DISPUTE_TRANSITIONS[current]:
        raise InvalidSourceState(
            "Dispute",
            current.value,
            detail=f"Invalid dispute transition: {current.value} → {target.value}",
        )


def can_escalate(status: str | DisputeStatus) -> tuple[bool, str | None]:
    """Check if a dispute can be escalated."""
    status = DisputeStatus(status)
    if status in TERMINAL_STATUSES:
        return False, f"Dispute is already {status.value}"
    return True, None


def describe_proposal(
    resolution_type: str | ResolutionType,
    description: str,
    amount: int | None = None,
    currency: str = "usd",
) -> str:
    """Activity text recorded when a resolution is proposed."""
    label = RESOLUTION_TYPE_LABELS[ResolutionType(resolution_type)]
    parts = [f"Proposed resolution: {label}"]
    if amount:
        parts.append(format_amount(amount, currency))
    parts.append(description)
    return " - ".join(parts)
