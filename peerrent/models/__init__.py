"""Database models."""

from peerrent.models.audit import AuditLog
from peerrent.models.dispute import Dispute, DisputeActivity, ResolutionProposal
from peerrent.models.notification import OutboxEvent, OutboxStatus
from peerrent.models.payout import Payout
from peerrent.models.refund import Refund
from peerrent.models.rental import Rental

__all__ = [
    "AuditLog",
    "Dispute",
    "DisputeActivity",
    "OutboxEvent",
    "OutboxStatus",
    "Payout",
    "Refund",
    "Rental",
    "ResolutionProposal",
]
