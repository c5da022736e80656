"""Immutability enforcement for financial and audit records using SQLAlchemy events."""

import logging
from datetime import UTC, datetime

from sqlalchemy import event, inspect

from peerrent.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_registered = False


class ImmutabilityViolationError(ValidationError):
    """Raised when attempting to modify an immutable record."""

    def __init__(self, model_name: str, operation: str, record_id: str):
        self.model_name = model_name
        self.operation = operation
        self.record_id = record_id
        super().__init__(
            f"Immutability violation: Cannot {operation} {model_name} record {record_id}."
        )


def _log_immutability_violation(model_name: str, operation: str, record_id: str) -> None:
    """Log immutability violation for audit purposes."""
    logger.error(
        f"IMMUTABILITY_VIOLATION: Attempted to {operation} {model_name} "
        f"record_id={record_id} at {datetime.now(UTC).isoformat()}"
    )


def _reject(model_name: str, operation: str, target) -> None:
    _log_immutability_violation(model_name, operation, str(target.id))
    raise ImmutabilityViolationError(model_name, operation, str(target.id))


def register_immutability_enforcement() -> None:
    """Register SQLAlchemy event listeners for immutability enforcement.

    Safe to call more than once; listeners are attached on the first call.
    """
    global _registered
    if _registered:
        return

    from peerrent.models.audit import AuditLog
    from peerrent.models.dispute import DisputeActivity
    from peerrent.models.payout import Payout
    from peerrent.models.refund import Refund, RefundStatus
    from peerrent.models.rental import Rental

    # ============ Rental: never physically deleted ============

    @event.listens_for(Rental, "before_delete")
    def prevent_rental_delete(mapper, connection, target):
        _reject("Rental", "DELETE", target)

    # ============ Refund: frozen once completed ============

    @event.listens_for(Refund, "before_update")
    def prevent_completed_refund_update(mapper, connection, target):
        """Completed refunds cannot change."""
        history = inspect(target).attrs.status.history
        previous = history.deleted[0] if history.deleted else target.status
        if previous == RefundStatus.COMPLETED:
            _reject("Refund", "UPDATE", target)

    @event.listens_for(Refund, "before_delete")
    def prevent_refund_delete(mapper, connection, target):
        _reject("Refund", "DELETE", target)

    # ============ Append-only tables ============

    for model in (DisputeActivity, Payout, AuditLog):
        name = model.__name__

        def prevent_update(mapper, connection, target, _name=name):
            _reject(_name, "UPDATE", target)

        def prevent_delete(mapper, connection, target, _name=name):
            _reject(_name, "DELETE", target)

        event.listen(model, "before_update", prevent_update)
        event.listen(model, "before_delete", prevent_delete)

    _registered = True
    logger.info("Immutability enforcement registered for financial records")
