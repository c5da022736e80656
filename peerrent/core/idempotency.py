"""Idempotency keys for payment processor calls."""

import hashlib
import json
from typing import Any
from uuid import UUID


def generate_idempotency_key(
    operation: str,
    entity_id: UUID | str,
    params: dict[str, Any] | None = None,
) -> str:
    """Generate a deterministic idempotency key.

    The same operation on the same entity always yields the same key, so a
    retried charge, transfer or refund is collapsed by the processor into
    the original request.

    Args:
        operation: Operation name (e.g., "rental_charge", "rental_transfer")
        entity_id: Primary entity ID (rental or refund)
        params: Additional parameters to include in key

    Returns:
        SHA256 hash of operation + entity + params
    """
    key_data = {
        "operation": operation,
        "entity_id": str(entity_id),
        "params": params or {},
    }
    key_str = json.dumps(key_data, sort_keys=True)
    return hashlib.sha256(key_str.encode()).hexdigest()


def charge_key(rental_id: UUID) -> str:
    return generate_idempotency_key("rental_charge", rental_id)


def transfer_key(rental_id: UUID) -> str:
    return generate_idempotency_key("rental_transfer", rental_id)


def refund_key(refund_id: UUID) -> str:
    return generate_idempotency_key("refund", refund_id)


def deposit_hold_key(rental_id: UUID) -> str:
    return generate_idempotency_key("deposit_hold", rental_id)


def deposit_capture_key(rental_id: UUID, amount: int) -> str:
    return generate_idempotency_key("deposit_capture", rental_id, {"amount": amount})


def deposit_release_key(rental_id: UUID) -> str:
    return generate_idempotency_key("deposit_release", rental_id)
