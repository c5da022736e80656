"""Audit trail for rental, dispute and money movements."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.core.exceptions import AppException
from peerrent.core.security import Actor
from peerrent.models.audit import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Makes every transition attempt observable.

    Attempts are logged whether they succeed or are rejected; applied
    transitions are also persisted as :class:`AuditLog` rows in the same
    transaction as the change itself.
    """

    @asynccontextmanager
    async def attempt(
        self,
        actor: Actor,
        action: str,
        resource_type: str,
        resource_id: UUID | None,
    ) -> AsyncIterator[None]:
        """Log the outcome of the wrapped operation.

        Args:
            actor: Caller of the operation
            action: Action name (e.g., "rental.cancel")
            resource_type: Resource type (e.g., "rental", "dispute")
            resource_id: Resource ID
        """
        try:
            yield
        except AppException as e:
            logger.warning(
                f"AUDIT rejected action={action} {resource_type}={resource_id} "
                f"actor={actor.id} role={actor.role.value} code={e.code.value} detail={e.detail}"
            )
            raise
        except Exception:
            logger.exception(
                f"AUDIT failed action={action} {resource_type}={resource_id} actor={actor.id}"
            )
            raise
        else:
            logger.info(
                f"AUDIT ok action={action} {resource_type}={resource_id} actor={actor.id}"
            )

    async def record(
        self,
        db: AsyncSession,
        actor: Actor,
        action: str,
        resource_type: str,
        resource_id: UUID,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Persist an applied transition (immutable row)."""
        audit = AuditLog(
            actor_id=actor.id,
            actor_role=actor.role.value,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_values=_jsonable(old_values),
            new_values=_jsonable(new_values),
        )
        db.add(audit)
        return audit


def _jsonable(values: dict[str, Any] | None) -> dict[str, Any] | None:
    if values is None:
        return None
    out: dict[str, Any] = {}
    for key, value in values.items():
        if value is None or isinstance(value, (bool, int, float, str)):
            out[key] = value
        else:
            out[key] = str(value)
    return out
