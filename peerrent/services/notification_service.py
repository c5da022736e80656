"""Notification outbox.

State machines never talk to the push provider directly. They call
:meth:`NotificationService.notify`, which queues an :class:`OutboxEvent` in
the caller's transaction; the event exists only if the transition commits.
A separate consumer (:meth:`NotificationService.deliver_pending`, run by the
worker) sends queued events, so delivery failures never touch rental or
dispute state.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.config import settings
from peerrent.domain.time_gate import utcnow
from peerrent.models.notification import OutboxEvent, OutboxStatus

logger = logging.getLogger(__name__)


class NotificationType:
    """Event types carried on outbox events."""

    RENTAL_REQUESTED = "rental_requested"
    RENTAL_APPROVED = "rental_approved"
    RENTAL_DECLINED = "rental_declined"
    RENTAL_PAID = "rental_paid"
    RENTAL_CANCELLED = "rental_cancelled"
    COMPLETION_REQUESTED = "completion_requested"
    RETURN_CONFIRMED = "return_confirmed"
    HANDOFF_PHOTO = "handoff_photo"
    PAYOUT_SENT = "payout_sent"
    RENTAL_COMPLETED = "rental_completed"
    REFUND_PROCESSED = "refund_processed"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_RESPONSE = "dispute_response"
    DISPUTE_MESSAGE = "dispute_message"
    RESOLUTION_PROPOSED = "resolution_proposed"
    RESOLUTION_ACCEPTED = "resolution_accepted"
    RESOLUTION_REJECTED = "resolution_rejected"
    DISPUTE_ESCALATED = "dispute_escalated"
    DISPUTE_UPDATED = "dispute_updated"


class PushTransport:
    """Posts notifications to the push relay over HTTP."""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url or settings.push_relay_url
        self.timeout = timeout or settings.notification_timeout_seconds
        self._http_client: httpx.AsyncClient | None = client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, event: OutboxEvent) -> None:
        """Deliver one event; raises ``httpx.HTTPError`` on failure."""
        response = await self.http_client.post(
            self.url,
            json={
                "to": str(event.recipient_id),
                "title": event.title,
                "body": event.body,
                "sound": "default",
                "data": {"type": event.event_type, **(event.payload or {})},
            },
        )
        response.raise_for_status()


class NotificationService:
    """Queues notifications and delivers the queue."""

    async def notify(
        self,
        db: AsyncSession,
        recipient_id: UUID,
        event_type: str,
        title: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> OutboxEvent:
        """Queue a notification for ``recipient_id`` in the current transaction."""
        event = OutboxEvent(
            recipient_id=recipient_id,
            event_type=event_type,
            title=title,
            body=body,
            payload={k: str(v) for k, v in (metadata or {}).items()},
        )
        db.add(event)
        return event

    async def deliver_pending(
        self,
        db: AsyncSession,
        transport: PushTransport,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Send queued events, oldest first.

        Each failure is recorded on its event and retried on the next run
        until ``notification_max_attempts`` is reached.

        Returns:
            Counts of delivered and failed events
        """
        now = now or utcnow()
        result = await db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.status == OutboxStatus.PENDING.value)
            .order_by(OutboxEvent.created_at)
            .limit(limit or settings.notification_batch_size)
        )
        events = result.scalars().all()

        delivered = failed = 0
        for event in events:
            if not settings.notifications_enabled:
                event.status = OutboxStatus.DELIVERED.value
                event.delivered_at = now
                delivered += 1
                continue
            try:
                await transport.send(event)
            except httpx.HTTPError as e:
                event.attempts += 1
                event.last_error = str(e)[:1000]
                if event.attempts >= settings.notification_max_attempts:
                    event.status = OutboxStatus.FAILED.value
                    logger.error(f"Giving up on notification {event.id} after {event.attempts} attempts: {e}")
                else:
                    logger.warning(f"Notification {event.id} delivery failed (attempt {event.attempts}): {e}")
                failed += 1
                continue
            event.attempts += 1
            event.status = OutboxStatus.DELIVERED.value
            event.delivered_at = now
            delivered += 1

        await db.flush()
        return {"delivered": delivered, "failed": failed}
