"""Batch jobs run by the scheduler and the internal endpoints.

Each rental or refund is handled in its own session so one failure never
rolls back the others.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peerrent.config import Settings, settings as default_settings
from peerrent.core.exceptions import AppException
from peerrent.core.security import SYSTEM_ACTOR, Actor
from peerrent.domain.payment_state import RefundStatus
from peerrent.domain.time_gate import ensure_utc, utcnow
from peerrent.gateways.base import PaymentGateway
from peerrent.services.notification_service import NotificationService, PushTransport
from peerrent.services.refund_service import RefundService
from peerrent.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)


class SchedulerService:
    """Runs settlement, refund and notification batches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings or default_settings

    async def settle_eligible(
        self,
        now: datetime | None = None,
        actor: Actor = SYSTEM_ACTOR,
        limit: int = 200,
    ) -> dict[str, int]:
        """Settle every rental whose hold has elapsed and is not frozen.

        Returns:
            Counts of settled, skipped and failed rentals
        """
        now = ensure_utc(now or utcnow())
        settlement = SettlementService(self.gateway, self.settings)
        async with self.session_factory() as db:
            rental_ids = await settlement.list_settleable_ids(db, now, limit)

        counts = {"settled": 0, "skipped": 0, "failed": 0}
        for rental_id in rental_ids:
            async with self.session_factory() as db:
                try:
                    outcome = await settlement.check_and_settle(db, rental_id, actor, now)
                    await db.commit()
                except AppException as e:
                    await db.rollback()
                    logger.warning(f"Settlement of rental {rental_id} failed: {e.detail}")
                    counts["failed"] += 1
                    continue
            if outcome.settled and not outcome.already_settled:
                counts["settled"] += 1
            else:
                counts["skipped"] += 1

        if rental_ids:
            logger.info(f"Settlement run: {counts}")
        return counts

    async def process_pending_refunds(
        self,
        now: datetime | None = None,
        actor: Actor = SYSTEM_ACTOR,
        limit: int = 100,
    ) -> dict[str, int]:
        """Send pending refunds to the processor."""
        now = ensure_utc(now or utcnow())
        refunds = RefundService(self.gateway)
        async with self.session_factory() as db:
            pending = await refunds.list_pending_refunds(db, limit)
            refund_ids = [refund.id for refund in pending]

        counts = {"completed": 0, "failed": 0, "errored": 0}
        for refund_id in refund_ids:
            async with self.session_factory() as db:
                try:
                    refund = await refunds.process_refund(db, refund_id, actor, now)
                    await db.commit()
                except AppException as e:
                    await db.rollback()
                    logger.warning(f"Refund {refund_id} not processed: {e.detail}")
                    counts["errored"] += 1
                    continue
            counts["completed" if refund.status == RefundStatus.COMPLETED else "failed"] += 1

        if refund_ids:
            logger.info(f"Refund run: {counts}")
        return counts

    async def deliver_notifications(
        self,
        transport: PushTransport,
        now: datetime | None = None,
    ) -> dict[str, int]:
        async with self.session_factory() as db:
            counts = await NotificationService().deliver_pending(db, transport, now=now)
            await db.commit()
        return counts
