"""Celery background tasks.

Thin wrappers that run the async batch jobs of
:class:`~peerrent.services.scheduler_service.SchedulerService` in the
worker process:
- payout settlement for rentals past their hold
- refund processing
- notification outbox delivery
"""

import asyncio
import logging

from celery import shared_task

from peerrent.database import async_session_maker
from peerrent.services.gateway_service import get_configured_gateway
from peerrent.services.notification_service import PushTransport
from peerrent.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)


_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """Run async function in sync context.

    One loop per worker process; the engine pool is bound to it.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


def _scheduler() -> SchedulerService:
    return SchedulerService(async_session_maker, get_configured_gateway())


# ==================== PAYOUT TASKS ====================


@shared_task(bind=True, max_retries=3)
def settle_eligible_payouts(self):
    """Settle rentals whose payout hold has elapsed and are not frozen."""
    try:
        counts = run_async(_scheduler().settle_eligible())
        return {"status": "success", **counts}
    except Exception as exc:
        logger.exception("Settlement sweep failed")
        raise self.retry(exc=exc, countdown=120)


# ==================== REFUND TASKS ====================


@shared_task(bind=True, max_retries=3)
def process_pending_refunds(self):
    """Send pending refunds to the payment processor."""
    try:
        counts = run_async(_scheduler().process_pending_refunds())
        return {"status": "success", **counts}
    except Exception as exc:
        logger.exception("Refund sweep failed")
        raise self.retry(exc=exc, countdown=300)


# ==================== NOTIFICATION TASKS ====================


async def _deliver_notifications() -> dict[str, int]:
    transport = PushTransport()
    try:
        return await _scheduler().deliver_notifications(transport)
    finally:
        await transport.close()


@shared_task(bind=True, max_retries=3)
def deliver_notifications(self):
    """Flush the notification outbox."""
    try:
        counts = run_async(_deliver_notifications())
        return {"status": "success", **counts}
    except Exception as exc:
        logger.exception("Notification delivery failed")
        raise self.retry(exc=exc, countdown=60)
