"""Celery worker configuration.

The beat schedule is the external trigger for settlement: rentals are never
settled by a timer inside the service, only by these periodic sweeps.
"""

from celery import Celery
from celery.schedules import crontab

from peerrent.config import settings

# Create Celery app
celery_app = Celery(
    "peerrent_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["peerrent.tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=240,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=3600,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,

    # Beat schedule for periodic tasks
    beat_schedule={
        "settle-eligible-payouts": {
            "task": "peerrent.tasks.settle_eligible_payouts",
            "schedule": crontab(minute=f"*/{settings.settlement_interval_minutes}"),
        },
        "deliver-notifications": {
            "task": "peerrent.tasks.deliver_notifications",
            "schedule": crontab(minute="*"),
        },
        "process-pending-refunds": {
            "task": "peerrent.tasks.process_pending_refunds",
            "schedule": crontab(minute=f"*/{settings.refund_interval_minutes}"),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
