"""Celery worker configuration.

The beat schedule drives the booking maintenance scans:
- Payment reminders and unpaid-booking expiry
- Participant hold expiry
- Stale slot-lock cleanup
- Auto-completion of finished sessions
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings

celery_app = Celery(
    "coachbook_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks"],
)

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
    task_soft_time_limit=240,  # Soft limit at 4 minutes

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result backend settings
    result_expires=3600,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,

    beat_schedule={
        # Reminder bands are matched with a small tolerance, so this runs every minute
        "process-payment-deadlines": {
            "task": "app.tasks.process_payment_deadlines",
            "schedule": crontab(minute="*"),
        },
        "expire-participant-holds": {
            "task": "app.tasks.expire_participant_holds",
            "schedule": crontab(minute="*/30"),
        },
        "cleanup-stale-locks": {
            "task": "app.tasks.cleanup_stale_locks",
            "schedule": crontab(minute="*/5"),
        },
        "auto-complete-bookings": {
            "task": "app.tasks.auto_complete_bookings",
            "schedule": crontab(hour=6, minute=0),
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
