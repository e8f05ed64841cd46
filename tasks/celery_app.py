"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4 -Q default,notifications,payments

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "tutoring_marketplace",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.payment_tasks",
        "tasks.booking_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Africa/Lagos",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    # This prevents task loss if worker dies mid-execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_default_queue="default",

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.deliver_recipient": {"rate_limit": "30/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.payment_tasks.*": {"queue": "payments"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Admin notifications whose scheduled_at has passed
    "send-scheduled-notifications": {
        "task": "tasks.notification_tasks.send_scheduled_notifications",
        "schedule": 60,  # every minute
    },

    # Remind both parties of sessions starting within SESSION_REMINDER_HOURS
    "send-session-reminders": {
        "task": "tasks.notification_tasks.send_session_reminders",
        "schedule": crontab(minute=0),  # top of every hour
    },

    # Reschedule / rebook requests past expires_at
    "expire-booking-modifications": {
        "task": "tasks.booking_tasks.expire_booking_modifications",
        "schedule": crontab(minute=15),  # every hour at :15
    },

    # Approved payouts whose automatic transfer failed
    "retry-failed-payout-transfers": {
        "task": "tasks.payment_tasks.retry_failed_payout_transfers",
        "schedule": crontab(minute=30),  # every hour at :30
    },

    # Teacher wallets over their auto-withdrawal threshold
    # Runs nightly; crontab times follow the app timezone above
    "process-auto-withdrawals": {
        "task": "tasks.payment_tasks.process_auto_withdrawals",
        "schedule": crontab(hour=2, minute=0),
    },
}
