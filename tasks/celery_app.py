"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "barber_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.maintenance_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.DEFAULT_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    # Per worker per second
    task_annotations={
        "tasks.notification_tasks.send_otp": {"rate_limit": "20/s"},
    },

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.maintenance_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Free booked slots whose appointment is gone, canceled or completed
    "reconcile-slot-holds": {
        "task": "tasks.maintenance_tasks.reconcile_slot_holds",
        "schedule": settings.RECONCILE_INTERVAL_SECONDS,
    },

    # Email/SMS delivery of in-app notifications
    "dispatch-pending-notifications": {
        "task": "tasks.notification_tasks.dispatch_pending_notifications",
        "schedule": 60,
    },

    # Confirmed appointments starting within REMINDER_LOOKAHEAD_HOURS
    "send-appointment-reminders": {
        "task": "tasks.notification_tasks.send_appointment_reminders",
        "schedule": crontab(minute=0),
    },

    # Expired OTPs and sessions
    "purge-expired-auth-records": {
        "task": "tasks.maintenance_tasks.purge_expired_auth_records",
        "schedule": crontab(minute=15),
    },
}
