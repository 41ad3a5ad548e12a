"""
tasks/notification_tasks.py
Celery tasks for email/SMS delivery.

In-app Notification rows are written synchronously by the services; this
module delivers them over the other channels. All tasks are idempotent:
a row is delivered once, and failures in one channel never block another.

Usage from a route:
    from tasks.notification_tasks import send_otp
    send_otp.delay("email", "user@example.com", "123456", "verify")
"""

import logging
from datetime import timedelta

from celery import Task
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config.settings import settings
from services.appointment.scheduler import describe_time
from services.notification.dispatcher import notify, render
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    Notification,
    NotificationType,
    User,
)
from shared.utils.dates import utcnow
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

DELIVERY_BATCH_SIZE = 200
DELIVERY_MAX_AGE_HOURS = 24


# ── Base Task with DB session ──────────────────────────────────────────────────

def sync_database_url() -> str:
    """The async URL with a blocking driver (asyncpg -> psycopg2, aiosqlite -> pysqlite)."""
    return (
        settings.DATABASE_URL
        .replace("+asyncpg", "+psycopg2")
        .replace("+aiosqlite", "")
    )


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _sessionmaker = None

    def get_session(self):
        # Celery runs tasks synchronously, so use a blocking engine per worker
        if DatabaseTask._sessionmaker is None:
            engine = create_engine(sync_database_url(), pool_pre_ping=True)
            DatabaseTask._sessionmaker = sessionmaker(bind=engine, expire_on_commit=False)
        return DatabaseTask._sessionmaker()


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _send_sms(phone: str, body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    try:
        from twilio.rest import Client
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        client.messages.create(
            body=body,
            from_=settings.TWILIO_FROM_NUMBER,
            to=phone if phone.startswith("+") else f"+91{phone}",
        )
        return True
    except Exception as e:
        logger.warning(f"SMS send failed: {e}")
        return False


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


def _email_html(title: str, body: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="color: #222;">{title}</h2>
        <p style="color: #555; line-height: 1.6;">{body}</p>
        <p style="color: #999; font-size: 12px; margin-top: 24px;">
            You received this email because you have an account on {settings.EMAIL_FROM_NAME}.
        </p>
    </div>
    """


OTP_MESSAGES = {
    "verify": ("Verify your account", "Your verification code is {code}."),
    "login": ("Your login code", "Your login code is {code}."),
    "reset": ("Reset your password", "Your password reset code is {code}."),
}


# ── OTP Delivery ───────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def send_otp(self, channel: str, target: str, code: str, purpose: str):
    """Deliver a one-time code by email or SMS, retrying with backoff."""
    subject, text = OTP_MESSAGES.get(purpose, OTP_MESSAGES["verify"])
    text = f"{text.format(code=code)} It expires in {settings.OTP_EXPIRE_MINUTES} minutes."

    if channel == "email":
        success = _send_email(target, subject, _email_html(subject, text))
    else:
        success = _send_sms(target, f"{settings.EMAIL_FROM_NAME}: {text}")

    if not success:
        raise self.retry(countdown=30 * (2 ** self.request.retries))
    logger.info(f"OTP for {purpose} delivered via {channel}")


# ── In-app → Email/SMS ─────────────────────────────────────────────────────────

def deliver_notification(notification: Notification, user: User) -> None:
    """Send one notification over email and SMS (when a template exists) and stamp it."""
    template_vars = notification.data or {}

    if user.email and not notification.sent_email:
        notification.sent_email = _send_email(
            user.email,
            notification.title,
            _email_html(notification.title, notification.body),
        )

    sms = render(notification.type, "sms", **template_vars)
    if sms and user.mobile and not notification.sent_sms:
        notification.sent_sms = _send_sms(user.mobile, sms)

    notification.delivered_at = utcnow()


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3)
def dispatch_pending_notifications(self):
    """
    Beat task: runs every minute.
    Delivers recent notifications that have not been pushed out yet.
    """
    db = self.get_session()
    try:
        cutoff = utcnow() - timedelta(hours=DELIVERY_MAX_AGE_HOURS)
        rows = db.execute(
            select(Notification, User)
            .join(User, User.id == Notification.user_id)
            .where(Notification.delivered_at.is_(None), Notification.created_at >= cutoff)
            .order_by(Notification.created_at)
            .limit(DELIVERY_BATCH_SIZE)
        ).all()

        for notification, user in rows:
            deliver_notification(notification, user)
        db.commit()
        if rows:
            logger.info(f"Delivered {len(rows)} notifications")
        return len(rows)

    except Exception as e:
        db.rollback()
        logger.exception(f"dispatch_pending_notifications failed: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()


# ── Reminders ──────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask, max_retries=3)
def send_appointment_reminders(self):
    """
    Beat task: runs every hour.
    Reminds customers of confirmed appointments starting within the lookahead
    window. One reminder per appointment.
    """
    db = self.get_session()
    try:
        now = utcnow()
        window_end = now + timedelta(hours=settings.REMINDER_LOOKAHEAD_HOURS)

        appointments = db.execute(
            select(Appointment).where(
                Appointment.status == AppointmentStatus.CONFIRMED,
                Appointment.start_at > now,
                Appointment.start_at <= window_end,
            )
        ).scalars().all()

        sent = 0
        for appointment in appointments:
            already = db.execute(
                select(Notification.id).where(
                    Notification.appointment_id == appointment.id,
                    Notification.type == NotificationType.APPOINTMENT_REMINDER,
                )
            ).first()
            if already:
                continue

            notify(
                db,
                appointment.customer_id,
                NotificationType.APPOINTMENT_REMINDER,
                appointment_id=appointment.id,
                when=describe_time(appointment),
            )
            sent += 1

        db.commit()
        logger.info(f"Queued {sent} appointment reminders")
        return sent

    except Exception as e:
        db.rollback()
        logger.exception(f"send_appointment_reminders failed: {e}")
        raise self.retry(exc=e, countdown=120)
    finally:
        db.close()
