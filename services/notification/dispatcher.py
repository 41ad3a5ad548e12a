"""
services/notification/dispatcher.py
In-app notification writer used by the core services.
Rows are delivered over email/SMS later by tasks.notification_tasks.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationType

logger = logging.getLogger(__name__)


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    NotificationType.APPOINTMENT_BOOKED: {
        "title": "New appointment request",
        "body": "{service_name} on {when}. Confirm it or wait for the customer's payment.",
        "sms": "BarberBooking: New appointment request for {when}.",
    },
    NotificationType.APPOINTMENT_CONFIRMED: {
        "title": "Appointment confirmed",
        "body": "Your {service_name} appointment on {when} is confirmed.",
        "sms": "BarberBooking: Your appointment on {when} is confirmed.",
    },
    NotificationType.APPOINTMENT_RESCHEDULED: {
        "title": "Appointment rescheduled",
        "body": "An appointment has moved to {when}.",
        "sms": "BarberBooking: Appointment moved to {when}.",
    },
    NotificationType.APPOINTMENT_CANCELED: {
        "title": "Appointment canceled",
        "body": "The appointment on {when} was canceled by the {canceled_by}.",
        "sms": "BarberBooking: Appointment on {when} was canceled.",
    },
    NotificationType.APPOINTMENT_COMPLETED: {
        "title": "Thanks for visiting",
        "body": "Your appointment on {when} is complete. Tell others how it went with a review.",
        "sms": None,
    },
    NotificationType.APPOINTMENT_REMINDER: {
        "title": "Appointment reminder",
        "body": "Reminder: your appointment is on {when}.",
        "sms": "BarberBooking: Reminder, your appointment is on {when}.",
    },
    NotificationType.PAYMENT_SUCCESS: {
        "title": "Payment received",
        "body": "Payment of {currency} {amount} received for your appointment on {when}.",
        "sms": "BarberBooking: Payment of {currency} {amount} received.",
    },
    NotificationType.REFUND_PROCESSED: {
        "title": "Refund processed",
        "body": "A refund of {currency} {amount} has been processed.",
        "sms": "BarberBooking: Refund of {currency} {amount} processed.",
    },
    NotificationType.REVIEW_RECEIVED: {
        "title": "New review",
        "body": "You received a {rating}-star review.",
        "sms": None,
    },
    NotificationType.ACCOUNT_VERIFIED: {
        "title": "Shop verified",
        "body": "Your shop {shop_name} has been verified.",
        "sms": "BarberBooking: Your shop has been verified.",
    },
}


def render(notification_type: NotificationType, channel: str, **template_vars) -> Optional[str]:
    template = TEMPLATES.get(notification_type, {}).get(channel)
    if template is None:
        return None
    try:
        return template.format(**template_vars)
    except KeyError as e:
        logger.warning(f"Missing template variable {e} for {notification_type.value}/{channel}")
        return template


def notify(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    appointment_id: Optional[uuid.UUID] = None,
    **template_vars,
) -> Notification:
    """Queue an in-app notification on the current session (no flush)."""
    notif = Notification(
        user_id=user_id,
        appointment_id=appointment_id,
        type=notification_type,
        title=render(notification_type, "title", **template_vars) or "Notification",
        body=render(notification_type, "body", **template_vars) or "",
        data={k: str(v) for k, v in template_vars.items()},
    )
    db.add(notif)
    return notif
