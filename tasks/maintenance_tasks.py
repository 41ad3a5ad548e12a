"""
tasks/maintenance_tasks.py
Periodic housekeeping: slot-hold reconciliation and auth record cleanup.
"""

import asyncio
import logging
from dataclasses import asdict
from datetime import timedelta

from sqlalchemy import delete, or_

from services.availability.ledger import AvailabilityLedger
from shared.models.models import Otp, Session
from shared.utils.dates import utcnow
from tasks.celery_app import celery_app
from tasks.notification_tasks import DatabaseTask

logger = logging.getLogger(__name__)

REVOKED_SESSION_RETENTION_DAYS = 30


# ── Slot Reconciliation ────────────────────────────────────────────────────────

async def _reconcile() -> dict:
    from config.database import engine, get_db_context

    try:
        async with get_db_context() as db:
            outcome = await AvailabilityLedger(db).reconcile()
    finally:
        # Each asyncio.run() gets a fresh loop; pooled connections belong to the old one
        await engine.dispose()
    return asdict(outcome)


@celery_app.task(bind=True, max_retries=3)
def reconcile_slot_holds(self):
    """
    Beat task: runs every RECONCILE_INTERVAL_SECONDS.
    Frees booked slots whose appointment is missing, canceled or completed.
    """
    try:
        result = asyncio.run(_reconcile())
    except Exception as e:
        logger.exception(f"reconcile_slot_holds failed: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    logger.info(f"reconcile_slot_holds: {result}")
    return result


# ── Auth Cleanup ───────────────────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask)
def purge_expired_auth_records(self):
    """
    Beat task: runs hourly.
    Deletes expired or used OTPs and sessions that expired or were revoked
    long ago.
    """
    db = self.get_session()
    try:
        now = utcnow()
        otps = db.execute(
            delete(Otp).where(or_(Otp.expires_at < now, Otp.consumed_at.is_not(None)))
        ).rowcount
        sessions = db.execute(
            delete(Session).where(
                or_(
                    Session.expires_at < now,
                    Session.revoked_at < now - timedelta(days=REVOKED_SESSION_RETENTION_DAYS),
                )
            )
        ).rowcount
        db.commit()
        logger.info(f"Purged {otps} OTPs and {sessions} sessions")
        return {"otps": otps, "sessions": sessions}
    except Exception as e:
        db.rollback()
        logger.exception(f"purge_expired_auth_records failed: {e}")
        raise
    finally:
        db.close()
