"""
services/admin/router.py
Admin-only endpoints: barber verification, user moderation, platform
dashboard, slot reconciliation and the immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.availability.ledger import AvailabilityLedger
from services.notification.dispatcher import notify
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    Appointment,
    AppointmentStatus,
    Barber,
    NotificationType,
    Payment,
    PaymentStatus,
    Session,
    User,
    UserRole,
    UserStatus,
)
from shared.schemas.schemas import (
    AdminActionRequest,
    AppointmentResponse,
    BarberResponse,
    DashboardResponse,
    MessageResponse,
    PaginatedResponse,
    ReconcileResponse,
)
from shared.utils.dates import utcnow

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    db.add(AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    ))


async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ── Dashboard ──────────────────────────────────────────────────────────────────

@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide totals. Revenue counts paid payments only."""
    week_ago = utcnow() - timedelta(days=7)

    async def count(query) -> int:
        return (await db.scalar(query)) or 0

    total_revenue = await db.scalar(
        select(func.sum(Payment.amount)).where(Payment.status == PaymentStatus.PAID)
    )
    top = await db.execute(
        select(Barber)
        .where(Barber.rating_count > 0)
        .order_by(Barber.rating.desc(), Barber.rating_count.desc())
        .limit(5)
    )

    return DashboardResponse(
        total_users=await count(select(func.count(User.id))),
        total_barbers=await count(select(func.count(Barber.id))),
        verified_barbers=await count(
            select(func.count(Barber.id)).where(Barber.is_verified.is_(True))
        ),
        total_appointments=await count(select(func.count(Appointment.id))),
        pending_appointments=await count(
            select(func.count(Appointment.id)).where(Appointment.status == AppointmentStatus.PENDING)
        ),
        completed_appointments=await count(
            select(func.count(Appointment.id)).where(Appointment.status == AppointmentStatus.COMPLETED)
        ),
        appointments_last_7d=await count(
            select(func.count(Appointment.id)).where(Appointment.created_at >= week_ago)
        ),
        total_revenue=Decimal(str(total_revenue or 0)),
        top_barbers=[BarberResponse.model_validate(b) for b in top.scalars().all()],
    )


# ── Barber Verification ────────────────────────────────────────────────────────

@router.post("/barbers/{barber_id}/verify", response_model=MessageResponse)
async def verify_barber(
    barber_id: UUID,
    request: Request,
    data: AdminActionRequest = AdminActionRequest(),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Mark a shop as verified. Verified shops show up in recommendations."""
    barber = await db.scalar(select(Barber).where(Barber.id == barber_id))
    if not barber:
        raise HTTPException(status_code=404, detail="Barber not found")
    if barber.is_verified:
        raise HTTPException(status_code=409, detail="Barber is already verified")

    barber.is_verified = True
    barber.verified_at = utcnow()
    notify(db, barber.user_id, NotificationType.ACCOUNT_VERIFIED, shop_name=barber.shop_name)
    await _log(db, current_user, "VERIFY_BARBER", "Barber", str(barber_id),
               {"reason": data.reason}, request)
    return MessageResponse(message="Barber verified successfully")


# ── User Moderation ────────────────────────────────────────────────────────────

@router.post("/users/{user_id}/disable", response_model=MessageResponse)
async def disable_user(
    user_id: UUID,
    request: Request,
    data: AdminActionRequest = AdminActionRequest(),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Disable an account and sign out all its sessions. Admins cannot be disabled."""
    user = await _get_user_or_404(db, user_id)
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Cannot disable admin users")
    if user.status == UserStatus.DISABLED:
        raise HTTPException(status_code=409, detail="User is already disabled")

    user.status = UserStatus.DISABLED
    await db.execute(
        update(Session)
        .where(Session.user_id == user.id, Session.revoked_at.is_(None))
        .values(revoked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await _log(db, current_user, "DISABLE_USER", "User", str(user_id),
               {"reason": data.reason}, request)
    return MessageResponse(message="User disabled")


@router.post("/users/{user_id}/enable", response_model=MessageResponse)
async def enable_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Re-enable a disabled (or locked) account."""
    user = await _get_user_or_404(db, user_id)
    if user.status == UserStatus.ACTIVE:
        raise HTTPException(status_code=409, detail="User is already active")

    user.status = UserStatus.ACTIVE
    user.failed_login_attempts = 0
    user.locked_until = None
    await _log(db, current_user, "ENABLE_USER", "User", str(user_id), {}, request)
    return MessageResponse(message="User enabled")


# ── Appointment Oversight ──────────────────────────────────────────────────────

@router.get("/appointments", response_model=PaginatedResponse)
async def list_all_appointments(
    status_filter: str = Query(None, alias="status"),
    barber_id: UUID = Query(None),
    customer_id: UUID = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Appointment).order_by(Appointment.created_at.desc())

    if status_filter:
        try:
            query = query.where(Appointment.status == AppointmentStatus(status_filter))
        except ValueError:
            valid = [s.value for s in AppointmentStatus]
            raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {valid}")
    if barber_id:
        query = query.where(Appointment.barber_id == barber_id)
    if customer_id:
        query = query.where(Appointment.customer_id == customer_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return PaginatedResponse(
        items=[AppointmentResponse.model_validate(a).model_dump(mode="json") for a in result.scalars()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


# ── Reconciliation ─────────────────────────────────────────────────────────────

@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile_slots(
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Run the slot-hold sweep now instead of waiting for the beat schedule."""
    outcome = await AvailabilityLedger(db).reconcile()
    await _log(db, current_user, "RECONCILE_SLOTS", "Slot", None,
               {"released_orphaned": outcome.released_orphaned,
                "released_terminal": outcome.released_terminal}, request)
    return ReconcileResponse(
        scanned=outcome.scanned,
        released_orphaned=outcome.released_orphaned,
        released_terminal=outcome.released_terminal,
    )


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: str = Query(None, description="Filter by action type e.g. VERIFY_BARBER"),
    entity_type: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, newest first."""
    query = (
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .order_by(AdminAuditLog.created_at.desc())
    )
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            {
                "id": str(log.id),
                "admin_name": admin.name,
                "admin_email": admin.email,
                "action": log.action,
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "payload": log.payload,
                "ip_address": log.ip_address,
                "created_at": log.created_at.isoformat(),
            }
            for log, admin in result.all()
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
