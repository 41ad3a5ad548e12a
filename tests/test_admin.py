"""
tests/test_admin.py
Tests for admin-only endpoints: barber verification, user moderation, dashboard,
reconciliation, audit log.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AdminAuditLog,
    Appointment,
    AppointmentStatus,
    Availability,
    Barber,
    Notification,
    NotificationType,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    Service,
    Session,
    User,
    UserStatus,
)
from shared.utils.dates import utcnow
from tests.conftest import at, auth_headers, slot_day


# ── Access Control ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_customer_cannot_access_admin_endpoints(client: AsyncClient, customer: User):
    response = await client.get("/admin/dashboard", headers=auth_headers(customer))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_barber_cannot_access_admin_endpoints(client: AsyncClient, barber_user: User):
    response = await client.post("/admin/reconcile", headers=auth_headers(barber_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unauthenticated_cannot_access_admin(client: AsyncClient):
    response = await client.get("/admin/dashboard")
    assert response.status_code == 401


# ── Dashboard ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_dashboard_counts(
    client: AsyncClient,
    admin_user: User,
    customer: User,
    barber: Barber,
    service: Service,
    db: AsyncSession,
):
    day = slot_day()
    paid = Appointment(
        customer_id=customer.id, barber_id=barber.id, service_id=service.id,
        start_at=at(day, 4), end_at=at(day, 4, 30), price=service.price,
        status=AppointmentStatus.COMPLETED,
    )
    waiting = Appointment(
        customer_id=customer.id, barber_id=barber.id, service_id=service.id,
        start_at=at(day, 5), end_at=at(day, 5, 30), price=service.price,
        status=AppointmentStatus.PENDING,
    )
    db.add_all([paid, waiting])
    await db.flush()
    db.add(Payment(
        appointment_id=paid.id, user_id=customer.id, provider=PaymentProviderName.RAZORPAY,
        amount=Decimal("500.00"), currency="INR", status=PaymentStatus.PAID,
    ))
    await db.commit()

    response = await client.get("/admin/dashboard", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total_users"] == 3
    assert data["total_barbers"] == 1
    assert data["verified_barbers"] == 1
    assert data["total_appointments"] == 2
    assert data["pending_appointments"] == 1
    assert data["completed_appointments"] == 1
    assert data["appointments_last_7d"] == 2
    assert float(data["total_revenue"]) == 500.0
    # No reviews yet, so nobody qualifies as a top barber
    assert data["top_barbers"] == []


# ── Barber Verification ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_verify_barber(
    client: AsyncClient, admin_user: User, barber: Barber, db: AsyncSession
):
    barber.is_verified = False
    await db.commit()

    response = await client.post(
        f"/admin/barbers/{barber.id}/verify",
        headers=auth_headers(admin_user),
        json={"reason": "Documents checked"},
    )
    assert response.status_code == 200

    await db.refresh(barber)
    assert barber.is_verified is True
    assert barber.verified_at is not None

    note = await db.scalar(select(Notification).where(Notification.user_id == barber.user_id))
    assert note.type == NotificationType.ACCOUNT_VERIFIED
    assert "Sharp Cuts" in note.body

    log = await db.scalar(select(AdminAuditLog).where(AdminAuditLog.action == "VERIFY_BARBER"))
    assert log.entity_id == str(barber.id)
    assert log.payload == {"reason": "Documents checked"}


@pytest.mark.asyncio
async def test_verify_already_verified_conflicts(
    client: AsyncClient, admin_user: User, barber: Barber
):
    response = await client.post(
        f"/admin/barbers/{barber.id}/verify", headers=auth_headers(admin_user)
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_verify_unknown_barber(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"/admin/barbers/{uuid.uuid4()}/verify", headers=auth_headers(admin_user)
    )
    assert response.status_code == 404


# ── User Moderation ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_disable_user_revokes_sessions(
    client: AsyncClient, admin_user: User, customer: User, db: AsyncSession
):
    db.add(Session(
        user_id=customer.id,
        refresh_token_hash="a" * 64,
        expires_at=utcnow() + timedelta(days=7),
    ))
    await db.commit()

    response = await client.post(
        f"/admin/users/{customer.id}/disable",
        headers=auth_headers(admin_user),
        json={"reason": "Chargeback abuse"},
    )
    assert response.status_code == 200

    await db.refresh(customer)
    assert customer.status == UserStatus.DISABLED
    session = await db.scalar(
        select(Session).where(Session.user_id == customer.id).execution_options(populate_existing=True)
    )
    assert session.revoked_at is not None

    again = await client.post(
        f"/admin/users/{customer.id}/disable", headers=auth_headers(admin_user)
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_cannot_disable_admin(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"/admin/users/{admin_user.id}/disable", headers=auth_headers(admin_user)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_enable_user(
    client: AsyncClient, admin_user: User, customer: User, db: AsyncSession
):
    response = await client.post(
        f"/admin/users/{customer.id}/enable", headers=auth_headers(admin_user)
    )
    assert response.status_code == 409

    customer.status = UserStatus.DISABLED
    customer.failed_login_attempts = 5
    await db.commit()

    response = await client.post(
        f"/admin/users/{customer.id}/enable", headers=auth_headers(admin_user)
    )
    assert response.status_code == 200
    await db.refresh(customer)
    assert customer.status == UserStatus.ACTIVE
    assert customer.failed_login_attempts == 0


@pytest.mark.asyncio
async def test_moderate_unknown_user(client: AsyncClient, admin_user: User):
    response = await client.post(
        f"/admin/users/{uuid.uuid4()}/disable", headers=auth_headers(admin_user)
    )
    assert response.status_code == 404


# ── Appointment Oversight ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_all_appointments(
    client: AsyncClient,
    admin_user: User,
    customer: User,
    barber: Barber,
    service: Service,
    db: AsyncSession,
):
    day = slot_day()
    for hour, state in ((4, AppointmentStatus.PENDING), (5, AppointmentStatus.CANCELED)):
        db.add(Appointment(
            customer_id=customer.id, barber_id=barber.id, service_id=service.id,
            start_at=at(day, hour), end_at=at(day, hour, 30), price=service.price,
            status=state,
        ))
    await db.commit()

    response = await client.get(
        "/admin/appointments", headers=auth_headers(admin_user), params={"page_size": 1}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["pages"] == 2
    assert len(data["items"]) == 1

    canceled = await client.get(
        "/admin/appointments", headers=auth_headers(admin_user), params={"status": "canceled"}
    )
    assert canceled.json()["total"] == 1


@pytest.mark.asyncio
async def test_list_appointments_invalid_status(client: AsyncClient, admin_user: User):
    response = await client.get(
        "/admin/appointments", headers=auth_headers(admin_user), params={"status": "lost"}
    )
    assert response.status_code == 400


# ── Reconciliation & Audit Log ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reconcile_endpoint(
    client: AsyncClient, admin_user: User, published_day: Availability, db: AsyncSession
):
    orphan = published_day.slots[0]
    orphan.is_booked = True
    orphan.appointment_id = uuid.uuid4()
    await db.commit()

    response = await client.post("/admin/reconcile", headers=auth_headers(admin_user))
    assert response.status_code == 200
    assert response.json() == {"scanned": 1, "released_orphaned": 1, "released_terminal": 0}

    logs = await client.get(
        "/admin/audit-logs", headers=auth_headers(admin_user), params={"action": "reconcile_slots"}
    )
    assert logs.status_code == 200
    body = logs.json()
    assert body["total"] == 1
    entry = body["items"][0]
    assert entry["admin_email"] == admin_user.email
    assert entry["payload"]["released_orphaned"] == 1
