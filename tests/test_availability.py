"""
tests/test_availability.py
Tests for the availability ledger: publishing, slot add/remove, public reads,
reserve/release semantics and reconciliation.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.availability.ledger import AvailabilityLedger, find_overlap
from shared.errors import NotFound, SlotUnavailable
from shared.models.models import (
    Appointment,
    AppointmentStatus,
    Availability,
    Barber,
    Service,
    Slot,
    User,
    UserRole,
)
from tests.conftest import TestSessionLocal, at, auth_headers, slot_day


def _slot_json(day, start_hour, end_hour):
    return {"start_at": at(day, start_hour).isoformat(), "end_at": at(day, end_hour).isoformat()}


# ── Publishing ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_publish_day(client: AsyncClient, barber_user: User, barber: Barber):
    day = slot_day()
    response = await client.put(
        f"/availability/{barber.id}",
        headers=auth_headers(barber_user),
        json={"date": day.isoformat(), "slots": [_slot_json(day, 4, 5), _slot_json(day, 5, 6)]},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["date"] == day.isoformat()
    assert data["timezone"] == "Asia/Kolkata"
    assert len(data["slots"]) == 2
    assert all(not s["is_booked"] for s in data["slots"])


@pytest.mark.asyncio
async def test_publish_overlapping_slots_rejected(
    client: AsyncClient, barber_user: User, barber: Barber
):
    day = slot_day()
    response = await client.put(
        f"/availability/{barber.id}",
        headers=auth_headers(barber_user),
        json={"date": day.isoformat(), "slots": [_slot_json(day, 4, 6), _slot_json(day, 5, 7)]},
    )
    assert response.status_code == 400
    assert "overlap" in response.json()["detail"]


@pytest.mark.asyncio
async def test_publish_slot_on_wrong_day_rejected(
    client: AsyncClient, barber_user: User, barber: Barber
):
    day = slot_day()
    next_day = day + timedelta(days=1)
    response = await client.put(
        f"/availability/{barber.id}",
        headers=auth_headers(barber_user),
        json={"date": day.isoformat(), "slots": [_slot_json(next_day, 4, 5)]},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_publish_keeps_booked_slots(
    client: AsyncClient,
    barber_user: User,
    barber: Barber,
    published_day: Availability,
    db: AsyncSession,
):
    """Republishing replaces free slots only; a booked slot survives untouched."""
    booked = published_day.slots[0]
    holder = uuid.uuid4()
    booked.is_booked = True
    booked.appointment_id = holder
    await db.commit()

    day = published_day.date
    response = await client.put(
        f"/availability/{barber.id}",
        headers=auth_headers(barber_user),
        json={"date": day.isoformat(), "slots": [_slot_json(day, 8, 9)]},
    )
    assert response.status_code == 200
    slots = response.json()["slots"]
    assert len(slots) == 2
    kept = [s for s in slots if s["is_booked"]]
    assert len(kept) == 1
    assert kept[0]["appointment_id"] == str(holder)


@pytest.mark.asyncio
async def test_publish_overlapping_booked_slot_rejected(
    client: AsyncClient,
    barber_user: User,
    barber: Barber,
    published_day: Availability,
    db: AsyncSession,
):
    booked = published_day.slots[0]   # 04:00-05:00
    booked.is_booked = True
    booked.appointment_id = uuid.uuid4()
    await db.commit()

    day = published_day.date
    response = await client.put(
        f"/availability/{barber.id}",
        headers=auth_headers(barber_user),
        json={"date": day.isoformat(), "slots": [
            {"start_at": at(day, 4, 30).isoformat(), "end_at": at(day, 5, 30).isoformat()},
        ]},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_publish_other_shop_forbidden(
    client: AsyncClient, other_customer: User, barber: Barber, db: AsyncSession
):
    other_customer.role = UserRole.BARBER
    await db.commit()
    day = slot_day()
    response = await client.put(
        f"/availability/{barber.id}",
        headers=auth_headers(other_customer),
        json={"date": day.isoformat(), "slots": [_slot_json(day, 4, 5)]},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_customer_cannot_publish(client: AsyncClient, customer: User, barber: Barber):
    day = slot_day()
    response = await client.put(
        f"/availability/{barber.id}",
        headers=auth_headers(customer),
        json={"date": day.isoformat(), "slots": []},
    )
    assert response.status_code == 403


# ── Add / Remove ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_add_slot_and_overlap(
    client: AsyncClient, barber_user: User, barber: Barber, published_day: Availability
):
    day = published_day.date
    response = await client.post(
        f"/availability/{barber.id}/slots",
        headers=auth_headers(barber_user),
        json={"date": day.isoformat(), **_slot_json(day, 9, 10)},
    )
    assert response.status_code == 201
    assert response.json()["is_booked"] is False

    response = await client.post(
        f"/availability/{barber.id}/slots",
        headers=auth_headers(barber_user),
        json={"date": day.isoformat(), **_slot_json(day, 6, 8)},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_remove_free_slot(
    client: AsyncClient, barber_user: User, barber: Barber, published_day: Availability
):
    day = published_day.date
    response = await client.delete(
        f"/availability/{barber.id}/slots",
        headers=auth_headers(barber_user),
        params={"date": day.isoformat(), **_slot_json(day, 4, 5)},
    )
    assert response.status_code == 200

    response = await client.get(f"/availability/{barber.id}/slots", params={"date": day.isoformat()})
    assert len(response.json()) == 2


@pytest.mark.asyncio
async def test_remove_booked_slot_conflicts(
    client: AsyncClient,
    barber_user: User,
    barber: Barber,
    published_day: Availability,
    db: AsyncSession,
):
    slot = published_day.slots[0]
    slot.is_booked = True
    slot.appointment_id = uuid.uuid4()
    await db.commit()

    day = published_day.date
    response = await client.delete(
        f"/availability/{barber.id}/slots",
        headers=auth_headers(barber_user),
        params={"date": day.isoformat(), **_slot_json(day, 4, 5)},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_remove_missing_slot(
    client: AsyncClient, barber_user: User, barber: Barber, published_day: Availability
):
    day = published_day.date
    response = await client.delete(
        f"/availability/{barber.id}/slots",
        headers=auth_headers(barber_user),
        params={"date": day.isoformat(), **_slot_json(day, 10, 11)},
    )
    assert response.status_code == 404


# ── Public Reads ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_public_open_slots_hide_booked(
    client: AsyncClient, barber: Barber, published_day: Availability, db: AsyncSession
):
    slot = published_day.slots[1]
    slot.is_booked = True
    slot.appointment_id = uuid.uuid4()
    await db.commit()

    response = await client.get(
        f"/availability/{barber.id}/slots", params={"date": published_day.date.isoformat()}
    )
    assert response.status_code == 200
    starts = [s["start_at"] for s in response.json()]
    assert len(starts) == 2
    assert "appointment_id" not in response.json()[0]


@pytest.mark.asyncio
async def test_weekly_schedule_hides_holders(
    client: AsyncClient, barber: Barber, published_day: Availability, db: AsyncSession
):
    slot = published_day.slots[0]
    slot.is_booked = True
    slot.appointment_id = uuid.uuid4()
    await db.commit()

    response = await client.get(
        f"/availability/{barber.id}/week", params={"start": published_day.date.isoformat()}
    )
    assert response.status_code == 200
    days = response.json()["days"]
    assert len(days) == 1
    assert all(s["appointment_id"] is None for s in days[0]["slots"])


@pytest.mark.asyncio
async def test_slots_unknown_barber(client: AsyncClient):
    response = await client.get(
        f"/availability/{uuid.uuid4()}/slots", params={"date": slot_day().isoformat()}
    )
    assert response.status_code == 404


# ── Ledger primitives ──────────────────────────────────────────────────────────

def test_find_overlap():
    day = slot_day()
    assert find_overlap([(at(day, 4), at(day, 5)), (at(day, 5), at(day, 6))]) is None
    assert find_overlap([(at(day, 4), at(day, 6)), (at(day, 5), at(day, 7))]) is not None


@pytest.mark.asyncio
async def test_reserve_then_reserve_again_is_unavailable(
    barber: Barber, published_day: Availability
):
    day = published_day.date
    async with TestSessionLocal() as session:
        ledger = AvailabilityLedger(session)
        slot = await ledger.reserve(barber.id, day, at(day, 4), at(day, 4, 30), uuid.uuid4())
        assert slot.is_booked is True
        await session.commit()

    async with TestSessionLocal() as session:
        with pytest.raises(SlotUnavailable):
            await AvailabilityLedger(session).reserve(
                barber.id, day, at(day, 4), at(day, 4, 30), uuid.uuid4()
            )


@pytest.mark.asyncio
async def test_reserve_without_covering_slot(barber: Barber, published_day: Availability):
    day = published_day.date
    async with TestSessionLocal() as session:
        with pytest.raises(NotFound):
            # 06:30-07:30 spills past the last slot
            await AvailabilityLedger(session).reserve(
                barber.id, day, at(day, 6, 30), at(day, 7, 30), uuid.uuid4()
            )


@pytest.mark.asyncio
async def test_release_is_idempotent(barber: Barber, published_day: Availability):
    day = published_day.date
    holder = uuid.uuid4()
    async with TestSessionLocal() as session:
        ledger = AvailabilityLedger(session)
        await ledger.reserve(barber.id, day, at(day, 5), at(day, 6), holder)
        assert await ledger.release(holder) is True
        assert await ledger.release(holder) is False
        await session.commit()

    async with TestSessionLocal() as session:
        open_slots = await AvailabilityLedger(session).open_slots(barber.id, day)
        assert len(open_slots) == 3


@pytest.mark.asyncio
async def test_reconcile_frees_orphaned_and_terminal_holds(
    barber: Barber,
    customer: User,
    service: Service,
    published_day: Availability,
    db: AsyncSession,
):
    day = published_day.date
    orphan, terminal, live = published_day.slots

    canceled = Appointment(
        customer_id=customer.id, barber_id=barber.id, service_id=service.id,
        start_at=terminal.start_at, end_at=terminal.end_at, price=service.price,
        status=AppointmentStatus.CANCELED,
    )
    pending = Appointment(
        customer_id=customer.id, barber_id=barber.id, service_id=service.id,
        start_at=live.start_at, end_at=live.end_at, price=service.price,
        status=AppointmentStatus.PENDING,
    )
    db.add_all([canceled, pending])
    await db.flush()
    orphan.is_booked, orphan.appointment_id = True, uuid.uuid4()
    terminal.is_booked, terminal.appointment_id = True, canceled.id
    live.is_booked, live.appointment_id = True, pending.id
    await db.commit()

    async with TestSessionLocal() as session:
        outcome = await AvailabilityLedger(session).reconcile()
        await session.commit()
    assert outcome.scanned == 3
    assert outcome.released_orphaned == 1
    assert outcome.released_terminal == 1

    result = await db.execute(
        select(Slot).where(Slot.availability_id == published_day.id, Slot.is_booked.is_(True))
    )
    still_booked = result.scalars().all()
    assert len(still_booked) == 1
    assert still_booked[0].appointment_id == pending.id
