"""
tests/test_reviews.py
Tests for reviews: completed-appointment gating, one review per customer per
barber, and the denormalized rating kept in sync on create/update/delete.
"""

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Appointment, AppointmentStatus, Barber, Service, User
from tests.conftest import at, auth_headers, slot_day


async def _completed_visit(db: AsyncSession, user: User, barber: Barber, service: Service) -> Appointment:
    day = slot_day()
    item = Appointment(
        customer_id=user.id,
        barber_id=barber.id,
        service_id=service.id,
        start_at=at(day, 4),
        end_at=at(day, 4, 30),
        price=Decimal("500.00"),
        status=AppointmentStatus.COMPLETED,
    )
    db.add(item)
    await db.commit()
    return item


@pytest_asyncio.fixture
async def completed_appointment(
    db: AsyncSession, customer: User, barber: Barber, service: Service
) -> Appointment:
    return await _completed_visit(db, customer, barber, service)


async def _post_review(client, user, barber, rating=5, comment="Great fade"):
    return await client.post(
        "/reviews",
        headers=auth_headers(user),
        json={"barber_id": str(barber.id), "rating": rating, "comment": comment},
    )


# ── Create ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_review_updates_rating(
    client: AsyncClient,
    customer: User,
    barber: Barber,
    completed_appointment: Appointment,
    db: AsyncSession,
):
    response = await _post_review(client, customer, barber, rating=4)
    assert response.status_code == 201
    data = response.json()
    assert data["rating"] == 4
    assert data["user_name"] == customer.name

    await db.refresh(barber)
    assert barber.rating == Decimal("4.00")
    assert barber.rating_count == 1


@pytest.mark.asyncio
async def test_review_requires_completed_appointment(
    client: AsyncClient, customer: User, barber: Barber, service: Service, db: AsyncSession
):
    pending = Appointment(
        customer_id=customer.id,
        barber_id=barber.id,
        service_id=service.id,
        start_at=at(slot_day(), 4),
        end_at=at(slot_day(), 4, 30),
        price=Decimal("500.00"),
        status=AppointmentStatus.CONFIRMED,
    )
    db.add(pending)
    await db.commit()

    response = await _post_review(client, customer, barber)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_duplicate_review_conflicts(
    client: AsyncClient, customer: User, barber: Barber, completed_appointment: Appointment
):
    first = await _post_review(client, customer, barber)
    assert first.status_code == 201
    second = await _post_review(client, customer, barber, rating=1)
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_review_rating_out_of_range(
    client: AsyncClient, customer: User, barber: Barber, completed_appointment: Appointment
):
    response = await _post_review(client, customer, barber, rating=6)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_review_unknown_barber(client: AsyncClient, customer: User):
    response = await client.post(
        "/reviews",
        headers=auth_headers(customer),
        json={"barber_id": str(uuid.uuid4()), "rating": 5},
    )
    assert response.status_code == 404


# ── Aggregate ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rating_is_average_rounded(
    client: AsyncClient,
    customer: User,
    other_customer: User,
    barber: Barber,
    service: Service,
    completed_appointment: Appointment,
    db: AsyncSession,
):
    await _completed_visit(db, other_customer, barber, service)
    third = User(
        name="Third Customer", email="third@example.com", password_hash="x",
    )
    db.add(third)
    await db.commit()
    await _completed_visit(db, third, barber, service)

    await _post_review(client, customer, barber, rating=5)
    await _post_review(client, other_customer, barber, rating=4)
    await _post_review(client, third, barber, rating=4)

    await db.refresh(barber)
    assert barber.rating == Decimal("4.33")
    assert barber.rating_count == 3

    stats = await client.get(f"/reviews/barber/{barber.id}/stats")
    assert stats.status_code == 200
    body = stats.json()
    assert body["rating_count"] == 3
    assert body["distribution"] == {"1": 0, "2": 0, "3": 0, "4": 2, "5": 1}


@pytest.mark.asyncio
async def test_update_and_delete_recompute(
    client: AsyncClient,
    customer: User,
    barber: Barber,
    completed_appointment: Appointment,
    db: AsyncSession,
):
    created = (await _post_review(client, customer, barber, rating=2)).json()

    updated = await client.put(
        f"/reviews/{created['id']}",
        headers=auth_headers(customer),
        json={"rating": 5, "comment": "Changed my mind"},
    )
    assert updated.status_code == 200
    assert updated.json()["rating"] == 5
    await db.refresh(barber)
    assert barber.rating == Decimal("5.00")

    deleted = await client.delete(f"/reviews/{created['id']}", headers=auth_headers(customer))
    assert deleted.status_code == 200
    await db.refresh(barber)
    assert barber.rating == Decimal("0.00")
    assert barber.rating_count == 0


@pytest.mark.asyncio
async def test_cannot_edit_others_review(
    client: AsyncClient,
    customer: User,
    other_customer: User,
    barber: Barber,
    completed_appointment: Appointment,
):
    created = (await _post_review(client, customer, barber)).json()
    response = await client.put(
        f"/reviews/{created['id']}",
        headers=auth_headers(other_customer),
        json={"rating": 1},
    )
    assert response.status_code == 403

    response = await client.delete(
        f"/reviews/{created['id']}", headers=auth_headers(other_customer)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_can_delete_review(
    client: AsyncClient,
    customer: User,
    admin_user: User,
    barber: Barber,
    completed_appointment: Appointment,
):
    created = (await _post_review(client, customer, barber)).json()
    response = await client.delete(f"/reviews/{created['id']}", headers=auth_headers(admin_user))
    assert response.status_code == 200


# ── Reads ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_public_barber_reviews(
    client: AsyncClient, customer: User, barber: Barber, completed_appointment: Appointment
):
    await _post_review(client, customer, barber, comment="Clean lines")
    response = await client.get(f"/reviews/barber/{barber.id}")
    assert response.status_code == 200
    reviews = response.json()
    assert len(reviews) == 1
    assert reviews[0]["comment"] == "Clean lines"
    assert reviews[0]["user_name"] == customer.name


@pytest.mark.asyncio
async def test_my_reviews(
    client: AsyncClient, customer: User, barber: Barber, completed_appointment: Appointment
):
    await _post_review(client, customer, barber)
    response = await client.get("/reviews/me", headers=auth_headers(customer))
    assert response.status_code == 200
    assert len(response.json()) == 1
