"""
Recurring series expansion and the create-recurring endpoint.
"""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import select

from checkout_service import checkout_service, CheckoutError
from conftest import auth_headers
from models import Appointment, AppointmentStatus, RecurringPattern, Service
from recurring_api import expand_weekly_occurrences, MAX_OCCURRENCES


def test_weekly_expansion_is_inclusive():
    dates = expand_weekly_occurrences(date(2024, 1, 1), date(2024, 4, 22))
    assert len(dates) == 17
    assert dates[0] == date(2024, 1, 1)
    assert dates[-1] == date(2024, 4, 22)
    assert all((b - a).days == 7 for a, b in zip(dates, dates[1:]))


def test_single_day_series_has_one_occurrence():
    assert expand_weekly_occurrences(date(2024, 1, 1), date(2024, 1, 1)) == [date(2024, 1, 1)]


def test_end_before_start_is_empty():
    assert expand_weekly_occurrences(date(2024, 1, 8), date(2024, 1, 1)) == []


def test_biweekly_expansion():
    dates = expand_weekly_occurrences(date(2024, 1, 1), date(2024, 2, 1), RecurringPattern.BIWEEKLY)
    assert dates == [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)]


def test_monthly_expansion_clamps_day():
    dates = expand_weekly_occurrences(date(2024, 1, 31), date(2024, 5, 1), "monthly")
    assert dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]


@pytest.fixture
def recurring_sessions(monkeypatch):
    created = []

    def fake_create(tenant, service, recurring_group_id, occurrence_count, recurring_pattern, customer_email=None, slug=None):
        created.append({
            "tenant_id": tenant.id,
            "service_id": service.id,
            "recurring_group_id": recurring_group_id,
            "occurrence_count": occurrence_count,
        })
        return {"checkout_url": "https://checkout.stripe.test/c/cs_rec", "session_id": "cs_rec"}

    monkeypatch.setattr(checkout_service, "create_recurring_session", fake_create)
    return created


def booking(tenant, service, **overrides):
    payload = {
        "tenantId": tenant.id,
        "serviceId": service.id,
        "startDate": "2024-03-04",
        "startTime": "09:00",
        "recurringPattern": "weekly",
        "endDate": "2024-03-25",
        "customerEmail": "sam@example.com",
        "slug": tenant.slug,
    }
    payload.update(overrides)
    return payload


async def test_creates_series_with_parent_and_group(client, db, pro_tenant, pro_service, recurring_sessions):
    response = await client.post("/api/appointments/create-recurring", json=booking(pro_tenant, pro_service))

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["appointmentCount"] == 4
    assert data["checkoutUrl"] == "https://checkout.stripe.test/c/cs_rec"

    rows = (await db.execute(
        select(Appointment).where(Appointment.recurring_group_id == data["recurringGroupId"]).order_by(Appointment.start_time)
    )).scalars().all()
    assert len(rows) == 4

    parent, children = rows[0], rows[1:]
    assert parent.parent_appointment_id is None
    assert all(child.parent_appointment_id == parent.id for child in children)
    assert all(row.status == AppointmentStatus.PENDING and not row.paid for row in rows)
    assert all(row.service_id == pro_service.id and row.tenant_id == pro_tenant.id for row in rows)
    assert all(row.recurring_pattern == "weekly" and row.is_recurring for row in rows)
    assert recurring_sessions[0]["occurrence_count"] == 4


async def test_local_time_is_kept_across_dst(client, db, pro_tenant, pro_service, recurring_sessions):
    # America/New_York switches to EDT on 2024-03-10
    response = await client.post("/api/appointments/create-recurring", json=booking(pro_tenant, pro_service))
    group_id = response.json()["recurringGroupId"]

    rows = (await db.execute(
        select(Appointment).where(Appointment.recurring_group_id == group_id).order_by(Appointment.start_time)
    )).scalars().all()
    assert rows[0].start_time == datetime(2024, 3, 4, 14, 0)
    assert rows[1].start_time == datetime(2024, 3, 11, 13, 0)
    assert rows[0].end_time - rows[0].start_time == timedelta(minutes=30)


async def test_starter_tenant_is_rejected(client, db, starter_tenant, recurring_sessions):
    service = Service(tenant_id=starter_tenant.id, name="Standard Clean", price=120.0, duration_minutes=120)
    db.add(service)
    await db.commit()

    response = await client.post("/api/appointments/create-recurring", json=booking(starter_tenant, service))

    assert response.status_code == 403
    assert "Upgrade to Pro" in response.json()["detail"]
    assert (await db.execute(select(Appointment))).scalars().all() == []
    assert recurring_sessions == []


async def test_unknown_tenant_is_404(client, pro_tenant, pro_service, recurring_sessions):
    response = await client.post("/api/appointments/create-recurring", json=booking(pro_tenant, pro_service, tenantId=9999))
    assert response.status_code == 404


async def test_service_of_another_tenant_is_404(client, db, pro_tenant, elite_tenant, recurring_sessions):
    foreign = Service(tenant_id=elite_tenant.id, name="Facial", price=95.0, duration_minutes=60)
    db.add(foreign)
    await db.commit()

    response = await client.post("/api/appointments/create-recurring", json=booking(pro_tenant, foreign))
    assert response.status_code == 404


async def test_end_before_start_is_validation_error(client, pro_tenant, pro_service, recurring_sessions):
    response = await client.post(
        "/api/appointments/create-recurring",
        json=booking(pro_tenant, pro_service, endDate="2024-03-01"),
    )
    assert response.status_code == 422


async def test_malformed_start_time_is_validation_error(client, pro_tenant, pro_service, recurring_sessions):
    response = await client.post(
        "/api/appointments/create-recurring",
        json=booking(pro_tenant, pro_service, startTime="9am"),
    )
    assert response.status_code == 422


async def test_series_length_is_capped(client, pro_tenant, pro_service, recurring_sessions):
    response = await client.post(
        "/api/appointments/create-recurring",
        json=booking(pro_tenant, pro_service, startDate="2024-01-01", endDate="2027-01-01"),
    )
    assert response.status_code == 400
    assert str(MAX_OCCURRENCES) in response.json()["detail"]


async def test_checkout_failure_rolls_back_series(client, db, pro_tenant, pro_service, monkeypatch):
    def failing_create(*args, **kwargs):
        raise CheckoutError("Stripe unavailable")

    monkeypatch.setattr(checkout_service, "create_recurring_session", failing_create)
    response = await client.post("/api/appointments/create-recurring", json=booking(pro_tenant, pro_service))

    assert response.status_code == 502
    assert (await db.execute(select(Appointment))).scalars().all() == []


async def test_operator_can_read_and_cancel_series(client, db, pro_tenant, pro_service, recurring_sessions):
    start = date.today() + timedelta(days=7)
    created = await client.post(
        "/api/appointments/create-recurring",
        json=booking(pro_tenant, pro_service, startDate=start.isoformat(), endDate=(start + timedelta(weeks=2)).isoformat()),
    )
    group_id = created.json()["recurringGroupId"]

    series = await client.get(f"/api/appointments/recurring/{group_id}", headers=auth_headers(pro_tenant))
    assert series.status_code == 200
    assert [row["status"] for row in series.json()] == ["PENDING"] * 3

    cancelled = await client.post(f"/api/appointments/recurring/{group_id}/cancel", headers=auth_headers(pro_tenant))
    assert cancelled.json()["cancelled"] == 3

    series = await client.get(f"/api/appointments/recurring/{group_id}", headers=auth_headers(pro_tenant))
    assert {row["status"] for row in series.json()} == {"CANCELLED"}


async def test_series_routes_require_pro(client, starter_tenant):
    response = await client.get("/api/appointments/recurring/some-group", headers=auth_headers(starter_tenant))
    assert response.status_code == 403
