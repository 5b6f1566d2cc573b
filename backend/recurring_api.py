"""
Recurring Appointment API Endpoints
Expands a recurring booking into one appointment per occurrence and starts checkout
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import date, datetime, time, timedelta
from typing import List
import calendar
import logging
import uuid

from database import get_db
from models import Tenant, Service, Appointment, AppointmentStatus, RecurringPattern
from checkout_service import checkout_service, CheckoutError
from schemas import RecurringBookingRequest, RecurringBookingResponse, AppointmentResponse
from tier_middleware import load_tenant_with_tier, require_tier
from tier_policy import SubscriptionTier
from timezone_utils import tenant_local_to_utc

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/appointments", tags=["appointments"])

# Two years of weekly appointments
MAX_OCCURRENCES = 104


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def expand_weekly_occurrences(
    start_date: date,
    end_date: date,
    pattern: RecurringPattern = RecurringPattern.WEEKLY
) -> List[date]:
    """
    Occurrence dates from start_date through end_date inclusive.

    Monthly series keep the start day of month, clamped to shorter months
    (Jan 31 -> Feb 29 -> Mar 31).
    """
    if end_date < start_date:
        return []

    pattern = RecurringPattern(pattern)
    occurrences = []

    if pattern == RecurringPattern.MONTHLY:
        months = 0
        current = start_date
        while current <= end_date:
            occurrences.append(current)
            months += 1
            current = _add_months(start_date, months)
        return occurrences

    step = timedelta(weeks=2 if pattern == RecurringPattern.BIWEEKLY else 1)
    current = start_date
    while current <= end_date:
        occurrences.append(current)
        current += step
    return occurrences


@router.post("/create-recurring", response_model=RecurringBookingResponse)
async def create_recurring_appointments(
    request: RecurringBookingRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    PUBLIC ENDPOINT: Create a recurring series and a checkout session for it.

    All occurrences are written in one transaction. If the checkout session
    cannot be created the transaction is rolled back and no rows remain.
    """
    tenant = await load_tenant_with_tier(db, request.tenant_id, SubscriptionTier.PRO, "recurring_bookings")

    result = await db.execute(
        select(Service).where(
            Service.id == request.service_id,
            Service.tenant_id == tenant.id,
            Service.is_active == True
        )
    )
    service = result.scalar_one_or_none()
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")

    if not tenant.stripe_account_id:
        raise HTTPException(status_code=400, detail="This business is not accepting online payments yet")

    occurrences = expand_weekly_occurrences(request.start_date, request.end_date, request.recurring_pattern)
    if not occurrences:
        raise HTTPException(status_code=400, detail="No appointments fall within the selected dates")
    if len(occurrences) > MAX_OCCURRENCES:
        raise HTTPException(
            status_code=400,
            detail=f"A recurring series cannot exceed {MAX_OCCURRENCES} appointments"
        )

    hour, minute = (int(part) for part in request.start_time.split(":"))
    tenant_tz = tenant.timezone or "UTC"
    recurring_group_id = str(uuid.uuid4())
    parent = None

    for occurrence in occurrences:
        start_utc = tenant_local_to_utc(datetime.combine(occurrence, time(hour, minute)), tenant_tz)
        appointment = Appointment(
            tenant_id=tenant.id,
            service_id=service.id,
            customer_email=request.customer_email,
            start_time=start_utc,
            end_time=start_utc + timedelta(minutes=service.duration_minutes or 0),
            status=AppointmentStatus.PENDING,
            paid=False,
            is_recurring=True,
            recurring_pattern=request.recurring_pattern.value,
            recurring_end_date=request.end_date,
            recurring_group_id=recurring_group_id,
            parent_appointment_id=parent.id if parent else None,
        )
        db.add(appointment)
        if parent is None:
            # Parent needs its id before the children can reference it
            await db.flush()
            parent = appointment

    await db.flush()

    try:
        session = checkout_service.create_recurring_session(
            tenant,
            service,
            recurring_group_id=recurring_group_id,
            occurrence_count=len(occurrences),
            recurring_pattern=request.recurring_pattern.value,
            customer_email=request.customer_email,
            slug=request.slug
        )
    except CheckoutError as e:
        await db.rollback()
        logger.error(f"Recurring checkout failed for tenant {tenant.id}, rolled back {len(occurrences)} appointments: {e}")
        raise HTTPException(status_code=502, detail="Failed to create checkout session")

    await db.commit()

    logger.info(
        f"✅ Recurring series {recurring_group_id} created for tenant {tenant.id}: "
        f"{len(occurrences)} {request.recurring_pattern.value} appointments"
    )

    return RecurringBookingResponse(
        success=True,
        appointment_count=len(occurrences),
        recurring_group_id=recurring_group_id,
        checkout_url=session["checkout_url"]
    )


async def _get_series(db: AsyncSession, tenant: Tenant, recurring_group_id: str) -> List[Appointment]:
    result = await db.execute(
        select(Appointment).where(
            Appointment.tenant_id == tenant.id,
            Appointment.recurring_group_id == recurring_group_id
        ).order_by(Appointment.start_time)
    )
    appointments = list(result.scalars().all())
    if not appointments:
        raise HTTPException(status_code=404, detail="Recurring series not found")
    return appointments


@router.get("/recurring/{recurring_group_id}", response_model=List[AppointmentResponse])
async def get_recurring_series(
    recurring_group_id: str,
    current_tenant: Tenant = Depends(require_tier(SubscriptionTier.PRO, "recurring_bookings")),
    db: AsyncSession = Depends(get_db)
):
    """All occurrences of a series, earliest first"""
    return await _get_series(db, current_tenant, recurring_group_id)


@router.post("/recurring/{recurring_group_id}/cancel")
async def cancel_recurring_series(
    recurring_group_id: str,
    current_tenant: Tenant = Depends(require_tier(SubscriptionTier.PRO, "recurring_bookings")),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel the remaining occurrences of a series.
    Past and completed occurrences are left as they are.
    """
    appointments = await _get_series(db, current_tenant, recurring_group_id)
    now = datetime.utcnow()

    cancelled = 0
    for appointment in appointments:
        if appointment.start_time <= now:
            continue
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED):
            continue
        appointment.status = AppointmentStatus.CANCELLED
        cancelled += 1

    await db.commit()
    logger.info(f"Cancelled {cancelled} upcoming appointments in series {recurring_group_id}")

    return {
        "recurring_group_id": recurring_group_id,
        "cancelled": cancelled
    }
