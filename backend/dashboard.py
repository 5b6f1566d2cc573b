"""
Dashboard Aggregation
Owner-facing rollups computed from invoice and appointment rows that are
already loaded. The reducers accept ORM rows or plain dicts and do no I/O.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional
import logging

from database import get_db
from models import Tenant, Invoice, Appointment, InvoiceStatus, AppointmentStatus
from auth import get_current_tenant
from schemas import DashboardSummary, ChallengeProgress, InvoiceResponse, AppointmentResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

CHALLENGE_TARGETS = {
    "standard": 100.0,
    "elite": 250.0,
}
RECENT_TRANSACTION_LIMIT = 5
UPCOMING_APPOINTMENT_LIMIT = 5


def _field(row: Any, name: str, default=None):
    if isinstance(row, Mapping):
        return row.get(name, default)
    return getattr(row, name, default)


def _status(row: Any) -> Optional[str]:
    status = _field(row, "status")
    return status.value if hasattr(status, "value") else status


def total_revenue(invoices: Iterable[Any]) -> float:
    """Sum of totals on paid invoices"""
    return sum(
        float(_field(invoice, "total_amount") or 0)
        for invoice in invoices
        if _status(invoice) == InvoiceStatus.PAID.value
    )


def pending_invoice_count(invoices: Iterable[Any]) -> int:
    """Invoices still awaiting payment: anything not paid and not a draft"""
    excluded = {InvoiceStatus.PAID.value, InvoiceStatus.DRAFT.value}
    return sum(1 for invoice in invoices if _status(invoice) not in excluded)


def _activity_time(invoice: Any) -> datetime:
    return _field(invoice, "paid_at") or _field(invoice, "created_at") or datetime.min


def recent_transactions(invoices: Iterable[Any], limit: int = RECENT_TRANSACTION_LIMIT) -> List[Any]:
    """
    Most recent paid invoices, newest first by paid_at (created_at when unpaid).
    sorted() is stable, so rows with equal timestamps keep their input order.
    """
    paid = [invoice for invoice in invoices if _status(invoice) == InvoiceStatus.PAID.value]
    return sorted(paid, key=_activity_time, reverse=True)[:limit]


def challenge_target(challenge_type: Optional[str]) -> float:
    return CHALLENGE_TARGETS.get(challenge_type or "standard", CHALLENGE_TARGETS["standard"])


def challenge_progress(revenue: float, challenge_type: Optional[str] = "standard") -> ChallengeProgress:
    target = challenge_target(challenge_type)
    return ChallengeProgress(
        current=revenue,
        target=target,
        percentage=min(100.0, revenue * 100 / target)
    )


def upcoming_appointments(
    appointments: Iterable[Any],
    now: Optional[datetime] = None,
    limit: int = UPCOMING_APPOINTMENT_LIMIT
) -> List[Any]:
    now = now or datetime.utcnow()
    upcoming = [
        appointment for appointment in appointments
        if _field(appointment, "start_time") and _field(appointment, "start_time") > now
        and _status(appointment) != AppointmentStatus.CANCELLED.value
    ]
    return sorted(upcoming, key=lambda appointment: _field(appointment, "start_time"))[:limit]


def build_dashboard_summary(
    invoices: List[Invoice],
    appointments: List[Appointment],
    challenge_type: Optional[str] = "standard",
    now: Optional[datetime] = None
) -> DashboardSummary:
    revenue = total_revenue(invoices)
    return DashboardSummary(
        total_revenue=revenue,
        pending_invoices=pending_invoice_count(invoices),
        recent_transactions=[InvoiceResponse.model_validate(i) for i in recent_transactions(invoices)],
        challenge=challenge_progress(revenue, challenge_type),
        upcoming_appointments=[AppointmentResponse.model_validate(a) for a in upcoming_appointments(appointments, now)],
    )


@router.get("/summary", response_model=DashboardSummary)
async def get_dashboard_summary(
    current_tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db)
):
    """Revenue, pending invoices, recent payments and challenge progress for the operator"""
    invoices_result = await db.execute(
        select(Invoice)
        .where(Invoice.tenant_id == current_tenant.id)
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
    )
    appointments_result = await db.execute(
        select(Appointment)
        .where(
            Appointment.tenant_id == current_tenant.id,
            Appointment.start_time > datetime.utcnow()
        )
        .order_by(Appointment.start_time)
    )

    return build_dashboard_summary(
        list(invoices_result.scalars().all()),
        list(appointments_result.scalars().all()),
        challenge_type=current_tenant.challenge_type
    )
