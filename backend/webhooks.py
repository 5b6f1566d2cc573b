"""
Checkout Provider Webhooks
Completed checkout sessions mark terminal invoices paid and confirm recurring series.
Every handler is safe to replay: the provider retries deliveries.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Header
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
import logging

from database import get_db
from models import Invoice, Appointment, AppointmentStatus
from checkout_service import checkout_service, CheckoutError
from invoice_service import get_invoice_by_session, mark_invoice_paid
from realtime import ChangeFeed, change_feed

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

TERMINAL_PAYMENT = "TERMINAL_PAYMENT"
RECURRING_BOOKING = "RECURRING_BOOKING"


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _find_terminal_invoice(db: AsyncSession, session: dict, tenant_id: Optional[int]) -> Optional[Invoice]:
    metadata = session.get("metadata") or {}
    invoice_id = _int_or_none(metadata.get("invoice_id"))

    if invoice_id is not None:
        result = await db.execute(
            select(Invoice).where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
        )
        invoice = result.scalar_one_or_none()
        if invoice:
            return invoice

    invoice = await get_invoice_by_session(db, session.get("id"))
    if invoice and invoice.tenant_id == tenant_id:
        return invoice
    return None


async def handle_terminal_payment(
    db: AsyncSession,
    session: dict,
    tenant_id: Optional[int],
    feed: ChangeFeed = change_feed
) -> bool:
    invoice = await _find_terminal_invoice(db, session, tenant_id)
    if not invoice:
        logger.error(f"No invoice found for terminal session {session.get('id')} (tenant {tenant_id})")
        return False

    customer = session.get("customer_details") or {}
    metadata = session.get("metadata") or {}
    return await mark_invoice_paid(
        db,
        invoice,
        payment_intent_id=session.get("payment_intent"),
        customer_name=customer.get("name") or metadata.get("customer_name") or None,
        customer_email=customer.get("email"),
        feed=feed
    )


async def handle_recurring_booking(db: AsyncSession, session: dict, tenant_id: Optional[int]) -> int:
    """Confirm and mark paid every occurrence of the series. Returns how many rows changed."""
    metadata = session.get("metadata") or {}
    recurring_group_id = metadata.get("recurring_group_id")
    if not recurring_group_id:
        logger.error(f"Recurring session {session.get('id')} has no recurring_group_id")
        return 0

    result = await db.execute(
        select(Appointment).where(
            Appointment.tenant_id == tenant_id,
            Appointment.recurring_group_id == recurring_group_id
        )
    )
    appointments = result.scalars().all()

    updated = 0
    for appointment in appointments:
        if appointment.paid and appointment.status == AppointmentStatus.CONFIRMED:
            continue
        if appointment.status == AppointmentStatus.PENDING:
            appointment.status = AppointmentStatus.CONFIRMED
        appointment.paid = True
        appointment.stripe_payment_intent = session.get("payment_intent")
        updated += 1

    await db.commit()
    logger.info(f"✅ Recurring series {recurring_group_id}: {updated} of {len(appointments)} appointments confirmed")
    return updated


async def process_checkout_completed(
    db: AsyncSession,
    session: dict,
    feed: ChangeFeed = change_feed
) -> str:
    """Dispatch a completed checkout session by its metadata type"""
    metadata = session.get("metadata") or {}
    payment_type = metadata.get("type")
    tenant_id = _int_or_none(metadata.get("tenant_id"))

    if session.get("payment_status") not in (None, "paid"):
        logger.info(f"Checkout session {session.get('id')} completed without payment ({session.get('payment_status')})")
        return "unpaid"

    if payment_type == TERMINAL_PAYMENT:
        await handle_terminal_payment(db, session, tenant_id, feed)
        return "terminal"

    if payment_type == RECURRING_BOOKING:
        await handle_recurring_booking(db, session, tenant_id)
        return "recurring"

    logger.warning(f"Unhandled checkout session type '{payment_type}' for session {session.get('id')}")
    return "ignored"


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db)
):
    """Handle Stripe webhook deliveries"""
    payload = await request.body()

    try:
        event = checkout_service.construct_webhook_event(payload, stripe_signature)
    except CheckoutError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    event_type = event.get("type")
    logger.info(f"Webhook received: {event_type} ({event.get('id')})")

    if event_type == "checkout.session.completed":
        handled = await process_checkout_completed(db, event["data"]["object"])
        return {"received": True, "handled": handled}

    return {"received": True, "handled": "ignored"}
