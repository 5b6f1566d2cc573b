"""
Invoice Service
Invoice status transitions. Every committed status change is published on the
realtime change feed with before/after snapshots.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Invoice, InvoiceStatus, InvoiceSource
from realtime import ChangeEvent, ChangeFeed, change_feed
from timezone_utils import get_tenant_today

logger = logging.getLogger(__name__)


class InvoiceStateError(Exception):
    """Illegal invoice status transition."""


def invoice_snapshot(invoice: Invoice) -> dict:
    """Plain, JSON-safe view of an invoice row for change events"""
    return {
        "id": invoice.id,
        "tenant_id": invoice.tenant_id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "total_amount": invoice.total_amount,
        "customer_name": invoice.customer_name,
        "customer_email": invoice.customer_email,
        "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
        "stripe_checkout_session_id": invoice.stripe_checkout_session_id,
    }


def publish_invoice_change(
    event_type: str,
    old: Optional[dict],
    invoice: Invoice,
    feed: ChangeFeed = change_feed
) -> None:
    feed.publish(ChangeEvent(
        table="invoices",
        event_type=event_type,
        tenant_id=invoice.tenant_id,
        old=old or {},
        new=invoice_snapshot(invoice),
    ))


def format_invoice_number(invoice_id: int) -> str:
    return f"VTK-{invoice_id:06d}"


async def add_pending_terminal_invoice(
    db: AsyncSession,
    tenant,
    amount: float,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None
) -> Invoice:
    """
    Stage a 'sent' invoice for a terminal charge awaiting payment.
    Flushed but not committed; the caller owns the transaction.

    The number is derived from the primary key, so concurrent checkouts
    can never claim the same one.
    """
    invoice = Invoice(
        tenant_id=tenant.id,
        invoice_number=f"PENDING-{uuid.uuid4().hex[:16]}",
        customer_name=customer_name,
        customer_email=customer_email,
        status=InvoiceStatus.SENT.value,
        source=InvoiceSource.TERMINAL.value,
        total_amount=round(amount, 2),
        due_date=get_tenant_today(tenant.timezone or "UTC"),
    )
    db.add(invoice)
    await db.flush()
    invoice.invoice_number = format_invoice_number(invoice.id)
    await db.flush()
    return invoice


async def get_invoice_by_session(db: AsyncSession, session_id: str) -> Optional[Invoice]:
    result = await db.execute(
        select(Invoice).where(Invoice.stripe_checkout_session_id == session_id)
    )
    return result.scalar_one_or_none()


async def mark_invoice_paid(
    db: AsyncSession,
    invoice: Invoice,
    payment_intent_id: Optional[str] = None,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
    feed: ChangeFeed = change_feed
) -> bool:
    """
    Transition an invoice to 'paid'. Returns False when it already was paid.
    A void invoice can still be paid: the customer's money arrived regardless.
    """
    if invoice.status == InvoiceStatus.PAID.value:
        logger.info(f"Invoice {invoice.invoice_number} already paid - skipping")
        return False

    if invoice.status == InvoiceStatus.VOID.value:
        logger.warning(f"Payment received for voided invoice {invoice.invoice_number}")

    old = invoice_snapshot(invoice)
    invoice.status = InvoiceStatus.PAID.value
    invoice.paid_at = datetime.utcnow()
    if payment_intent_id:
        invoice.stripe_payment_intent_id = payment_intent_id
    if customer_name and not invoice.customer_name:
        invoice.customer_name = customer_name
    if customer_email and not invoice.customer_email:
        invoice.customer_email = customer_email

    await db.commit()
    publish_invoice_change("UPDATE", old, invoice, feed)

    logger.info(f"✅ Invoice {invoice.invoice_number} paid ({invoice.total_amount}) for tenant {invoice.tenant_id}")
    return True


async def void_invoice(
    db: AsyncSession,
    invoice: Invoice,
    feed: ChangeFeed = change_feed
) -> bool:
    """Void an unpaid invoice. Returns False when it already was void."""
    if invoice.status == InvoiceStatus.PAID.value:
        raise InvoiceStateError(f"Invoice {invoice.invoice_number} is already paid")
    if invoice.status == InvoiceStatus.VOID.value:
        return False

    old = invoice_snapshot(invoice)
    invoice.status = InvoiceStatus.VOID.value
    await db.commit()
    publish_invoice_change("UPDATE", old, invoice, feed)

    logger.info(f"Invoice {invoice.invoice_number} voided for tenant {invoice.tenant_id}")
    return True
