"""
Payment Reconciler - Background sweep of unconfirmed terminal checkouts

Terminal invoices wait in 'sent' until the provider webhook marks them paid.
If a webhook delivery is lost, this job asks the provider directly:
1. Paid sessions mark the invoice paid (the terminal sees the usual change event)
2. Expired sessions void the invoice

Run as a background task using APScheduler.
"""

import asyncio
import logging
from typing import Dict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session_maker
from models import Invoice, InvoiceStatus
from checkout_service import CheckoutService, CheckoutError, checkout_service
from invoice_service import mark_invoice_paid, void_invoice
from realtime import ChangeFeed, change_feed

logger = logging.getLogger(__name__)


async def reconcile_pending_payments(
    db: AsyncSession,
    service: CheckoutService = checkout_service,
    feed: ChangeFeed = change_feed
) -> Dict[str, int]:
    """
    Check every 'sent' invoice that has a checkout session against the provider.

    Returns:
        Counts of invoices paid, voided, and still pending
    """
    result = await db.execute(
        select(Invoice).where(
            Invoice.status == InvoiceStatus.SENT.value,
            Invoice.stripe_checkout_session_id.isnot(None)
        ).order_by(Invoice.id)
    )
    invoices = result.scalars().all()
    summary = {"paid": 0, "voided": 0, "pending": 0}

    for invoice in invoices:
        try:
            session = service.retrieve_session(invoice.stripe_checkout_session_id)
        except CheckoutError as e:
            logger.warning(f"⚠️ Could not check session for invoice {invoice.invoice_number}: {e}")
            summary["pending"] += 1
            continue

        if session.get("payment_status") == "paid":
            customer = session.get("customer_details") or {}
            await mark_invoice_paid(
                db,
                invoice,
                payment_intent_id=session.get("payment_intent"),
                customer_name=customer.get("name"),
                customer_email=customer.get("email"),
                feed=feed
            )
            logger.info(f"✅ Recovered missed payment for invoice {invoice.invoice_number}")
            summary["paid"] += 1
        elif session.get("status") == "expired":
            await void_invoice(db, invoice, feed=feed)
            summary["voided"] += 1
        else:
            summary["pending"] += 1

    return summary


async def run_payment_reconciliation():
    """Scheduled entry point: opens its own session"""
    logger.info("🔍 Starting payment reconciliation...")
    async with async_session_maker() as db:
        summary = await reconcile_pending_payments(db)
    logger.info(
        f"✅ Payment reconciliation completed: {summary['paid']} paid, "
        f"{summary['voided']} voided, {summary['pending']} pending"
    )
    return summary


def start_payment_reconciler():
    """
    Start the APScheduler background scheduler.
    Runs the reconciliation every PAYMENT_RECONCILE_INTERVAL_MINUTES.
    """
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_payment_reconciliation,
        IntervalTrigger(minutes=settings.PAYMENT_RECONCILE_INTERVAL_MINUTES),
        id='payment_reconciliation',
        name='Unconfirmed Checkout Reconciliation',
        replace_existing=True,
        max_instances=1
    )

    scheduler.start()
    logger.info(f"📅 Payment reconciler started - every {settings.PAYMENT_RECONCILE_INTERVAL_MINUTES} minutes")

    return scheduler


if __name__ == "__main__":
    # Run a single sweep immediately
    asyncio.run(run_payment_reconciliation())
