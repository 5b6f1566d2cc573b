"""
Reconciliation of terminal invoices whose webhook never arrived.
"""
import stripe

from checkout_service import CheckoutError, CheckoutService
from conftest import sign_stripe_payload
from invoice_service import add_pending_terminal_invoice
from models import InvoiceStatus
from payment_reconciler import reconcile_pending_payments


class FakeStripe:
    def __init__(self, sessions):
        self.sessions = sessions

    def retrieve_session(self, session_id):
        session = self.sessions[session_id]
        if isinstance(session, Exception):
            raise session
        return session


async def stage(db, tenant, session_id):
    invoice = await add_pending_terminal_invoice(db, tenant, 25.0)
    invoice.stripe_checkout_session_id = session_id
    await db.commit()
    return invoice


async def test_reconcile_pays_voids_and_waits(db, pro_tenant, feed):
    paid = await stage(db, pro_tenant, "cs_paid")
    expired = await stage(db, pro_tenant, "cs_expired")
    open_ = await stage(db, pro_tenant, "cs_open")
    unreachable = await stage(db, pro_tenant, "cs_error")

    service = FakeStripe({
        "cs_paid": {"payment_status": "paid", "status": "complete", "payment_intent": "pi_1",
                    "customer_details": {"name": "Dana", "email": "dana@example.com"}},
        "cs_expired": {"payment_status": "unpaid", "status": "expired"},
        "cs_open": {"payment_status": "unpaid", "status": "open"},
        "cs_error": CheckoutError("Failed to retrieve checkout session"),
    })
    subscription = feed.subscribe("invoices", pro_tenant.id)

    summary = await reconcile_pending_payments(db, service=service, feed=feed)

    assert summary == {"paid": 1, "voided": 1, "pending": 2}
    assert paid.status == InvoiceStatus.PAID.value
    assert paid.customer_name == "Dana"
    assert expired.status == InvoiceStatus.VOID.value
    assert open_.status == InvoiceStatus.SENT.value
    assert unreachable.status == InvoiceStatus.SENT.value

    first = await subscription.get()
    assert first.new["status"] == "paid"
    assert first.new["stripe_checkout_session_id"] == "cs_paid"


async def test_second_run_finds_nothing_new(db, pro_tenant, feed):
    await stage(db, pro_tenant, "cs_paid")
    service = FakeStripe({"cs_paid": {"payment_status": "paid", "status": "complete"}})

    await reconcile_pending_payments(db, service=service, feed=feed)
    summary = await reconcile_pending_payments(db, service=service, feed=feed)
    assert summary == {"paid": 0, "voided": 0, "pending": 0}


async def test_reconcile_reads_real_stripe_sessions(db, pro_tenant, feed, monkeypatch):
    invoice = await stage(db, pro_tenant, "cs_live_shape")
    body, signature = sign_stripe_payload(
        {
            "id": "evt_lookup",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_live_shape",
                "object": "checkout.session",
                "status": "complete",
                "payment_status": "paid",
                "payment_intent": "pi_live",
                "customer_details": {"name": "Ari Cole", "email": "ari@example.com"},
                "metadata": {"tenant_id": str(pro_tenant.id), "type": "TERMINAL_PAYMENT"},
            }},
        },
        "whsec_lookup",
    )
    stripe_session = stripe.Webhook.construct_event(body, signature, "whsec_lookup")["data"]["object"]
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda session_id, **params: stripe_session)

    summary = await reconcile_pending_payments(db, service=CheckoutService(), feed=feed)

    assert summary == {"paid": 1, "voided": 0, "pending": 0}
    assert invoice.status == InvoiceStatus.PAID.value
    assert invoice.customer_email == "ari@example.com"
    assert invoice.stripe_payment_intent_id == "pi_live"
