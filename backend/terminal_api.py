"""
Payment Terminal API Endpoints
Creates checkout sessions for in-person terminal charges and reports their status
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from database import get_db
from models import Tenant, InvoiceStatus
from auth import get_current_tenant
from checkout_service import checkout_service, CheckoutError
from config import settings
from invoice_service import (
    add_pending_terminal_invoice,
    get_invoice_by_session,
    void_invoice,
    InvoiceStateError,
)
from schemas import TerminalCheckoutRequest, TerminalCheckoutResponse, TerminalSessionStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/terminal", tags=["terminal"])


@router.post("/checkout", response_model=TerminalCheckoutResponse)
async def create_terminal_checkout(
    request: TerminalCheckoutRequest,
    current_tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a hosted checkout session for an operator-entered amount.

    A 'sent' invoice is staged for the charge; the provider webhook marks it
    paid, which is what the terminal listens for.
    """
    if request.tenant_id != current_tenant.id:
        raise HTTPException(status_code=403, detail="Cannot charge on behalf of another tenant")

    if request.amount > settings.TERMINAL_MAX_AMOUNT:
        raise HTTPException(status_code=400, detail=f"Amount cannot exceed {settings.TERMINAL_MAX_AMOUNT:,.2f}")

    if not current_tenant.stripe_account_id:
        raise HTTPException(status_code=400, detail="Stripe account not connected")

    invoice = await add_pending_terminal_invoice(
        db,
        current_tenant,
        request.amount,
        customer_name=request.customer_name,
        customer_email=request.customer_email
    )

    try:
        session = checkout_service.create_terminal_session(
            current_tenant,
            request.amount,
            invoice_id=invoice.id,
            method=request.method,
            customer_name=request.customer_name,
            customer_email=request.customer_email
        )
    except CheckoutError as e:
        await db.rollback()
        logger.error(f"Terminal checkout failed for tenant {current_tenant.id}: {e}")
        raise HTTPException(status_code=502, detail="Failed to create checkout session")

    invoice.stripe_checkout_session_id = session["session_id"]
    await db.commit()

    return TerminalCheckoutResponse(
        checkout_url=session["checkout_url"],
        session_id=session["session_id"],
        invoice_id=invoice.id
    )


async def _get_owned_session_invoice(db: AsyncSession, session_id: str, tenant: Tenant):
    invoice = await get_invoice_by_session(db, session_id)
    if not invoice or invoice.tenant_id != tenant.id:
        raise HTTPException(status_code=404, detail="Checkout session not found")
    return invoice


@router.get("/sessions/{session_id}", response_model=TerminalSessionStatus)
async def get_terminal_session_status(
    session_id: str,
    current_tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db)
):
    """Current status of the invoice behind a terminal checkout session"""
    invoice = await _get_owned_session_invoice(db, session_id, current_tenant)
    return TerminalSessionStatus(
        session_id=session_id,
        invoice_id=invoice.id,
        status=invoice.status,
        amount=invoice.total_amount,
        invoice_number=invoice.invoice_number,
        customer_name=invoice.customer_name,
        customer_email=invoice.customer_email
    )


@router.post("/sessions/{session_id}/void")
async def void_terminal_session(
    session_id: str,
    current_tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db)
):
    """
    Operator cleared the terminal: void the pending invoice and expire the
    provider session so the abandoned QR code cannot be paid.
    """
    invoice = await _get_owned_session_invoice(db, session_id, current_tenant)

    try:
        voided = await void_invoice(db, invoice)
    except InvoiceStateError:
        raise HTTPException(status_code=409, detail="Payment already completed")

    expired = checkout_service.expire_session(session_id) if voided else False

    return {
        "status": InvoiceStatus.VOID.value,
        "session_expired": expired
    }
