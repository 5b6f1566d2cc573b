"""
Checkout Service
Creates hosted Stripe Checkout Sessions on behalf of connected tenant accounts
"""

import stripe
import logging
from typing import Optional, Dict, Any
from config import settings
from tier_policy import get_platform_fee_percent

logger = logging.getLogger(__name__)


class CheckoutError(Exception):
    """The checkout provider rejected or failed a request."""


class CheckoutService:
    """Service for Stripe Checkout operations"""

    def __init__(self):
        self.secret_key = settings.STRIPE_SECRET_KEY
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        self.currency = settings.CHECKOUT_CURRENCY
        stripe.api_key = self.secret_key

    def is_configured(self) -> bool:
        """Check if Stripe keys are configured"""
        return bool(self.secret_key)

    def get_configuration_status(self) -> Dict[str, Any]:
        """
        Get Stripe configuration status without exposing actual keys.
        Logged at startup for diagnostics.
        """
        secret_key = self.secret_key or ""
        issues = []

        if not secret_key:
            issues.append("STRIPE_SECRET_KEY is not set")
        elif secret_key.startswith("pk_"):
            issues.append("STRIPE_SECRET_KEY appears to be a publishable key (starts with pk_)")
        elif not secret_key.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            issues.append("STRIPE_SECRET_KEY has invalid format (should start with sk_test_ or sk_live_)")

        if secret_key != secret_key.strip():
            issues.append("STRIPE_SECRET_KEY has leading/trailing whitespace")

        if not self.webhook_secret:
            issues.append("STRIPE_WEBHOOK_SECRET is not set - payment confirmations will not arrive")

        mode = "unknown"
        if "_test_" in secret_key:
            mode = "test"
        elif "_live_" in secret_key:
            mode = "live"

        return {
            "is_configured": self.is_configured(),
            "secret_key_preview": f"{secret_key[:12]}..." if len(secret_key) > 12 else "not_set",
            "webhook_secret_set": bool(self.webhook_secret),
            "mode": mode,
            "issues": issues,
            "has_issues": len(issues) > 0
        }

    @staticmethod
    def to_cents(amount: float) -> int:
        return int(round(amount * 100))

    @staticmethod
    def resolve_fee_percent(tenant) -> float:
        """Tenant override if set, otherwise the tier fee schedule"""
        if tenant.platform_fee_percent is not None:
            return float(tenant.platform_fee_percent)
        return get_platform_fee_percent(tenant.tier)

    def calculate_application_fee(self, amount_cents: int, fee_percent: float) -> int:
        """Platform fee in cents for a charge of amount_cents"""
        return int(round(amount_cents * (fee_percent / 100)))

    def _create_session(self, params: Dict[str, Any]):
        if not self.is_configured():
            raise CheckoutError("Payments are not configured")
        try:
            return stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session creation failed: {e}")
            raise CheckoutError(getattr(e, "user_message", None) or "Failed to create checkout session") from e

    def create_terminal_session(
        self,
        tenant,
        amount: float,
        invoice_id: int,
        method: str = "scan",
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a checkout session for an in-person terminal charge.

        The customer completes it on their own device after scanning the QR
        code, so the only confirmation path is the webhook.

        Returns:
            Dict with checkout_url and session_id
        """
        amount_cents = self.to_cents(amount)
        fee_cents = self.calculate_application_fee(amount_cents, self.resolve_fee_percent(tenant))
        method_label = "QR Code" if method == "scan" else "Payment Link"

        session = self._create_session({
            "mode": "payment",
            "customer_email": customer_email or None,
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": f"Payment - {tenant.name}",
                            "description": f"Terminal payment via {method_label}",
                        },
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "payment_intent_data": {
                "application_fee_amount": fee_cents,
                "transfer_data": {"destination": tenant.stripe_account_id},
                "metadata": {
                    "tenant_id": str(tenant.id),
                    "type": "TERMINAL_PAYMENT",
                    "method": method,
                },
            },
            "success_url": f"{settings.FRONTEND_URL}/dashboard/success?session_id={{CHECKOUT_SESSION_ID}}&tenant_id={tenant.id}&terminal=success",
            "cancel_url": f"{settings.FRONTEND_URL}/dashboard?tenant={tenant.slug}&terminal=cancelled",
            "metadata": {
                "tenant_id": str(tenant.id),
                "type": "TERMINAL_PAYMENT",
                "method": method,
                "invoice_id": str(invoice_id),
                "customer_name": customer_name or "",
            },
        })

        logger.info(f"Terminal checkout session {session.id} created for tenant {tenant.id} ({amount_cents} cents)")
        return {"checkout_url": session.url, "session_id": session.id}

    def create_recurring_session(
        self,
        tenant,
        service,
        recurring_group_id: str,
        occurrence_count: int,
        recurring_pattern: str,
        customer_email: Optional[str] = None,
        slug: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create one checkout session covering every occurrence of a recurring series"""
        amount_cents = self.to_cents(service.price)
        fee_cents = self.calculate_application_fee(amount_cents, self.resolve_fee_percent(tenant))
        slug = slug or tenant.slug

        metadata = {
            "tenant_id": str(tenant.id),
            "recurring_group_id": recurring_group_id,
            "appointment_count": str(occurrence_count),
            "type": "RECURRING_BOOKING",
        }

        session = self._create_session({
            "mode": "payment",
            "customer_email": customer_email or None,
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": f"Recurring {recurring_pattern} appointment",
                            "description": f"{occurrence_count} appointments with {tenant.name}",
                        },
                        "unit_amount": amount_cents,
                    },
                    "quantity": occurrence_count,
                }
            ],
            "payment_intent_data": {
                "application_fee_amount": fee_cents * occurrence_count,
                "transfer_data": {"destination": tenant.stripe_account_id},
                "metadata": metadata,
            },
            "success_url": f"{settings.FRONTEND_URL}/dashboard/success?session_id={{CHECKOUT_SESSION_ID}}&slug={slug}&recurring=true",
            "cancel_url": f"{settings.FRONTEND_URL}/{slug}",
            "metadata": metadata,
        })

        logger.info(
            f"Recurring checkout session {session.id} created for group {recurring_group_id} "
            f"({occurrence_count} occurrences)"
        )
        return {"checkout_url": session.url, "session_id": session.id}

    def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        """Current state of a checkout session as a plain dict"""
        try:
            return stripe.checkout.Session.retrieve(session_id).to_dict()
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve checkout session {session_id}: {e}")
            raise CheckoutError("Failed to retrieve checkout session") from e

    def expire_session(self, session_id: str) -> bool:
        """Expire an open session so an abandoned QR code can no longer be paid"""
        try:
            stripe.checkout.Session.expire(session_id)
            return True
        except stripe.StripeError as e:
            # Already completed or expired sessions cannot be expired again
            logger.warning(f"Could not expire checkout session {session_id}: {e}")
            return False

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the webhook signature and parse the event into a plain dict"""
        if not signature or not self.webhook_secret:
            raise CheckoutError("Missing signature or secret")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret).to_dict()
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise CheckoutError(f"Webhook Error: {e}") from e


# Singleton instance
checkout_service = CheckoutService()
