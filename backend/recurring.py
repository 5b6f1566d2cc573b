"""
Recurring Booking
Customer-side form state for booking a weekly series, gated on the tenant's
tier, and the client that hands the request off to the server for expansion
and checkout.
"""

import logging
from datetime import date, timedelta
from typing import Optional

import httpx

from config import settings
from models import RecurringPattern
from tier_policy import (
    SubscriptionTier,
    TierLike,
    has_recurring_booking_access,
    get_upgrade_message,
)

logger = logging.getLogger(__name__)

PAYMENT_ERROR_MESSAGE = "Payment setup failed. Please try again."


class TierAccessError(Exception):
    """Feature requires a higher subscription tier"""

    def __init__(self, required_tier: SubscriptionTier):
        self.required_tier = required_tier
        self.upgrade_message = get_upgrade_message(required_tier)
        super().__init__(self.upgrade_message)


class RecurringBookingError(Exception):
    """Series could not be created or checkout could not be started"""


def default_recurring_end_date(start_date: date, weeks: int = settings.RECURRING_DEFAULT_WEEKS) -> date:
    """One semester after start_date"""
    return start_date + timedelta(weeks=weeks)


class RecurringBookingForm:
    """
    State of the recurring-booking options on the public booking page.

    Enabling recurrence without Pro access sets upgrade_prompt instead of
    toggling; submit() checks the gate again before any request goes out.
    """

    def __init__(
        self,
        tenant_id: int,
        tier: TierLike,
        slug: Optional[str] = None,
        service_id: Optional[int] = None,
        start_date: Optional[date] = None,
        start_time: Optional[str] = None,
        customer_email: Optional[str] = None
    ):
        self.tenant_id = tenant_id
        self.tier = tier
        self.slug = slug
        self.service_id = service_id
        self.start_date = start_date
        self.start_time = start_time
        self.customer_email = customer_email
        self.is_recurring = False
        self.end_date: Optional[date] = None
        self.upgrade_prompt: Optional[str] = None

    @property
    def has_access(self) -> bool:
        return has_recurring_booking_access(self.tier)

    def toggle_recurring(self) -> bool:
        """Flip recurrence on or off. Returns the new is_recurring value."""
        if not self.is_recurring and not self.has_access:
            self.upgrade_prompt = get_upgrade_message(SubscriptionTier.PRO)
            logger.info(f"Recurring booking blocked for tenant {self.tenant_id}: tier below Pro")
            return False

        self.is_recurring = not self.is_recurring
        self.upgrade_prompt = None
        if self.is_recurring and self.start_date and not self.end_date:
            self.end_date = default_recurring_end_date(self.start_date)
        return self.is_recurring

    def set_start_date(self, start_date: date) -> None:
        self.start_date = start_date
        if self.end_date and self.end_date < start_date:
            self.end_date = start_date

    def set_end_date(self, end_date: date) -> date:
        """End date can never precede the start date"""
        if self.start_date and end_date < self.start_date:
            end_date = self.start_date
        self.end_date = end_date
        return end_date

    def can_submit(self) -> bool:
        return bool(
            self.is_recurring
            and self.has_access
            and self.service_id
            and self.start_date
            and self.start_time
            and self.end_date
            and self.end_date >= self.start_date
        )

    def build_payload(self) -> dict:
        return {
            "tenantId": self.tenant_id,
            "serviceId": self.service_id,
            "startDate": self.start_date.isoformat(),
            "startTime": self.start_time,
            "recurringPattern": RecurringPattern.WEEKLY.value,
            "endDate": self.end_date.isoformat(),
            "customerEmail": self.customer_email,
            "slug": self.slug,
        }

    async def submit(self, client: httpx.AsyncClient) -> str:
        """
        Create the series and return the checkout URL to redirect the customer to.

        Raises:
            TierAccessError: tenant tier is below Pro; nothing is sent
            RecurringBookingError: form incomplete, request failed, or no checkout URL returned
        """
        if not self.has_access:
            self.upgrade_prompt = get_upgrade_message(SubscriptionTier.PRO)
            raise TierAccessError(SubscriptionTier.PRO)
        if not self.can_submit():
            raise RecurringBookingError("Please choose a service, start date, time and end date")

        try:
            response = await client.post("/api/appointments/create-recurring", json=self.build_payload())
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Recurring booking request failed: {e}")
            raise RecurringBookingError(PAYMENT_ERROR_MESSAGE) from e

        if response.status_code >= 400 or not isinstance(data, dict) or data.get("error"):
            logger.error(f"Recurring booking rejected ({response.status_code}): {data}")
            raise RecurringBookingError(PAYMENT_ERROR_MESSAGE)

        checkout_url = data.get("checkoutUrl")
        if not checkout_url:
            logger.error("Recurring booking succeeded without a checkout URL")
            raise RecurringBookingError(PAYMENT_ERROR_MESSAGE)

        logger.info(
            f"Recurring series {data.get('recurringGroupId')} created "
            f"({data.get('appointmentCount')} appointments)"
        )
        return checkout_url
