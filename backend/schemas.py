from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, date
import re

from models import RecurringPattern, AppointmentStatus
from tier_policy import SubscriptionTier, normalize_tier


TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# Tenant Schemas
class TierCapabilitiesResponse(BaseModel):
    recurring_bookings: bool
    marketing_engine: bool
    unlimited_ai: bool
    ledger: bool
    financing: bool
    platform_fee_percent: float

    class Config:
        from_attributes = True


class TerminologyResponse(BaseModel):
    customer: str
    customers: str
    service: str
    services: str
    book_service: str
    book_now: str
    schedule_button: str

    class Config:
        from_attributes = True


class TenantPublicResponse(BaseModel):
    """Public tenant configuration used to brand the portal"""
    id: int
    slug: str
    name: str
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    secondary_color: Optional[str] = None
    accent_color: Optional[str] = None
    font_family: Optional[str] = None
    business_type: Optional[str] = None
    timezone: Optional[str] = None
    tier: SubscriptionTier
    tier_display_name: str
    is_demo: bool
    payments_enabled: bool
    capabilities: TierCapabilitiesResponse
    terminology: TerminologyResponse

    @field_validator("tier", mode="before")
    @classmethod
    def normalize(cls, value):
        return normalize_tier(value)


# Invoice Schemas
class InvoiceResponse(BaseModel):
    id: int
    tenant_id: int
    invoice_number: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    status: str
    total_amount: float
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Appointment Schemas
class AppointmentResponse(BaseModel):
    id: int
    tenant_id: int
    service_id: Optional[int] = None
    customer_email: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    status: AppointmentStatus
    paid: bool
    is_recurring: bool
    recurring_pattern: Optional[str] = None
    recurring_group_id: Optional[str] = None
    parent_appointment_id: Optional[int] = None

    class Config:
        from_attributes = True


# Payment Terminal Schemas
class TerminalCheckoutRequest(BaseModel):
    tenant_id: int = Field(alias="tenantId")
    amount: float = Field(gt=0)
    method: str = "scan"
    customer_name: Optional[str] = Field(default=None, alias="customerName")
    customer_email: Optional[EmailStr] = Field(default=None, alias="customerEmail")

    class Config:
        populate_by_name = True


class TerminalCheckoutResponse(BaseModel):
    checkout_url: str = Field(alias="checkoutUrl")
    session_id: str = Field(alias="sessionId")
    invoice_id: int = Field(alias="invoiceId")

    class Config:
        populate_by_name = True


class TerminalSessionStatus(BaseModel):
    session_id: str
    invoice_id: int
    status: str
    amount: float
    invoice_number: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None


# Recurring Booking Schemas
class RecurringBookingRequest(BaseModel):
    tenant_id: int = Field(alias="tenantId")
    service_id: int = Field(alias="serviceId")
    start_date: date = Field(alias="startDate")
    start_time: str = Field(alias="startTime")  # HH:MM, tenant local
    recurring_pattern: RecurringPattern = Field(default=RecurringPattern.WEEKLY, alias="recurringPattern")
    end_date: date = Field(alias="endDate")
    customer_email: Optional[EmailStr] = Field(default=None, alias="customerEmail")
    slug: Optional[str] = None

    class Config:
        populate_by_name = True

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, value):
        if not TIME_PATTERN.match(value):
            raise ValueError("startTime must be HH:MM")
        return value

    @model_validator(mode="after")
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError("endDate cannot be before startDate")
        return self


class RecurringBookingResponse(BaseModel):
    success: bool = True
    appointment_count: int = Field(alias="appointmentCount")
    recurring_group_id: str = Field(alias="recurringGroupId")
    checkout_url: str = Field(alias="checkoutUrl")

    class Config:
        populate_by_name = True


# Dashboard Schemas
class ChallengeProgress(BaseModel):
    current: float
    target: float
    percentage: float


class DashboardSummary(BaseModel):
    total_revenue: float
    pending_invoices: int
    recent_transactions: List[InvoiceResponse]
    challenge: ChallengeProgress
    upcoming_appointments: List[AppointmentResponse]


# AI Support Quota
class AIUsageResponse(BaseModel):
    allowed: bool
    current_count: int
    limit: Optional[int] = None
    message: Optional[str] = None
