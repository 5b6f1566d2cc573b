from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Boolean, Text, Enum as SQLEnum, UniqueConstraint, Index, Date
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from datetime import datetime
import enum
from database import Base
from tier_policy import SubscriptionTier, normalize_tier


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


class AppointmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class RecurringPattern(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class InvoiceSource(str, enum.Enum):
    MANUAL = "manual"
    TERMINAL = "terminal"


class TierType(TypeDecorator):
    """Stores a subscription tier as text; 'business' rows load as ELITE."""
    impl = String(20)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return normalize_tier(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return normalize_tier(value)


class Tenant(Base):
    """A business instance on the platform"""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)

    # Business Identity
    slug = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    owner_email = Column(String(100), nullable=True)
    business_type = Column(String(50), default="service")  # see terminology.BusinessType
    timezone = Column(String(50), default="UTC")

    # Branding
    logo_url = Column(String(255), nullable=True)
    primary_color = Column(String(20), default="#0EA5E9")
    secondary_color = Column(String(20), default="#0F172A")
    accent_color = Column(String(20), default="#F0F9FF")
    font_family = Column(String(50), default="sans-serif")

    # Subscription & Billing
    tier = Column(TierType(), default=SubscriptionTier.STARTER, nullable=False)
    platform_fee_percent = Column(Float, nullable=True)  # Override; tier schedule applies when NULL
    stripe_account_id = Column(String(100), nullable=True)  # Connected payout account
    challenge_type = Column(String(20), default="standard")  # 'standard' or 'elite' activation challenge

    # Lifecycle: demo at prospecting time, live once claimed
    is_demo = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    services = relationship("Service", back_populates="tenant", cascade="all, delete-orphan")
    invoices = relationship("Invoice", back_populates="tenant", cascade="all, delete-orphan")
    appointments = relationship("Appointment", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tenant {self.name} ({self.slug})>"


class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0)  # Dollars
    duration_minutes = Column(Integer, nullable=False, default=30)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="services")


class Invoice(Base):
    """A single monetary collection unit. 'paid' is terminal."""
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_number = Column(String(30), nullable=False)
    customer_name = Column(String(100), nullable=True)
    customer_email = Column(String(100), nullable=True)
    status = Column(String(20), default=InvoiceStatus.DRAFT.value, nullable=False)
    source = Column(String(20), default=InvoiceSource.MANUAL.value, nullable=False)
    total_amount = Column(Float, nullable=False, default=0)
    due_date = Column(Date, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True)

    # Checkout provider references
    stripe_checkout_session_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="invoices")

    __table_args__ = (
        UniqueConstraint('tenant_id', 'invoice_number', name='uq_tenant_invoice_number'),
        Index('idx_invoices_tenant_status', 'tenant_id', 'status'),
    )


class Appointment(Base):
    """A scheduled service occurrence; recurring series share recurring_group_id"""
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="SET NULL"), nullable=True)
    customer_email = Column(String(100), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    status = Column(SQLEnum(AppointmentStatus), default=AppointmentStatus.PENDING, nullable=False)
    paid = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)

    # Recurrence metadata
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurring_pattern = Column(String(20), nullable=True)
    recurring_end_date = Column(Date, nullable=True)
    parent_appointment_id = Column(Integer, ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True)
    recurring_group_id = Column(String(36), nullable=True, index=True)

    stripe_payment_intent = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="appointments")
    service = relationship("Service")

    __table_args__ = (
        Index('idx_appointments_tenant_start', 'tenant_id', 'start_time'),
    )


class AIUsageLog(Base):
    """Daily AI support question counter per tenant"""
    __tablename__ = "ai_usage_logs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    usage_date = Column(Date, nullable=False)
    usage_count = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'usage_date', name='uq_ai_usage_tenant_date'),
    )
