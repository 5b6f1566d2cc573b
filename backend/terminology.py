"""
Terminology helpers.
Maps a tenant's business type (craft) to the vocabulary used in its portal.
"""

import enum
from dataclasses import dataclass
from typing import Optional, Union


class BusinessType(str, enum.Enum):
    SERVICE = "service"
    EDUCATION = "education"
    RETAIL = "retail"
    PROFESSIONAL = "professional"
    BEAUTY_LIFESTYLE = "beauty_lifestyle"
    THERAPY_HEALTH = "therapy_health"


@dataclass(frozen=True)
class Terminology:
    customer: str
    customers: str
    service: str
    services: str
    book_service: str
    book_now: str
    schedule_button: str


DEFAULT_TERMINOLOGY = Terminology(
    customer="Customer",
    customers="Customers",
    service="Service",
    services="Services",
    book_service="Book a Service",
    book_now="Book Now",
    schedule_button="Book Now",
)

TERMINOLOGY = {
    BusinessType.SERVICE: DEFAULT_TERMINOLOGY,
    BusinessType.EDUCATION: Terminology(
        customer="Student",
        customers="Students",
        service="Lesson Type",
        services="Lesson Types",
        book_service="Schedule a Lesson",
        book_now="Schedule Lesson",
        schedule_button="Schedule Lesson",
    ),
    BusinessType.RETAIL: Terminology(
        customer="Buyer",
        customers="Buyers",
        service="Product",
        services="Catalog",
        book_service="Browse Catalog",
        book_now="Shop Now",
        schedule_button="Shop Now",
    ),
    BusinessType.PROFESSIONAL: Terminology(
        customer="Client",
        customers="Clients",
        service="Service",
        services="Services",
        book_service="Book Consultation",
        book_now="Book Now",
        schedule_button="Book Consultation",
    ),
    BusinessType.THERAPY_HEALTH: Terminology(
        customer="Client",
        customers="Clients",
        service="Session",
        services="Sessions",
        book_service="Schedule Session",
        book_now="Schedule Session",
        schedule_button="Schedule Session",
    ),
    BusinessType.BEAUTY_LIFESTYLE: DEFAULT_TERMINOLOGY,
}


def get_terminology(business_type: Optional[Union[BusinessType, str]] = None) -> Terminology:
    """Vocabulary for a business type; unknown or missing types use the service wording."""
    try:
        craft = BusinessType(business_type) if business_type else BusinessType.SERVICE
    except ValueError:
        craft = BusinessType.SERVICE
    return TERMINOLOGY[craft]


def get_customer_label(business_type=None) -> str:
    return get_terminology(business_type).customers


def get_service_label(business_type=None) -> str:
    return get_terminology(business_type).services


def get_book_now_label(business_type=None) -> str:
    return get_terminology(business_type).book_now
