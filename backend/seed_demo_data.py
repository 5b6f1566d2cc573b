"""
Safe auto-seeding system for demo data.

This module provides idempotent seeding that:
- Only runs if no tenants exist yet
- Creates one demo tenant per subscription tier, with services
- Can be controlled via the SEED_DEMO_DATA setting
- Safe to run multiple times (won't overwrite existing data)
"""
import logging
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import Tenant, Service
from terminology import BusinessType
from tier_policy import SubscriptionTier

logger = logging.getLogger(__name__)


DEMO_TENANTS = [
    {
        "slug": "demo-starter",
        "name": "Sunny Side Cleaning",
        "business_type": BusinessType.SERVICE.value,
        "tier": SubscriptionTier.STARTER,
        "timezone": "America/Chicago",
        "services": [
            {"name": "Standard Clean", "price": 120.0, "duration_minutes": 120},
            {"name": "Move-Out Clean", "price": 240.0, "duration_minutes": 240},
        ],
    },
    {
        "slug": "demo-pro",
        "name": "Riverside Music Lessons",
        "business_type": BusinessType.EDUCATION.value,
        "tier": SubscriptionTier.PRO,
        "timezone": "America/New_York",
        "services": [
            {"name": "30 Minute Piano Lesson", "price": 35.0, "duration_minutes": 30},
            {"name": "60 Minute Guitar Lesson", "price": 60.0, "duration_minutes": 60},
        ],
    },
    {
        "slug": "demo-elite",
        "name": "Glow Studio",
        "business_type": BusinessType.BEAUTY_LIFESTYLE.value,
        "tier": SubscriptionTier.ELITE,
        "timezone": "America/Los_Angeles",
        "challenge_type": "elite",
        "services": [
            {"name": "Signature Facial", "price": 95.0, "duration_minutes": 60},
            {"name": "Brow Shaping", "price": 30.0, "duration_minutes": 20},
        ],
    },
]


async def is_database_empty(db: AsyncSession) -> bool:
    """Safe to seed only when no tenant exists"""
    result = await db.execute(select(func.count(Tenant.id)))
    return (result.scalar() or 0) == 0


async def seed_demo_tenant(db: AsyncSession, data: dict) -> Tenant:
    """
    Create one demo tenant and its services.
    Skips tenants whose slug already exists.
    """
    result = await db.execute(select(Tenant).where(Tenant.slug == data["slug"]))
    tenant = result.scalar_one_or_none()
    if tenant:
        logger.info(f"✓ Demo tenant '{data['slug']}' already exists - skipping")
        return tenant

    logger.info(f"🌱 Seeding demo tenant: {data['name']} ({data['tier'].value})")
    tenant = Tenant(
        slug=data["slug"],
        name=data["name"],
        business_type=data["business_type"],
        tier=data["tier"],
        timezone=data["timezone"],
        challenge_type=data.get("challenge_type", "standard"),
        is_demo=True,
    )
    db.add(tenant)
    await db.flush()

    for service_data in data["services"]:
        db.add(Service(tenant_id=tenant.id, **service_data))
        logger.info(f"  ✓ Created service: {service_data['name']}")

    return tenant


async def seed_demo_data_on_startup(db: AsyncSession):
    """
    Main entry point for auto-seeding demo data on app startup.

    Behavior:
    - Controlled by the SEED_DEMO_DATA setting (default: disabled)
    - Only runs if database is empty
    - Idempotent - safe to call multiple times
    """
    if not settings.SEED_DEMO_DATA:
        logger.info("Demo data seeding disabled via SEED_DEMO_DATA")
        return

    if not await is_database_empty(db):
        logger.info("Database contains tenants - skipping demo data seed")
        return

    logger.info("=" * 60)
    logger.info("Database is empty - seeding demo data...")
    logger.info("=" * 60)

    try:
        for data in DEMO_TENANTS:
            await seed_demo_tenant(db, data)
        await db.commit()
        logger.info("✅ Demo data seeding completed successfully!")
    except Exception as e:
        logger.error(f"❌ Error seeding demo data: {e}")
        await db.rollback()
        raise
