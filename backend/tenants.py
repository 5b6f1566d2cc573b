"""
Tenant Resolution API Endpoints
Resolves a tenant slug to its branded, tier-aware configuration
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
import logging

from database import get_db
from models import Tenant
from schemas import TenantPublicResponse, TierCapabilitiesResponse, TerminologyResponse
from terminology import get_terminology
from tier_policy import get_capabilities, get_tier_display_name

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/tenants", tags=["tenants"])


async def resolve_tenant(db: AsyncSession, slug: str) -> Optional[Tenant]:
    """Point read of a tenant by slug. The tier column is normalized on load."""
    result = await db.execute(
        select(Tenant).where(Tenant.slug == slug.strip().lower())
    )
    return result.scalar_one_or_none()


def build_tenant_config(tenant: Tenant) -> TenantPublicResponse:
    capabilities = get_capabilities(tenant.tier)
    terminology = get_terminology(tenant.business_type)
    return TenantPublicResponse(
        id=tenant.id,
        slug=tenant.slug,
        name=tenant.name,
        logo_url=tenant.logo_url,
        primary_color=tenant.primary_color,
        secondary_color=tenant.secondary_color,
        accent_color=tenant.accent_color,
        font_family=tenant.font_family,
        business_type=tenant.business_type,
        timezone=tenant.timezone,
        tier=tenant.tier,
        tier_display_name=get_tier_display_name(tenant.tier),
        is_demo=bool(tenant.is_demo),
        payments_enabled=bool(tenant.stripe_account_id),
        capabilities=TierCapabilitiesResponse.model_validate(capabilities),
        terminology=TerminologyResponse.model_validate(terminology),
    )


@router.get("/{slug}", response_model=TenantPublicResponse)
async def get_tenant_config(slug: str, db: AsyncSession = Depends(get_db)):
    """
    PUBLIC ENDPOINT: Branded tenant configuration for a portal slug.
    """
    tenant = await resolve_tenant(db, slug)
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return build_tenant_config(tenant)


@router.get("/{slug}/capabilities", response_model=TierCapabilitiesResponse)
async def get_tenant_capabilities(slug: str, db: AsyncSession = Depends(get_db)):
    tenant = await resolve_tenant(db, slug)
    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return TierCapabilitiesResponse.model_validate(get_capabilities(tenant.tier))
