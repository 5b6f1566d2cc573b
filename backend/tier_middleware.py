"""
Tier Gating Middleware
Server-side enforcement of subscription-tier feature access.
The client flows check the same predicates; these checks are the ones that count.
"""

from fastapi import HTTPException, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import logging

from database import get_db
from models import Tenant
from auth import get_current_tenant
from tier_policy import SubscriptionTier, has_tier_access, get_upgrade_message

logger = logging.getLogger(__name__)


def check_tier(tenant: Tenant, required_tier: SubscriptionTier, feature: str) -> Tenant:
    """
    Raise 403 with the upgrade prompt when the tenant's tier is below required_tier.

    Returns:
        Tenant: the same tenant, for use in dependency chains
    """
    if not has_tier_access(tenant.tier, required_tier):
        logger.warning(
            f"Tier gate denied '{feature}' for tenant {tenant.id} "
            f"(tier={tenant.tier.value}, required={required_tier.value})"
        )
        raise HTTPException(
            status_code=403,
            detail=get_upgrade_message(required_tier)
        )
    return tenant


async def load_tenant_with_tier(
    db: AsyncSession,
    tenant_id: int,
    required_tier: SubscriptionTier,
    feature: str
) -> Tenant:
    """
    Fetch a tenant fresh from the data store and enforce the tier gate.
    Used by public routes where the tenant comes from the request body.

    Raises:
        HTTPException 404: unknown tenant
        HTTPException 403: tier below required_tier
    """
    result = await db.execute(
        select(Tenant).where(Tenant.id == tenant_id)
    )
    tenant = result.scalar_one_or_none()

    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")

    return check_tier(tenant, required_tier, feature)


def require_tier(required_tier: SubscriptionTier, feature: str = "feature"):
    """
    Dependency factory for operator routes.

    Usage:
        @router.get("/ledger")
        async def ledger(tenant: Tenant = Depends(require_tier(SubscriptionTier.ELITE, "ledger"))):
            ...
    """
    async def dependency(current_tenant: Tenant = Depends(get_current_tenant)) -> Tenant:
        return check_tier(current_tenant, required_tier, feature)

    return dependency
