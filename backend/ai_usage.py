"""
AI Support Quota
Daily question allowance for the AI support assistant. Starter tenants get a
fixed number of questions per day in their own timezone; Pro and above are unlimited.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from dataclasses import dataclass
from typing import Optional
import logging

from database import get_db
from models import Tenant, AIUsageLog
from auth import get_current_tenant
from config import settings
from schemas import AIUsageResponse
from tier_policy import ai_daily_limit, get_upgrade_message, SubscriptionTier
from timezone_utils import get_tenant_today

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/support", tags=["support"])


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    current_count: int
    limit: Optional[int] = None
    message: Optional[str] = None


async def _get_usage_log(db: AsyncSession, tenant: Tenant) -> Optional[AIUsageLog]:
    result = await db.execute(
        select(AIUsageLog).where(
            AIUsageLog.tenant_id == tenant.id,
            AIUsageLog.usage_date == get_tenant_today(tenant.timezone or "UTC")
        )
    )
    return result.scalar_one_or_none()


async def check_rate_limit(db: AsyncSession, tenant: Tenant) -> RateLimitStatus:
    limit = ai_daily_limit(tenant.tier, settings.AI_STARTER_DAILY_LIMIT)
    if limit is None:
        return RateLimitStatus(allowed=True, current_count=0, limit=None)

    usage = await _get_usage_log(db, tenant)
    current_count = usage.usage_count if usage else 0

    if current_count >= limit:
        return RateLimitStatus(
            allowed=False,
            current_count=current_count,
            limit=limit,
            message=(
                f"You've reached your daily limit of {limit} AI questions on the Starter tier. "
                f"{get_upgrade_message(SubscriptionTier.PRO)}"
            )
        )
    return RateLimitStatus(allowed=True, current_count=current_count, limit=limit)


async def increment_usage(db: AsyncSession, tenant: Tenant) -> int:
    """Add one question to today's counter. Returns the new count."""
    usage = await _get_usage_log(db, tenant)
    if usage:
        usage.usage_count += 1
    else:
        usage = AIUsageLog(
            tenant_id=tenant.id,
            usage_date=get_tenant_today(tenant.timezone or "UTC"),
            usage_count=1
        )
        db.add(usage)

    await db.commit()
    return usage.usage_count


async def enforce_ai_quota(
    current_tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db)
) -> Tenant:
    """Dependency: 429 once a Starter tenant has used today's questions"""
    status = await check_rate_limit(db, current_tenant)
    if not status.allowed:
        logger.warning(f"AI quota exhausted for tenant {current_tenant.id} ({status.current_count}/{status.limit})")
        raise HTTPException(status_code=429, detail=status.message)
    return current_tenant


def _to_response(status: RateLimitStatus) -> AIUsageResponse:
    return AIUsageResponse(
        allowed=status.allowed,
        current_count=status.current_count,
        limit=status.limit,
        message=status.message
    )


@router.get("/usage", response_model=AIUsageResponse)
async def get_ai_usage(
    current_tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db)
):
    return _to_response(await check_rate_limit(db, current_tenant))


@router.post("/usage", response_model=AIUsageResponse)
async def record_ai_question(
    current_tenant: Tenant = Depends(enforce_ai_quota),
    db: AsyncSession = Depends(get_db)
):
    """Count one AI support question against today's allowance"""
    await increment_usage(db, current_tenant)
    return _to_response(await check_rate_limit(db, current_tenant))
