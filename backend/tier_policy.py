"""
Tier Policy
Centralized subscription-tier feature gating.

Every feature-gate decision (client flows and server routes alike) goes
through has_tier_access() so tier semantics cannot drift between call sites.
'business' is a legacy alias of 'elite' and is folded into it by
normalize_tier() at the data-store boundary; nothing past that boundary ever
sees it.
"""

import enum
from dataclasses import dataclass
from typing import Optional, Union


class SubscriptionTier(str, enum.Enum):
    STARTER = "starter"
    PRO = "pro"
    ELITE = "elite"


class InvalidTierError(ValueError):
    """Raised for tier values outside the declared tier set."""


TIER_ALIASES = {
    "business": SubscriptionTier.ELITE,
}

TIER_RANK = {
    SubscriptionTier.STARTER: 0,
    SubscriptionTier.PRO: 1,
    SubscriptionTier.ELITE: 2,
}

# Platform fee charged per transaction, by tier (percent)
TIER_FEE_PERCENT = {
    SubscriptionTier.STARTER: 1.5,
    SubscriptionTier.PRO: 1.0,
    SubscriptionTier.ELITE: 0.4,
}

UPGRADE_MESSAGES = {
    SubscriptionTier.STARTER: "Available on all plans",
    SubscriptionTier.PRO: "Upgrade to Pro ($29/mo) to unlock this feature",
    SubscriptionTier.ELITE: "Upgrade to Business Suite ($79/mo) to unlock this feature",
}

TIER_DISPLAY_NAMES = {
    SubscriptionTier.STARTER: "Vantak Free",
    SubscriptionTier.PRO: "Vantak Pro",
    SubscriptionTier.ELITE: "Vantak Business Suite",
}

TierLike = Union[SubscriptionTier, str]


def normalize_tier(value: Optional[TierLike]) -> SubscriptionTier:
    """
    Resolve a raw tier value to one of the three ranked tiers.

    Accepts enum members or strings (case and surrounding whitespace are
    ignored). Raises InvalidTierError for None or anything unrecognised.
    """
    if isinstance(value, SubscriptionTier):
        return value
    if not isinstance(value, str):
        raise InvalidTierError(f"Invalid subscription tier: {value!r}")

    key = value.strip().lower()
    if key in TIER_ALIASES:
        return TIER_ALIASES[key]
    try:
        return SubscriptionTier(key)
    except ValueError:
        raise InvalidTierError(f"Invalid subscription tier: {value!r}") from None


def tier_rank(tier: TierLike) -> int:
    return TIER_RANK[normalize_tier(tier)]


def has_tier_access(tier: TierLike, required_tier: TierLike) -> bool:
    """True iff tier ranks at or above required_tier."""
    return tier_rank(tier) >= tier_rank(required_tier)


def has_pro_access(tier: TierLike) -> bool:
    return has_tier_access(tier, SubscriptionTier.PRO)


def has_elite_access(tier: TierLike) -> bool:
    return has_tier_access(tier, SubscriptionTier.ELITE)


def has_business_suite_access(tier: TierLike) -> bool:
    """Business Suite is the marketing name of the Elite tier."""
    return has_elite_access(tier)


def has_marketing_engine_access(tier: TierLike) -> bool:
    return has_pro_access(tier)


def has_recurring_booking_access(tier: TierLike) -> bool:
    return has_pro_access(tier)


def has_unlimited_ai_access(tier: TierLike) -> bool:
    return has_pro_access(tier)


def has_ledger_access(tier: TierLike) -> bool:
    """Expense and mileage tracking."""
    return has_elite_access(tier)


def has_financing_access(tier: TierLike) -> bool:
    """Buy-now-pay-later offer shown on the terminal."""
    return has_elite_access(tier)


@dataclass(frozen=True)
class TierCapabilities:
    tier: SubscriptionTier
    recurring_bookings: bool
    marketing_engine: bool
    unlimited_ai: bool
    ledger: bool
    financing: bool
    platform_fee_percent: float


def get_capabilities(tier: TierLike) -> TierCapabilities:
    """Derived capability set for a tier. Sets are strictly nested by rank."""
    resolved = normalize_tier(tier)
    return TierCapabilities(
        tier=resolved,
        recurring_bookings=has_recurring_booking_access(resolved),
        marketing_engine=has_marketing_engine_access(resolved),
        unlimited_ai=has_unlimited_ai_access(resolved),
        ledger=has_ledger_access(resolved),
        financing=has_financing_access(resolved),
        platform_fee_percent=get_platform_fee_percent(resolved),
    )


def get_upgrade_message(required_tier: TierLike) -> str:
    return UPGRADE_MESSAGES[normalize_tier(required_tier)]


def get_tier_display_name(tier: TierLike) -> str:
    return TIER_DISPLAY_NAMES[normalize_tier(tier)]


def get_platform_fee_percent(tier: TierLike) -> float:
    return TIER_FEE_PERCENT[normalize_tier(tier)]


def ai_daily_limit(tier: TierLike, starter_limit: int = 5) -> Optional[int]:
    """Daily AI question allowance; None means unlimited."""
    if has_unlimited_ai_access(tier):
        return None
    return starter_limit
