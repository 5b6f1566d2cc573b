"""
Tier ranking, aliasing and capability sets.
"""
import itertools

import pytest

from tier_policy import (
    SubscriptionTier,
    InvalidTierError,
    normalize_tier,
    tier_rank,
    has_tier_access,
    has_pro_access,
    has_business_suite_access,
    has_marketing_engine_access,
    has_financing_access,
    get_capabilities,
    get_upgrade_message,
    get_platform_fee_percent,
    ai_daily_limit,
)

ALL_TIERS = ["starter", "pro", "elite", "business"]


def test_documented_access_examples():
    assert has_tier_access("elite", "pro") is True
    assert has_tier_access("starter", "pro") is False
    assert has_tier_access("business", "elite") is True


@pytest.mark.parametrize("lower,higher", [
    (a, b) for a, b in itertools.product(ALL_TIERS, repeat=2) if tier_rank(a) <= tier_rank(b)
])
def test_higher_rank_always_has_access_to_lower(lower, higher):
    assert has_tier_access(higher, lower)


def test_business_is_folded_into_elite():
    assert normalize_tier("business") is SubscriptionTier.ELITE
    assert normalize_tier(" Business ") is SubscriptionTier.ELITE
    assert tier_rank("business") == tier_rank("elite") == 2


@pytest.mark.parametrize("value", [None, "", "platinum", 3])
def test_unknown_tier_fails_fast(value):
    with pytest.raises(InvalidTierError):
        normalize_tier(value)


def test_unknown_tier_is_not_defaulted_in_gates():
    with pytest.raises(InvalidTierError):
        has_pro_access("gold")


def test_derived_predicates():
    assert not has_pro_access(SubscriptionTier.STARTER)
    assert has_pro_access(SubscriptionTier.PRO)
    assert has_marketing_engine_access("pro")
    assert not has_business_suite_access("pro")
    assert has_business_suite_access("business")
    assert has_financing_access("elite")
    assert not has_financing_access("pro")


def test_capability_sets_are_nested():
    flags = ["recurring_bookings", "marketing_engine", "unlimited_ai", "ledger", "financing"]
    starter, pro, elite = (get_capabilities(t) for t in ("starter", "pro", "elite"))
    for flag in flags:
        assert getattr(starter, flag) <= getattr(pro, flag) <= getattr(elite, flag)
    assert pro.recurring_bookings and not pro.ledger
    assert elite.ledger and elite.financing


def test_fees_fall_as_tier_rises():
    assert get_platform_fee_percent("starter") > get_platform_fee_percent("pro") > get_platform_fee_percent("elite")
    assert get_capabilities("business").platform_fee_percent == get_platform_fee_percent("elite")


def test_upgrade_messages():
    assert "Pro" in get_upgrade_message(SubscriptionTier.PRO)
    assert "Business Suite" in get_upgrade_message("business")


def test_ai_daily_limit():
    assert ai_daily_limit("starter") == 5
    assert ai_daily_limit("starter", starter_limit=3) == 3
    assert ai_daily_limit("pro") is None
    assert ai_daily_limit("elite") is None
