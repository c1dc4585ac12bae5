from __future__ import annotations

import pytest

from credit_ledger.config import Settings
from credit_ledger.exceptions import PlanNotEligible, SubscriptionRequired
from credit_ledger.models.account import PlanTier
from credit_ledger.models.generation import GenerationOptions
from credit_ledger.services.pricing import PricingPolicy


def test_single_standard_generation_costs_standard_price(pricing):
    assert pricing.cost(PlanTier.BASE, False) == 10


def test_full_batch_uses_bundle_price(pricing):
    assert pricing.cost(PlanTier.ESSENTIAL, False, GenerationOptions(count=3)) == 25


@pytest.mark.parametrize("count, expected", [(2, 20), (4, 40), (6, 60)])
def test_partial_or_oversized_batch_is_charged_per_item(pricing, count, expected):
    assert pricing.cost(PlanTier.BASE, False, GenerationOptions(count=count)) == expected


@pytest.mark.parametrize("plan, expected", [(PlanTier.ESSENTIAL, 30), (PlanTier.ULTIMATE, 15)])
def test_restricted_cost_depends_on_plan(pricing, plan, expected):
    assert pricing.cost(plan, True) == expected


def test_restricted_batch_is_never_bundled(pricing):
    assert pricing.cost(PlanTier.ULTIMATE, True, GenerationOptions(count=3)) == 45


def test_restricted_on_base_plan_is_not_eligible(pricing):
    with pytest.raises(PlanNotEligible):
        pricing.cost(PlanTier.BASE, True)


def test_addons_are_flat_surcharges(pricing):
    options = GenerationOptions(count=3, high_resolution=True, priority=True)
    assert pricing.cost(PlanTier.BASE, False, options) == 35
    assert pricing.cost(PlanTier.BASE, False, GenerationOptions(high_resolution=True)) == 15


def test_no_plan_cannot_be_priced(pricing):
    with pytest.raises(SubscriptionRequired) as exc_info:
        pricing.cost(None, True)
    assert exc_info.value.reason == SubscriptionRequired.RESTRICTED_REQUIRES_PLAN

    with pytest.raises(SubscriptionRequired) as exc_info:
        pricing.cost(None, False)
    assert exc_info.value.reason == SubscriptionRequired.PLAN_REQUIRED


def test_free_tier_counting(pricing):
    assert pricing.is_free_generation_allowed(0)
    assert pricing.is_free_generation_allowed(2)
    assert not pricing.is_free_generation_allowed(3)
    assert pricing.free_generations_left(1) == 2
    assert pricing.free_generations_left(7) == 0


def test_plan_catalog(pricing):
    details = pricing.plan_details(PlanTier.ESSENTIAL)
    assert details.plan == PlanTier.ESSENTIAL
    assert details.monthly_credits == 250
    assert details.price == pytest.approx(19.99)


def test_plan_missing_from_catalog_falls_back_to_lowest_tier():
    pricing = PricingPolicy(plan_monthly_credits={"base": 50, "essential": 250})
    details = pricing.plan_details(PlanTier.ULTIMATE)
    assert details.plan == PlanTier.BASE
    assert details.monthly_credits == 50


def test_pricing_from_settings():
    settings = Settings(STANDARD_GENERATION_COST=12, BATCH_SIZE=4, BATCH_BUNDLE_COST=40)
    pricing = PricingPolicy.from_settings(settings)
    assert pricing.cost(PlanTier.BASE, False) == 12
    assert pricing.cost(PlanTier.BASE, False, GenerationOptions(count=4)) == 40
    assert pricing.cost(PlanTier.BASE, False, GenerationOptions(count=3)) == 36
