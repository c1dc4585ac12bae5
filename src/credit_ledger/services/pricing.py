"""
Entitlement calculator: what a generation costs, and whether an account
without a plan may still generate for free.

Everything here is pure; the free-tier count is supplied by the caller.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from ..config import Settings
from ..exceptions import PlanNotEligible, SubscriptionRequired
from ..models.account import PlanTier
from ..models.generation import GenerationOptions
from ..models.subscription import PlanDetails


logger = logging.getLogger(__name__)


def _plan_table(raw: Mapping[str, object]) -> dict[PlanTier, object]:
    table: dict[PlanTier, object] = {}
    for name, value in raw.items():
        plan = PlanTier.parse(name)
        if plan is None:
            logger.warning("Ignoring pricing entry for unknown plan %r", name)
            continue
        table[plan] = value
    return table


class PricingPolicy:
    def __init__(
        self,
        *,
        standard_cost: int = 10,
        batch_size: int = 3,
        batch_bundle_cost: int = 25,
        high_resolution_surcharge: int = 5,
        priority_surcharge: int = 5,
        project_creation_cost: int = 50,
        restricted_costs: Optional[Mapping[str, int]] = None,
        plan_monthly_credits: Optional[Mapping[str, int]] = None,
        plan_prices: Optional[Mapping[str, float]] = None,
        free_tier_generations: int = 3,
    ) -> None:
        self.standard_cost = standard_cost
        self.batch_size = batch_size
        self.batch_bundle_cost = batch_bundle_cost
        self.high_resolution_surcharge = high_resolution_surcharge
        self.priority_surcharge = priority_surcharge
        self.project_creation_cost = project_creation_cost
        self.free_tier_generations = free_tier_generations
        self._restricted_costs = _plan_table(
            restricted_costs if restricted_costs is not None else {"essential": 30, "ultimate": 15}
        )
        self._monthly_credits = _plan_table(
            plan_monthly_credits
            if plan_monthly_credits is not None
            else {"base": 50, "essential": 250, "ultimate": 500}
        )
        self._prices = _plan_table(
            plan_prices
            if plan_prices is not None
            else {"base": 9.99, "essential": 19.99, "ultimate": 29.99}
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingPolicy":
        return cls(
            standard_cost=settings.STANDARD_GENERATION_COST,
            batch_size=settings.BATCH_SIZE,
            batch_bundle_cost=settings.BATCH_BUNDLE_COST,
            high_resolution_surcharge=settings.HIGH_RESOLUTION_SURCHARGE,
            priority_surcharge=settings.PRIORITY_SURCHARGE,
            project_creation_cost=settings.PROJECT_CREATION_COST,
            restricted_costs=settings.RESTRICTED_COSTS,
            plan_monthly_credits=settings.PLAN_MONTHLY_CREDITS,
            plan_prices=settings.PLAN_PRICES,
            free_tier_generations=settings.FREE_TIER_GENERATIONS,
        )

    def cost(
        self,
        plan: Optional[PlanTier],
        is_restricted: bool,
        options: Optional[GenerationOptions] = None,
    ) -> int:
        """
        Credits charged for one generation request on `plan`.

        A request of exactly `batch_size` standard images costs the bundle
        price; any other count is charged per item. Restricted content is
        priced from the per-plan table and never bundled. Add-ons are flat
        surcharges per request.
        """
        options = options or GenerationOptions()

        if plan is None:
            if is_restricted:
                raise SubscriptionRequired(
                    SubscriptionRequired.RESTRICTED_REQUIRES_PLAN,
                    "Restricted content requires a subscription plan.",
                )
            raise SubscriptionRequired(
                SubscriptionRequired.PLAN_REQUIRED,
                "A subscription plan is required to price this request.",
            )

        if is_restricted:
            unit = self._restricted_costs.get(plan)
            if unit is None:
                raise PlanNotEligible(plan.value)
            cost = int(unit) * options.count
        elif options.count == self.batch_size:
            cost = self.batch_bundle_cost
        else:
            cost = self.standard_cost * options.count

        if options.high_resolution:
            cost += self.high_resolution_surcharge
        if options.priority:
            cost += self.priority_surcharge
        return cost

    def is_free_generation_allowed(self, generated_outputs: int) -> bool:
        return generated_outputs < self.free_tier_generations

    def free_generations_left(self, generated_outputs: int) -> int:
        return max(self.free_tier_generations - generated_outputs, 0)

    def plan_details(self, plan: PlanTier) -> PlanDetails:
        monthly = self._monthly_credits.get(plan)
        if monthly is None:
            lowest = PlanTier.lowest()
            logger.warning("No catalog entry for plan %s, using %s", plan.value, lowest.value)
            return PlanDetails(
                plan=lowest,
                monthly_credits=int(self._monthly_credits.get(lowest, 0)),
                price=float(self._prices.get(lowest, 0.0)),
            )
        return PlanDetails(
            plan=plan,
            monthly_credits=int(monthly),
            price=float(self._prices.get(plan, 0.0)),
        )
