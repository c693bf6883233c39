"""
Plan Catalog — validated plan/product → credit mapping
======================================================

Replaces per-price environment variables with one YAML document loaded at
startup::

    plans:
      pri_premium_monthly:
        tier: premium
        monthly_credits: 3000
    products:
      pri_credits_1k: 1000
    costs:
      10min: 1
      1hour: 2

Anything malformed, or a required tier with no plan, fails startup with
ConfigurationError. Lookups of unknown ids also raise instead of
defaulting to a free tier or zero credits.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import yaml

from credit_ledger.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = os.path.join(os.path.dirname(__file__), "plans.yaml")

FREE_TIER = "free"


@dataclass(frozen=True)
class PlanSpec:
    plan_id: str
    tier: str
    monthly_credits: int


@dataclass(frozen=True)
class PlanCatalog:
    plans: Mapping[str, PlanSpec] = field(default_factory=dict)
    products: Mapping[str, int] = field(default_factory=dict)
    costs: Mapping[str, int] = field(default_factory=dict)

    def plan(self, plan_id: str) -> PlanSpec:
        try:
            return self.plans[plan_id]
        except KeyError:
            raise ConfigurationError(f"unknown plan id {plan_id!r}") from None

    def credits_for_product(self, product_id: str) -> int:
        try:
            return self.products[product_id]
        except KeyError:
            raise ConfigurationError(f"unknown product id {product_id!r}") from None

    def cost_for(self, usage_tier: str) -> int:
        """Credits charged for one use of a usage tier (e.g. "1hour")."""
        try:
            return self.costs[usage_tier]
        except KeyError:
            raise ConfigurationError(f"unknown usage tier {usage_tier!r}") from None

    def monthly_allowance_for_tier(self, tier: str) -> int:
        """Monthly credits for a tier name; the free tier has none."""
        if tier == FREE_TIER:
            return 0
        for spec in self.plans.values():
            if spec.tier == tier:
                return spec.monthly_credits
        raise ConfigurationError(f"no plan defines tier {tier!r}")

    @property
    def tiers(self) -> frozenset[str]:
        return frozenset(spec.tier for spec in self.plans.values())


def _credit_value(raw: object, where: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigurationError(f"{where}: expected a non-negative integer, got {raw!r}")
    return raw


def parse_plan_catalog(data: object, required_tiers: Iterable[str] = ()) -> PlanCatalog:
    """Validate a decoded catalog document and build a PlanCatalog."""
    if not isinstance(data, dict):
        raise ConfigurationError("plan catalog must be a mapping")

    raw_plans = data.get("plans")
    raw_products = data.get("products")
    if not isinstance(raw_plans, dict):
        raise ConfigurationError("plan catalog: 'plans' section missing or not a mapping")
    if not isinstance(raw_products, dict):
        raise ConfigurationError("plan catalog: 'products' section missing or not a mapping")

    plans: dict[str, PlanSpec] = {}
    for plan_id, raw in raw_plans.items():
        if not isinstance(raw, dict):
            raise ConfigurationError(f"plan {plan_id!r}: expected a mapping")
        tier = raw.get("tier")
        if not isinstance(tier, str) or not tier.strip():
            raise ConfigurationError(f"plan {plan_id!r}: missing tier")
        if "monthly_credits" not in raw:
            raise ConfigurationError(f"plan {plan_id!r}: missing monthly_credits")
        plans[str(plan_id)] = PlanSpec(
            plan_id=str(plan_id),
            tier=tier.strip(),
            monthly_credits=_credit_value(raw["monthly_credits"], f"plan {plan_id!r}"),
        )

    products: dict[str, int] = {}
    for product_id, raw in raw_products.items():
        credits = _credit_value(raw, f"product {product_id!r}")
        if credits == 0:
            raise ConfigurationError(f"product {product_id!r}: credit amount must be positive")
        products[str(product_id)] = credits

    raw_costs = data.get("costs", {})
    if not isinstance(raw_costs, dict):
        raise ConfigurationError("plan catalog: 'costs' section is not a mapping")
    costs: dict[str, int] = {}
    for usage_tier, raw in raw_costs.items():
        cost = _credit_value(raw, f"cost {usage_tier!r}")
        if cost == 0:
            raise ConfigurationError(f"cost {usage_tier!r}: must be positive")
        costs[str(usage_tier)] = cost

    defined = {spec.tier for spec in plans.values()}
    missing = sorted(set(required_tiers) - defined)
    if missing:
        raise ConfigurationError(f"plan catalog: no plan for required tier(s) {', '.join(missing)}")

    return PlanCatalog(
        plans=MappingProxyType(plans),
        products=MappingProxyType(products),
        costs=MappingProxyType(costs),
    )


def load_plan_catalog(
    path: Optional[str] = None,
    required_tiers: Iterable[str] = (),
) -> PlanCatalog:
    """Load and validate the catalog YAML (bundled plans.yaml by default)."""
    path = path or DEFAULT_CATALOG_PATH
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(f"cannot read plan catalog {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"plan catalog {path} is not valid YAML: {exc}") from exc

    catalog = parse_plan_catalog(data, required_tiers)
    logger.info(
        "Plan catalog loaded: %d plans, %d products, %d usage tiers (%s)",
        len(catalog.plans), len(catalog.products), len(catalog.costs), path,
    )
    return catalog
