"""
Plan catalog loading and validation.
"""

import pytest

from credit_ledger.core.errors import ConfigurationError
from credit_ledger.plan_catalog import FREE_TIER, load_plan_catalog, parse_plan_catalog

VALID = {
    "plans": {"p1": {"tier": "premium", "monthly_credits": 3000}},
    "products": {"c1": 1000},
    "costs": {"10min": 1, "1hour": 2},
}


class TestBundledCatalog:
    def test_loads_with_required_tiers(self):
        catalog = load_plan_catalog(required_tiers=("premium", "premium_plus"))
        assert catalog.plan("pri_premium_monthly").monthly_credits == 3000
        assert catalog.credits_for_product("pri_credits_20k") == 20000
        assert catalog.tiers == {"premium", "premium_plus"}

    def test_tier_lookup(self):
        catalog = load_plan_catalog()
        assert catalog.monthly_allowance_for_tier("premium_plus") == 15000
        assert catalog.monthly_allowance_for_tier(FREE_TIER) == 0

    def test_usage_tier_costs(self):
        catalog = load_plan_catalog()
        assert [catalog.cost_for(t) for t in ("10min", "1hour", "1day")] == [1, 2, 3]


class TestValidation:
    def test_valid_document(self):
        catalog = parse_plan_catalog(VALID, required_tiers=["premium"])
        assert catalog.plan("p1").tier == "premium"
        assert catalog.cost_for("1hour") == 2

    def test_costs_section_optional(self):
        catalog = parse_plan_catalog({"plans": {}, "products": {}})
        assert dict(catalog.costs) == {}

    @pytest.mark.parametrize("doc", [
        None,
        [],
        {"plans": {}},
        {"products": {}},
        {"plans": {"p1": "premium"}, "products": {}},
        {"plans": {"p1": {"tier": " ", "monthly_credits": 1}}, "products": {}},
        {"plans": {"p1": {"tier": "premium"}}, "products": {}},
        {"plans": {"p1": {"tier": "premium", "monthly_credits": -1}}, "products": {}},
        {"plans": {"p1": {"tier": "premium", "monthly_credits": "3000"}}, "products": {}},
        {"plans": {}, "products": {"c1": 0}},
        {"plans": {}, "products": {"c1": True}},
        {"plans": {}, "products": {}, "costs": ["1hour"]},
        {"plans": {}, "products": {}, "costs": {"1hour": 0}},
        {"plans": {}, "products": {}, "costs": {"1hour": "2"}},
    ])
    def test_rejects_malformed(self, doc):
        with pytest.raises(ConfigurationError):
            parse_plan_catalog(doc)

    def test_missing_required_tier(self):
        with pytest.raises(ConfigurationError, match="premium_plus"):
            parse_plan_catalog(VALID, required_tiers=["premium", "premium_plus"])

    def test_unknown_ids_raise(self):
        catalog = parse_plan_catalog(VALID)
        with pytest.raises(ConfigurationError):
            catalog.plan("nope")
        with pytest.raises(ConfigurationError):
            catalog.credits_for_product("nope")
        with pytest.raises(ConfigurationError):
            catalog.monthly_allowance_for_tier("enterprise")
        with pytest.raises(ConfigurationError):
            catalog.cost_for("1week")

    def test_catalog_is_read_only(self):
        catalog = parse_plan_catalog(VALID)
        with pytest.raises(TypeError):
            catalog.products["c2"] = 5


class TestLoadErrors:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_plan_catalog(str(tmp_path / "absent.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "plans.yaml"
        path.write_text("plans: [unclosed")
        with pytest.raises(ConfigurationError):
            load_plan_catalog(str(path))

    def test_custom_file(self, tmp_path):
        path = tmp_path / "plans.yaml"
        path.write_text(
            "plans:\n"
            "  team_monthly:\n"
            "    tier: team\n"
            "    monthly_credits: 8000\n"
            "products: {}\n"
        )
        catalog = load_plan_catalog(str(path), required_tiers=["team"])
        assert catalog.monthly_allowance_for_tier("team") == 8000
