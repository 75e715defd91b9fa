"""
Unit tests for the plan catalog.
"""
import dataclasses

import pytest

from app.core.plan_catalog import QUESTION_TYPES, PlanCatalog, default_plans


def test_default_catalog_is_ordered_by_rank(catalog):
    assert [plan.id for plan in catalog] == ["starter", "basic", "essentials", "plus", "advanced"]
    assert catalog.free_plan.id == "starter"


def test_monthly_limits_increase_with_tier(catalog):
    limits = [plan.monthly_question_limit for plan in catalog]
    assert limits == sorted(limits)
    assert catalog.require("basic").monthly_question_limit == 50


def test_higher_tiers_include_lower_tier_question_types(catalog):
    plans = list(catalog)
    for lower, higher in zip(plans, plans[1:]):
        assert lower.allowed_question_types <= higher.allowed_question_types
    assert catalog.require("advanced").allowed_question_types == frozenset(QUESTION_TYPES)


def test_lookup_by_price_and_product(catalog):
    assert catalog.by_price_id("price_plus_monthly").id == "plus"
    assert catalog.by_price_id("price_plus_annual").id == "plus"
    assert catalog.by_product_id("prod_essentials").id == "essentials"
    assert catalog.for_subscription("price_unknown", "prod_basic").id == "basic"
    assert catalog.by_price_id(None) is None


def test_resolve_falls_back_to_free_plan(catalog):
    assert catalog.resolve("no-such-plan").id == "starter"
    assert catalog.resolve(None).id == "starter"
    assert catalog.resolve("PLUS").id == "plus"


def test_compare_uses_tier_rank(catalog):
    assert catalog.compare("basic", "advanced") < 0
    assert catalog.compare("plus", "plus") == 0
    assert catalog.compare("advanced", "starter") > 0


def test_duplicate_rank_rejected():
    plans = default_plans()
    plans[2] = dataclasses.replace(plans[2], tier_rank=plans[1].tier_rank)
    with pytest.raises(ValueError, match="Duplicate tier rank"):
        PlanCatalog(plans)


def test_product_mapped_to_two_plans_rejected():
    plans = default_plans()
    plans[1] = dataclasses.replace(plans[1], stripe_product_id="prod_shared")
    plans[2] = dataclasses.replace(plans[2], stripe_product_id="prod_shared")
    with pytest.raises(ValueError, match="prod_shared"):
        PlanCatalog(plans)


def test_price_mapped_to_two_plans_rejected():
    plans = default_plans()
    plans[1] = dataclasses.replace(plans[1], stripe_price_ids={"monthly": "price_dup"})
    plans[3] = dataclasses.replace(plans[3], stripe_price_ids={"annual": "price_dup"})
    with pytest.raises(ValueError, match="price_dup"):
        PlanCatalog(plans)


def test_unknown_question_type_rejected():
    plans = default_plans()
    plans[0] = dataclasses.replace(plans[0], allowed_question_types=frozenset({"crossword"}))
    with pytest.raises(ValueError, match="Unknown question types"):
        PlanCatalog(plans)
