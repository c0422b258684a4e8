"""
Tests for Tier Selection
========================

Tests for tiers.py - tier ordering, cost classes and selection.
"""

import pytest

from verifyforge.risk import ChangeMetrics, RiskSignal, classify_change
from verifyforge.tiers import CostClass, Tier, TierSelector, minimum_cost_class


@pytest.fixture
def selector():
    return TierSelector()


def select_for(selector, files, lines, layers=("domain",), keywords=(), loop=False):
    risk = classify_change(ChangeMetrics(
        files_changed=files,
        lines_changed=lines,
        layers_touched=layers,
        keyword_hits=keywords,
    ))
    return selector.select(risk, explicit_loop_requested=loop)


# =============================================================================
# Tier Tests
# =============================================================================

class TestTier:
    """Ordering and cost classes."""

    def test_total_order(self):
        assert Tier.LIGHT < Tier.STANDARD < Tier.THOROUGH

    def test_next_level(self):
        assert Tier.LIGHT.next_level() == Tier.STANDARD
        assert Tier.STANDARD.next_level() == Tier.THOROUGH
        assert Tier.THOROUGH.next_level() == Tier.THOROUGH

    def test_is_strongest(self):
        assert Tier.THOROUGH.is_strongest
        assert not Tier.STANDARD.is_strongest

    def test_cost_classes(self):
        assert minimum_cost_class(Tier.LIGHT) == CostClass.ECONOMY
        assert minimum_cost_class(Tier.STANDARD) == CostClass.BALANCED
        assert minimum_cost_class(Tier.THOROUGH) == CostClass.PREMIUM


# =============================================================================
# Selection Tests
# =============================================================================

class TestTierSelector:
    """Signal-to-tier mapping and the loop floor."""

    def test_security_is_thorough(self, selector):
        assert selector.select(RiskSignal.SECURITY) == Tier.THOROUGH

    @pytest.mark.parametrize("files,lines", [(1, 1), (4, 99), (10, 5000), (19, 1)])
    def test_security_keyword_always_thorough(self, selector, files, lines):
        assert select_for(selector, files, lines, keywords=["auth"]) == Tier.THOROUGH

    def test_architectural_is_standard(self, selector):
        assert selector.select(RiskSignal.ARCHITECTURAL) == Tier.STANDARD

    def test_low_is_light(self, selector):
        assert selector.select(RiskSignal.LOW) == Tier.LIGHT

    def test_boundary_four_files_light(self, selector):
        assert select_for(selector, 4, 99) == Tier.LIGHT

    def test_boundary_five_files_standard(self, selector):
        assert select_for(selector, 5, 99) == Tier.STANDARD

    def test_large_change_thorough(self, selector):
        assert select_for(selector, 25, 2000, layers=("domain", "infra")) == Tier.THOROUGH

    def test_loop_floors_light_to_standard(self, selector):
        assert select_for(selector, 2, 10, loop=True) == Tier.STANDARD

    def test_loop_floor_is_not_ceiling(self, selector):
        assert select_for(selector, 2, 10, keywords=["permission"], loop=True) == Tier.THOROUGH

    def test_plan_reports_floor(self, selector):
        risk = classify_change(ChangeMetrics(1, 1, {"domain"}))
        plan = selector.plan(risk, explicit_loop_requested=True)
        assert plan.loop_floor_applied is True
        assert plan.cost_class == CostClass.BALANCED
        assert plan.to_dict()["tier"] == "STANDARD"

    def test_plan_without_floor(self, selector):
        plan = selector.plan(RiskSignal.ARCHITECTURAL)
        assert plan.loop_floor_applied is False
        assert plan.signal == RiskSignal.ARCHITECTURAL
