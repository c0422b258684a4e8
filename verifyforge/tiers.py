"""
Verification Tiers
==================

Tier is the verification depth; CostClass is the minimum execution cost
class a tier may run on.

    SECURITY                 -> THOROUGH
    ARCHITECTURAL (>=20 files) -> THOROUGH
    ARCHITECTURAL            -> STANDARD
    LOW                      -> LIGHT

An explicit bounded loop request floors the result at STANDARD.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from verifyforge.risk import ChangeRisk, RiskSignal


class Tier(IntEnum):
    """Verification depth, totally ordered."""
    LIGHT = 1
    STANDARD = 2
    THOROUGH = 3

    def next_level(self) -> "Tier":
        """One level up; THOROUGH has no higher level and returns itself."""
        return Tier(min(self.value + 1, Tier.THOROUGH.value))

    @property
    def is_strongest(self) -> bool:
        return self is Tier.THOROUGH


class CostClass(IntEnum):
    """Minimum execution cost class required by a tier."""
    ECONOMY = 1
    BALANCED = 2
    PREMIUM = 3


TIER_COST_CLASS = {
    Tier.LIGHT: CostClass.ECONOMY,
    Tier.STANDARD: CostClass.BALANCED,
    Tier.THOROUGH: CostClass.PREMIUM,
}


def minimum_cost_class(tier: Tier) -> CostClass:
    return TIER_COST_CLASS[tier]


@dataclass(frozen=True)
class TierSelection:
    """A selected tier with the reasoning that produced it."""
    tier: Tier
    cost_class: CostClass
    signal: RiskSignal
    reason: str
    loop_floor_applied: bool = False

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.name,
            "cost_class": self.cost_class.name,
            "signal": self.signal.value,
            "reason": self.reason,
            "loop_floor_applied": self.loop_floor_applied,
        }


class TierSelector:
    """Maps a risk signal plus overrides to a tier."""

    def select(
        self,
        risk: Union[ChangeRisk, RiskSignal],
        explicit_loop_requested: bool = False,
    ) -> Tier:
        return self.plan(risk, explicit_loop_requested).tier

    def plan(
        self,
        risk: Union[ChangeRisk, RiskSignal],
        explicit_loop_requested: bool = False,
    ) -> TierSelection:
        if isinstance(risk, ChangeRisk):
            signal, large_change = risk.signal, risk.large_change
        else:
            signal, large_change = risk, False

        if signal == RiskSignal.SECURITY:
            tier, reason = Tier.THOROUGH, "security-sensitive change"
        elif signal == RiskSignal.ARCHITECTURAL and large_change:
            tier, reason = Tier.THOROUGH, "large change"
        elif signal == RiskSignal.ARCHITECTURAL:
            tier, reason = Tier.STANDARD, "architectural change"
        else:
            tier, reason = Tier.LIGHT, "low-risk change"

        floored = False
        if explicit_loop_requested and tier < Tier.STANDARD:
            tier, floored = Tier.STANDARD, True
            reason = f"{reason}; bounded loop requested"

        return TierSelection(
            tier=tier,
            cost_class=minimum_cost_class(tier),
            signal=signal,
            reason=reason,
            loop_floor_applied=floored,
        )
