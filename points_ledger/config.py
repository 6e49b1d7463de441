"""
Points Ledger - Configuration.

============================================================
PURPOSE
============================================================
Point-awarding rules: conversion rate, referral bonuses and the
tier-upgrade bonus table.

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict

from core.constants import (
    DIRECT_REFERRAL_POINTS,
    INDIRECT_REFERRAL_POINTS,
    USD_PER_POINT,
)
from core.types import Tier


def _default_tier_bonus() -> Dict[Tier, int]:
    return {
        Tier.NOVICE: 0,
        Tier.SCOUT: 250,
        Tier.CAPTAIN: 500,
        Tier.WHALE: 1000,
    }


@dataclass
class PointsConfig:
    """
    Points configuration.
    """

    usd_per_point: Decimal = USD_PER_POINT
    """USD value that earns one point before multipliers."""

    direct_referral_points: int = DIRECT_REFERRAL_POINTS
    """Awarded to the direct referrer on a new referee."""

    indirect_referral_points: int = INDIRECT_REFERRAL_POINTS
    """Awarded to the referrer's own referrer."""

    tier_upgrade_bonus: Dict[Tier, int] = field(default_factory=_default_tier_bonus)
    """Bonus indexed by the new tier."""

    verify_on_read: bool = False
    """Re-derive a wallet's balance from the log on every read."""

    def bonus_for_tier(self, tier: Tier) -> int:
        """Tier-upgrade bonus for reaching a tier."""
        return self.tier_upgrade_bonus.get(tier, 0)
