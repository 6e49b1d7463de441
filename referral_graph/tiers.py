"""
Referral Graph - Tier Table.

============================================================
PURPOSE
============================================================
Tier requirements and benefits, and progress toward the next
tier.

| Tier    | Min deposit (USD) | Min referrals | Max leverage | Multiplier |
|---------|-------------------|---------------|--------------|------------|
| Novice  | 0                 | 0             | 2x           | 1.0        |
| Scout   | 1,000             | 5             | 3x           | 1.1        |
| Captain | 10,000            | 20            | 5x           | 1.25       |
| Whale   | 50,000            | 50            | 10x          | 1.5        |

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.types import Tier


@dataclass(frozen=True)
class TierRequirements:
    """Requirements and benefits of one tier."""

    tier: Tier
    min_deposit_usd: Decimal
    min_referrals: int
    max_leverage: Decimal
    point_multiplier: Decimal

    @property
    def name(self) -> str:
        return self.tier.label

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.name,
            "min_deposit_usd": str(self.min_deposit_usd),
            "min_referrals": self.min_referrals,
            "max_leverage": str(self.max_leverage),
            "point_multiplier": str(self.point_multiplier),
        }


TIER_TABLE: List[TierRequirements] = [
    TierRequirements(Tier.NOVICE, Decimal("0"), 0, Decimal("2"), Decimal("1.0")),
    TierRequirements(Tier.SCOUT, Decimal("1000"), 5, Decimal("3"), Decimal("1.1")),
    TierRequirements(Tier.CAPTAIN, Decimal("10000"), 20, Decimal("5"), Decimal("1.25")),
    TierRequirements(Tier.WHALE, Decimal("50000"), 50, Decimal("10"), Decimal("1.5")),
]


def requirements_for(tier: Tier) -> TierRequirements:
    """Requirements of a tier."""
    return TIER_TABLE[int(tier)]


def next_tier(tier: Tier) -> Optional[TierRequirements]:
    """Requirements of the tier above, or None at the top."""
    index = int(tier) + 1
    if index >= len(TIER_TABLE):
        return None
    return TIER_TABLE[index]


@dataclass(frozen=True)
class NextTierProgress:
    """Progress from the current tier to the next one."""

    current_tier: Tier
    next_tier: Optional[Tier]
    deposit_requirement: Decimal
    referral_requirement: int
    deposit_progress: Decimal
    """Percent of the deposit requirement met, capped at 100."""

    referral_progress: Decimal
    """Percent of the referral requirement met, capped at 100."""

    is_max_tier: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_tier": self.current_tier.label,
            "next_tier": self.next_tier.label if self.next_tier is not None else None,
            "deposit_requirement": str(self.deposit_requirement),
            "referral_requirement": self.referral_requirement,
            "deposit_progress": str(self.deposit_progress),
            "referral_progress": str(self.referral_progress),
            "is_max_tier": self.is_max_tier,
        }


_HUNDRED = Decimal("100")


def _percent(value: Decimal, requirement: Decimal) -> Decimal:
    if requirement <= 0:
        return _HUNDRED
    return min(value / requirement * _HUNDRED, _HUNDRED)


def compute_next_tier_progress(
    tier: Tier,
    total_deposit_usd: Decimal,
    referral_count: int,
) -> NextTierProgress:
    """
    Progress toward the tier above `tier`.

    At the top tier both progress values are 100 and requirements 0.
    """
    target = next_tier(tier)
    if target is None:
        return NextTierProgress(
            current_tier=tier,
            next_tier=None,
            deposit_requirement=Decimal("0"),
            referral_requirement=0,
            deposit_progress=_HUNDRED,
            referral_progress=_HUNDRED,
            is_max_tier=True,
        )

    return NextTierProgress(
        current_tier=tier,
        next_tier=target.tier,
        deposit_requirement=target.min_deposit_usd,
        referral_requirement=target.min_referrals,
        deposit_progress=_percent(Decimal(total_deposit_usd), target.min_deposit_usd),
        referral_progress=_percent(Decimal(referral_count), Decimal(target.min_referrals)),
        is_max_tier=False,
    )
