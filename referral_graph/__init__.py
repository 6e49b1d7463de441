"""
Referral Graph Package.

============================================================
PURPOSE
============================================================
Referrer/referee edges (direct plus one indirect level), user
tiers, and the bonus awards they generate.

============================================================
MODULES
============================================================
- types: ReferralEdge, ReferralLevel
- tiers: Tier table and next-tier progress
- graph: ReferralGraph

============================================================
"""

from .graph import ReferralGraph
from .tiers import (
    TIER_TABLE,
    NextTierProgress,
    TierRequirements,
    compute_next_tier_progress,
    next_tier,
    requirements_for,
)
from .types import ReferralEdge, ReferralLevel


__all__ = [
    "ReferralGraph",
    "ReferralEdge",
    "ReferralLevel",
    "TIER_TABLE",
    "TierRequirements",
    "NextTierProgress",
    "compute_next_tier_progress",
    "next_tier",
    "requirements_for",
]
