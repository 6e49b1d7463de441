"""
Core Module - Constants.

============================================================
RESPONSIBILITY
============================================================
Protocol constants shared by the ledgers.

- Single source of truth for magic values
- No business logic here
- Contract addresses are NOT constants; they are injected
  through ContractRegistry

============================================================
"""

from decimal import Decimal


# ============================================================
# TIME
# ============================================================

SECONDS_PER_DAY = 86400

MATURITY_PERIOD_DAYS = 60
"""Holding period after which a position avoids early-withdrawal penalties."""


# ============================================================
# VAULT ECONOMICS
# ============================================================

EARLY_WITHDRAWAL_PENALTY_RATE = Decimal("0.10")
"""Penalty applied to principal (never to yield) before maturity."""

EARLY_WITHDRAWAL_FORFEITED_BONUS_POINTS = 500
"""Bonus points a position forfeits when withdrawn before maturity."""

USDC_DECIMALS = 6


# ============================================================
# POINTS
# ============================================================

USD_PER_POINT = Decimal("100")
"""One point per $100 deposited or harvested, before multipliers."""

DIRECT_REFERRAL_POINTS = 100
INDIRECT_REFERRAL_POINTS = 50


# ============================================================
# ALLOCATION
# ============================================================

BASIS_POINTS_TOTAL = 10000
DEFAULT_DRIFT_THRESHOLD_BP = 500


# ============================================================
# EVENT NAMES
# ============================================================

EVENT_DEPOSITED = "Deposited"
EVENT_WITHDRAWN = "Withdrawn"
EVENT_YIELD_HARVESTED = "YieldHarvested"
EVENT_REFERRAL_REGISTERED = "ReferralRegistered"
EVENT_TIER_CHANGED = "TierChanged"
