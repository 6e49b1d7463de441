"""
Pydantic Schemas for the Ledger Query Views.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================
# POSITIONS
# =============================================================

class MaturityView(BaseModel):
    """Maturity state of one position."""
    is_mature: bool
    days_remaining: int
    penalty: Decimal
    amount_to_receive: Decimal
    forfeited_bonus_points: int
    matures_at: datetime


class PositionView(BaseModel):
    """An active deposit lot."""
    position_id: str
    vault_address: str
    vault_type: str
    principal: int = Field(..., description="Raw token units")
    shares: int
    deposited_at: datetime
    last_harvest_at: Optional[datetime] = None
    maturity: MaturityView


# =============================================================
# PORTFOLIO
# =============================================================

class NextTierProgressView(BaseModel):
    current_tier: str
    next_tier: Optional[str] = None
    deposit_requirement: Decimal
    referral_requirement: int
    deposit_progress: Decimal = Field(..., ge=0, le=100)
    referral_progress: Decimal = Field(..., ge=0, le=100)
    is_max_tier: bool


class PortfolioSnapshot(BaseModel):
    """Everything the dashboard shows for one wallet."""
    address: str
    tier: str
    tier_level: int
    referral_code: str
    referred_by: Optional[str] = None
    active_positions: List[PositionView]
    total_principal: int
    total_principal_usd: Decimal
    principal_by_vault_type: Dict[str, int]
    total_points: int
    direct_referrals: int
    indirect_referrals: int
    next_tier: NextTierProgressView
    as_of: datetime


# =============================================================
# LEADERBOARD
# =============================================================

class LeaderboardEntry(BaseModel):
    rank: int = Field(..., ge=1)
    address: str
    total_points: int
    tier: str
    direct_referrals: int = 0
    indirect_referrals: int = 0
    created_at: Optional[datetime] = None


class LeaderboardResponse(BaseModel):
    entries: List[LeaderboardEntry]
    total: int = Field(..., description="Ranked users (points > 0)")
    limit: int
    offset: int


class UserRankResponse(BaseModel):
    address: str
    rank: Optional[int] = Field(None, description="None when the user holds no points")
    total_points: int


# =============================================================
# AGGREGATES
# =============================================================

class StatsResponse(BaseModel):
    total_users: int
    users_with_points: int
    total_points: int
    average_points: Decimal = Field(..., description="Mean over users with points")
    max_points: int
    active_positions: int
    total_active_principal: int


class VaultBreakdownEntry(BaseModel):
    vault_address: str
    vault_type: str
    active_principal: int
    active_shares: int
    active_positions: int
    depositors: int
