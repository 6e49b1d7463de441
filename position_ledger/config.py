"""
Position Ledger - Configuration.

============================================================
PURPOSE
============================================================
Configuration for position accounting: asset precision,
maturity rules and withdrawal semantics.

============================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from core.constants import (
    EARLY_WITHDRAWAL_FORFEITED_BONUS_POINTS,
    EARLY_WITHDRAWAL_PENALTY_RATE,
    MATURITY_PERIOD_DAYS,
    USDC_DECIMALS,
)


class WithdrawalMode(Enum):
    """How a Withdrawn event closes positions."""

    FULL = "full"
    """Deactivate every active lot for (user, vault)."""

    FIFO_SHARES = "fifo_shares"
    """Burn shares oldest lot first, reducing principal proportionally."""


# ============================================================
# MATURITY CONFIGURATION
# ============================================================

@dataclass
class MaturityConfig:
    """
    Maturity and early-withdrawal rules.
    """

    period_days: int = MATURITY_PERIOD_DAYS
    """Holding period before a position is mature."""

    penalty_rate: Decimal = EARLY_WITHDRAWAL_PENALTY_RATE
    """Fraction of principal charged before maturity."""

    forfeited_bonus_points: int = EARLY_WITHDRAWAL_FORFEITED_BONUS_POINTS
    """Bonus points forfeited by an early withdrawal."""

    def __post_init__(self) -> None:
        if self.period_days < 0:
            raise ValueError(f"period_days must be >= 0, got {self.period_days}")
        if not (Decimal("0") <= self.penalty_rate <= Decimal("1")):
            raise ValueError(f"penalty_rate must be within [0, 1], got {self.penalty_rate}")


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class PositionConfig:
    """
    Master configuration for the Position Ledger.
    """

    asset_decimals: int = USDC_DECIMALS
    """Decimals of the vault asset."""

    withdrawal_mode: WithdrawalMode = WithdrawalMode.FULL
    """Withdrawal semantics."""

    maturity: MaturityConfig = field(default_factory=MaturityConfig)
    """Maturity configuration."""

    award_harvest_points_on_withdraw: bool = True
    """Award harvest points for positive yield realized by a withdrawal."""

    def __post_init__(self) -> None:
        if isinstance(self.withdrawal_mode, str):
            self.withdrawal_mode = WithdrawalMode(self.withdrawal_mode)
        if self.asset_decimals < 0:
            raise ValueError(f"asset_decimals must be >= 0, got {self.asset_decimals}")

    @classmethod
    def for_testing(cls) -> "PositionConfig":
        """Get configuration for testing."""
        return cls(asset_decimals=USDC_DECIMALS, withdrawal_mode=WithdrawalMode.FULL)
