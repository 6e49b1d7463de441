"""
Position Ledger - Types.

============================================================
PURPOSE
============================================================
- VaultPosition: one deposit lot
- MaturityQuote: maturity/penalty view of a lot at a point in time
- WithdrawalOutcome: what a Withdrawn event did to the ledger

============================================================
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.types import VaultType


# ============================================================
# VAULT POSITION
# ============================================================

@dataclass
class VaultPosition:
    """
    A deposit lot.

    Amounts are raw token units. principal and shares may only
    decrease after creation; principal_deposited and shares_received
    keep the originals.
    """

    user_address: str
    """Lowercase owner address."""

    vault_address: str
    """Lowercase vault contract."""

    vault_type: VaultType
    """Conservative or Aggressive."""

    principal: int
    """Remaining principal (>= 0)."""

    shares: int
    """Remaining shares (>= 0)."""

    deposited_at: datetime
    """Block time of the deposit."""

    deposit_tx_hash: str
    """Originating transaction."""

    event_key: str
    """Idempotency anchor (txHash:logIndex)."""

    principal_deposited: int = 0
    shares_received: int = 0

    last_harvest_at: Optional[datetime] = None
    """Last harvest touching this lot."""

    is_active: bool = True

    closed_at: Optional[datetime] = None

    position_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        if self.principal < 0:
            raise ValueError(f"principal must be >= 0, got {self.principal}")
        if self.shares < 0:
            raise ValueError(f"shares must be >= 0, got {self.shares}")
        if not self.principal_deposited:
            self.principal_deposited = self.principal
        if not self.shares_received:
            self.shares_received = self.shares

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "position_id": self.position_id,
            "user_address": self.user_address,
            "vault_address": self.vault_address,
            "vault_type": self.vault_type.value,
            "principal": str(self.principal),
            "shares": str(self.shares),
            "principal_deposited": str(self.principal_deposited),
            "shares_received": str(self.shares_received),
            "deposited_at": self.deposited_at.isoformat(),
            "last_harvest_at": self.last_harvest_at.isoformat() if self.last_harvest_at else None,
            "is_active": self.is_active,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "deposit_tx_hash": self.deposit_tx_hash,
            "event_key": self.event_key,
        }


# ============================================================
# MATURITY
# ============================================================

@dataclass(frozen=True)
class MaturityQuote:
    """Maturity state of a position at a given time."""

    is_mature: bool
    days_remaining: int
    penalty: Decimal
    """Early-withdrawal penalty on principal (0 when mature)."""

    amount_to_receive: Decimal
    """Principal minus penalty; yield not included."""

    forfeited_bonus_points: int
    """Bonus points lost by withdrawing now."""

    matures_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_mature": self.is_mature,
            "days_remaining": self.days_remaining,
            "penalty": str(self.penalty),
            "amount_to_receive": str(self.amount_to_receive),
            "forfeited_bonus_points": self.forfeited_bonus_points,
            "matures_at": self.matures_at.isoformat(),
        }


# ============================================================
# WITHDRAWAL
# ============================================================

@dataclass
class WithdrawalOutcome:
    """Result of applying a Withdrawn event."""

    idempotency_key: str
    user_address: str
    vault_address: str

    closed_positions: List[VaultPosition] = field(default_factory=list)
    """Lots deactivated by this withdrawal."""

    reduced_positions: List[VaultPosition] = field(default_factory=list)
    """Lots partially burned (FIFO mode only)."""

    principal_released: int = 0
    shares_burned: int = 0
    yield_amount: int = 0
    """assets_returned - shares_burned; may be negative."""

    points_awarded: int = 0

    early: bool = False
    """Whether any closed lot was immature."""

    penalty: Decimal = Decimal("0")
    """Total penalty over the immature principal released."""

    duplicate: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "user_address": self.user_address,
            "vault_address": self.vault_address,
            "closed_positions": [p.position_id for p in self.closed_positions],
            "reduced_positions": [p.position_id for p in self.reduced_positions],
            "principal_released": str(self.principal_released),
            "shares_burned": str(self.shares_burned),
            "yield_amount": str(self.yield_amount),
            "points_awarded": self.points_awarded,
            "early": self.early,
            "penalty": str(self.penalty),
            "duplicate": self.duplicate,
        }
