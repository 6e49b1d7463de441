"""
Allocation Reconciler - Types.

============================================================
PURPOSE
============================================================
Types for strategy allocation tracking:

- ReconcilerState: per-vault allocation state
- StrategyTarget / StrategyDrift: target vs realized weights
- RebalanceIntent / RebalanceLeg: net-zero fund movements
- AllocationSnapshot: one realized balance read
- CycleResult: outcome of a reconciliation cycle

All weights are in basis points (10,000 = 100%).

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from core.exceptions import AllocationReadFailure


# ============================================================
# ENUMS
# ============================================================

class ReconcilerState(Enum):
    """Allocation state of a vault."""

    BALANCED = "balanced"
    """Every strategy is within the drift threshold."""

    DRIFTED = "drifted"
    """At least one strategy exceeds the drift threshold."""

    REBALANCING = "rebalancing"
    """A rebalance intent has been issued and not yet converged."""


# ============================================================
# TARGETS AND DRIFT
# ============================================================

@dataclass(frozen=True)
class StrategyTarget:
    """Target weight of one strategy."""

    strategy_id: str
    weight_bp: int


@dataclass(frozen=True)
class StrategyDrift:
    """Realized vs target weight of one strategy."""

    strategy_id: str
    target_bp: int
    realized_bp: Decimal
    delta_bp: Decimal
    """realized_bp - target_bp."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "target_bp": self.target_bp,
            "realized_bp": str(self.realized_bp),
            "delta_bp": str(self.delta_bp),
        }


# ============================================================
# REBALANCE INTENT
# ============================================================

@dataclass(frozen=True)
class RebalanceLeg:
    """Signed movement for one strategy (positive = add funds)."""

    strategy_id: str
    signed_amount: int


@dataclass
class RebalanceIntent:
    """
    Fund movements restoring target weights.

    Legs always sum to exactly zero.
    """

    vault_address: str
    total: int
    legs: List[RebalanceLeg]
    created_at: datetime
    cycle: int = 0

    @property
    def net(self) -> int:
        return sum(leg.signed_amount for leg in self.legs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_address": self.vault_address,
            "total": str(self.total),
            "legs": [
                {"strategy_id": leg.strategy_id, "signed_amount": str(leg.signed_amount)}
                for leg in self.legs
            ],
            "created_at": self.created_at.isoformat(),
            "cycle": self.cycle,
        }


# ============================================================
# SNAPSHOTS AND CYCLES
# ============================================================

@dataclass(frozen=True)
class AllocationSnapshot:
    """Realized strategy balances read at one time."""

    vault_address: str
    balances: Dict[str, int]
    read_at: datetime

    @property
    def total(self) -> int:
        return sum(self.balances.values())


@dataclass
class CycleResult:
    """Outcome of one reconciliation cycle for one vault."""

    vault_address: str
    cycle: int
    started_at: datetime
    state_before: ReconcilerState
    state_after: ReconcilerState

    snapshot: Optional[AllocationSnapshot] = None
    drift: List[StrategyDrift] = field(default_factory=list)
    intent: Optional[RebalanceIntent] = None

    failure: Optional[AllocationReadFailure] = None
    """Set when the balance read failed and the cycle was skipped."""

    stale: bool = False
    """Drift still reflects the previous snapshot."""

    @property
    def skipped(self) -> bool:
        return self.failure is not None

    @property
    def max_abs_delta_bp(self) -> Decimal:
        return max((abs(d.delta_bp) for d in self.drift), default=Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault_address": self.vault_address,
            "cycle": self.cycle,
            "started_at": self.started_at.isoformat(),
            "state_before": self.state_before.value,
            "state_after": self.state_after.value,
            "drift": [d.to_dict() for d in self.drift],
            "intent": self.intent.to_dict() if self.intent else None,
            "failure": self.failure.to_dict() if self.failure else None,
            "stale": self.stale,
        }
