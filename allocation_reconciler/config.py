"""
Allocation Reconciler - Configuration.

============================================================
PURPOSE
============================================================
Drift thresholds, rebalance timeouts, read retry policy and the
per-vault strategy targets.

CRITICAL CONSTRAINTS:
- Retries are bounded
- Targets sum to exactly 10,000 bp

============================================================
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.constants import BASIS_POINTS_TOTAL, DEFAULT_DRIFT_THRESHOLD_BP
from core.exceptions import InvalidAllocation
from core.types import normalize_address

from .types import StrategyTarget


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for external balance reads.
    """

    max_attempts: int = 3
    """Total attempts per cycle, including the first."""

    initial_delay_seconds: float = 1.0
    """Delay before the first retry."""

    max_delay_seconds: float = 30.0
    """Maximum delay between retries."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    def delay_for(self, attempt: int) -> float:
        """Delay after a failed attempt (1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


# ============================================================
# VAULT ALLOCATION
# ============================================================

@dataclass
class VaultAllocation:
    """Strategy targets of one vault."""

    vault_address: str
    targets: List[StrategyTarget]

    strategy_contracts: Dict[str, str] = field(default_factory=dict)
    """strategy_id -> strategy contract address, for on-chain reads."""

    def __post_init__(self) -> None:
        self.vault_address = normalize_address(self.vault_address)
        self.strategy_contracts = {
            k: normalize_address(v) for k, v in self.strategy_contracts.items()
        }
        validate_targets(self.targets)

    @property
    def strategy_ids(self) -> List[str]:
        return [t.strategy_id for t in self.targets]

    @classmethod
    def from_weights(
        cls,
        vault_address: str,
        weights: Dict[str, int],
        strategy_contracts: Optional[Dict[str, str]] = None,
    ) -> "VaultAllocation":
        """Build from a {strategy_id: weight_bp} mapping."""
        return cls(
            vault_address=vault_address,
            targets=[StrategyTarget(k, int(v)) for k, v in weights.items()],
            strategy_contracts=dict(strategy_contracts or {}),
        )


def validate_targets(targets: List[StrategyTarget]) -> None:
    """
    Validate target weights.

    Raises:
        InvalidAllocation: Empty, duplicated, negative or not summing
            to 10,000 bp
    """
    if not targets:
        raise InvalidAllocation("At least one strategy target is required")
    ids = [t.strategy_id for t in targets]
    if len(set(ids)) != len(ids):
        raise InvalidAllocation(f"Duplicate strategy ids in targets: {ids}")
    negative = [t.strategy_id for t in targets if t.weight_bp < 0]
    if negative:
        raise InvalidAllocation(f"Negative target weights: {negative}")
    total = sum(t.weight_bp for t in targets)
    if total != BASIS_POINTS_TOTAL:
        raise InvalidAllocation(
            f"Target weights sum to {total} bp, expected {BASIS_POINTS_TOTAL}",
            context={"targets": {t.strategy_id: t.weight_bp for t in targets}},
        )


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ReconcilerConfig:
    """
    Master configuration for the Allocation Reconciler.
    """

    drift_threshold_bp: int = DEFAULT_DRIFT_THRESHOLD_BP
    """Largest |delta| tolerated before a vault is DRIFTED."""

    rebalance_timeout_cycles: int = 3
    """Cycles in REBALANCING without convergence before falling back to DRIFTED."""

    interval_seconds: float = 300.0
    """Cycle interval when run periodically."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    """Read retry configuration."""

    max_history: int = 100
    """Cycle results kept per vault."""

    def __post_init__(self) -> None:
        if not (0 <= self.drift_threshold_bp <= BASIS_POINTS_TOTAL):
            raise ValueError(f"drift_threshold_bp out of range: {self.drift_threshold_bp}")
        if self.rebalance_timeout_cycles < 1:
            raise ValueError("rebalance_timeout_cycles must be >= 1")

    @classmethod
    def for_testing(cls) -> "ReconcilerConfig":
        """Get configuration for testing."""
        return cls(
            retry=RetryConfig(max_attempts=2, initial_delay_seconds=0.0, max_delay_seconds=0.0),
            rebalance_timeout_cycles=2,
            interval_seconds=0.01,
        )
