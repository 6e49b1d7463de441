"""
Allocation Reconciler - Drift and Rebalance Planning.

Pure functions over target weights and realized balances.

Conservation: plan_rebalance() only moves value between strategies,
so the signed leg amounts always sum to exactly zero.
"""

from decimal import Decimal
from typing import Dict, List, Optional

from core.constants import BASIS_POINTS_TOTAL

from .config import validate_targets
from .types import RebalanceLeg, StrategyDrift, StrategyTarget


_BP = Decimal(BASIS_POINTS_TOTAL)


def compute_drift(
    targets: List[StrategyTarget],
    realized: Dict[str, int],
) -> List[StrategyDrift]:
    """
    Realized vs target weight per strategy.

    Strategies missing from `realized` hold 0. Realized strategies
    without a target get target 0. With a zero total every realized
    weight is 0.
    """
    validate_targets(targets)
    for strategy_id, balance in realized.items():
        if balance < 0:
            raise ValueError(f"Negative realized balance for {strategy_id}: {balance}")

    total = sum(realized.values())
    weights = {t.strategy_id: t.weight_bp for t in targets}
    strategy_ids = [t.strategy_id for t in targets] + sorted(
        s for s in realized if s not in weights
    )

    drift = []
    for strategy_id in strategy_ids:
        balance = realized.get(strategy_id, 0)
        target_bp = weights.get(strategy_id, 0)
        realized_bp = Decimal(balance) / Decimal(total) * _BP if total > 0 else Decimal("0")
        drift.append(StrategyDrift(
            strategy_id=strategy_id,
            target_bp=target_bp,
            realized_bp=realized_bp,
            delta_bp=realized_bp - target_bp,
        ))
    return drift


def max_abs_delta(drift: List[StrategyDrift]) -> Decimal:
    """Largest absolute deviation in bp."""
    return max((abs(d.delta_bp) for d in drift), default=Decimal("0"))


def target_amounts(drift: List[StrategyDrift], total: int) -> Dict[str, int]:
    """
    Integer target amount per strategy.

    total * bp // 10000 each; the rounding remainder goes to the
    largest-weight strategy (first on ties).
    """
    amounts = {d.strategy_id: total * d.target_bp // BASIS_POINTS_TOTAL for d in drift}
    remainder = total - sum(amounts.values())
    if remainder and drift:
        largest = max(drift, key=lambda d: d.target_bp)
        amounts[largest.strategy_id] += remainder
    return amounts


def _amounts_from_drift(drift: List[StrategyDrift], total: int) -> Dict[str, int]:
    amounts = {
        d.strategy_id: int(d.realized_bp * total / _BP) for d in drift
    }
    remainder = total - sum(amounts.values())
    if remainder and drift:
        largest = max(drift, key=lambda d: d.realized_bp)
        amounts[largest.strategy_id] += remainder
    return amounts


def plan_rebalance(
    drift: List[StrategyDrift],
    total: int,
    realized: Optional[Dict[str, int]] = None,
) -> List[RebalanceLeg]:
    """
    Signed movements bringing every strategy back to target.

    Args:
        drift: Output of compute_drift()
        total: Pool value to distribute
        realized: Current balances; reconstructed from the drift
            weights when omitted

    Returns:
        One leg per strategy; positive adds funds. Legs sum to 0.
    """
    if total < 0:
        raise ValueError(f"total must be >= 0, got {total}")

    if realized is None:
        current = _amounts_from_drift(drift, total)
    else:
        current = {d.strategy_id: realized.get(d.strategy_id, 0) for d in drift}
        if sum(current.values()) != total:
            raise ValueError(
                f"Realized balances sum to {sum(current.values())}, expected {total}"
            )

    targets = target_amounts(drift, total)
    return [
        RebalanceLeg(d.strategy_id, targets[d.strategy_id] - current[d.strategy_id])
        for d in drift
    ]
