"""
Allocation Reconciler Package.

============================================================
PURPOSE
============================================================
Tracks strategy allocation drift per vault and plans net-zero
rebalances for an external keeper.

CRITICAL PRINCIPLE:
    "The reconciler reads; it never writes on-chain."
    "A failed read skips the cycle, never corrupts state."

============================================================
MODULES
============================================================
- types: States, drift, intents, snapshots, cycle results
- config: ReconcilerConfig, RetryConfig, VaultAllocation
- state_machine: Per-vault allocation state machine
- drift: compute_drift, plan_rebalance
- readers: JSON-RPC strategy and vault readers
- reconciler: AllocationReconciler

============================================================
"""

from .config import ReconcilerConfig, RetryConfig, VaultAllocation, validate_targets
from .drift import compute_drift, max_abs_delta, plan_rebalance, target_amounts
from .readers import (
    JsonRpcClient,
    JsonRpcStrategyBalanceReader,
    JsonRpcVaultReader,
    StrategyBalanceReader,
    VaultReader,
)
from .reconciler import AllocationReconciler
from .state_machine import VALID_TRANSITIONS, AllocationStateMachine, TransitionGuard
from .types import (
    AllocationSnapshot,
    CycleResult,
    RebalanceIntent,
    RebalanceLeg,
    ReconcilerState,
    StrategyDrift,
    StrategyTarget,
)


__all__ = [
    "AllocationReconciler",
    "ReconcilerConfig",
    "RetryConfig",
    "VaultAllocation",
    "validate_targets",
    "compute_drift",
    "max_abs_delta",
    "plan_rebalance",
    "target_amounts",
    "JsonRpcClient",
    "JsonRpcStrategyBalanceReader",
    "JsonRpcVaultReader",
    "StrategyBalanceReader",
    "VaultReader",
    "VALID_TRANSITIONS",
    "AllocationStateMachine",
    "TransitionGuard",
    "AllocationSnapshot",
    "CycleResult",
    "RebalanceIntent",
    "RebalanceLeg",
    "ReconcilerState",
    "StrategyDrift",
    "StrategyTarget",
]
