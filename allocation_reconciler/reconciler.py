"""
Allocation Reconciler - Reconciler.

============================================================
PURPOSE
============================================================
Periodically compares realized strategy balances against target
weights, tracks per-vault allocation state, and hands rebalance
intents to an external keeper.

SAFETY:
- Read-only: no on-chain writes
- A failed read skips the cycle; state and snapshot are untouched
- Reads are retried with bounded exponential backoff

CYCLE:
1. Read balances (with retry)
2. Compute drift against targets
3. Advance the state machine
4. Plan and hand off an intent when the vault is DRIFTED

An empty pool (zero total balance) counts as within threshold.
A vault that drifts while BALANCED is moved to DRIFTED and issued an
intent in the same cycle. A REBALANCING vault that times out falls
back to DRIFTED and is re-issued an intent on the next cycle.

============================================================
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from core.clock import ClockProtocol, SystemClock
from core.exceptions import AllocationReadFailure
from core.types import normalize_address

from .config import ReconcilerConfig, VaultAllocation
from .drift import compute_drift, max_abs_delta, plan_rebalance
from .readers import StrategyBalanceReader
from .state_machine import AllocationStateMachine
from .types import (
    AllocationSnapshot,
    CycleResult,
    RebalanceIntent,
    ReconcilerState,
    StrategyDrift,
)


logger = logging.getLogger(__name__)


IntentCallback = Callable[[RebalanceIntent], Awaitable[None]]


class AllocationReconciler:
    """
    Drift tracker and rebalance planner for a set of vaults.
    """

    def __init__(
        self,
        allocations: List[VaultAllocation],
        reader: StrategyBalanceReader,
        config: Optional[ReconcilerConfig] = None,
        clock: Optional[ClockProtocol] = None,
        on_intent: Optional[IntentCallback] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            allocations: Target weights per vault
            reader: Strategy balance source
            config: Reconciler configuration
            clock: Clock for timestamps
            on_intent: Keeper callback receiving each issued intent
        """
        self._config = config or ReconcilerConfig()
        self._reader = reader
        self._clock = clock or SystemClock()
        self._on_intent = on_intent

        self._allocations: Dict[str, VaultAllocation] = {
            a.vault_address: a for a in allocations
        }
        self._machines: Dict[str, AllocationStateMachine] = {
            vault: AllocationStateMachine(vault) for vault in self._allocations
        }
        self._snapshots: Dict[str, AllocationSnapshot] = {}
        self._history: Dict[str, List[CycleResult]] = {vault: [] for vault in self._allocations}
        self._cycle_counter = 0

        self._lock = asyncio.Lock()

    # --------------------------------------------------------
    # ACCESSORS
    # --------------------------------------------------------

    @property
    def vaults(self) -> List[str]:
        return list(self._allocations.keys())

    def state_of(self, vault_address: str) -> ReconcilerState:
        return self._machine(vault_address).state

    def snapshot_of(self, vault_address: str) -> Optional[AllocationSnapshot]:
        """Last successful snapshot (None before the first good read)."""
        return self._snapshots.get(normalize_address(vault_address))

    def get_last_result(self, vault_address: str) -> Optional[CycleResult]:
        history = self._history.get(normalize_address(vault_address), [])
        return history[-1] if history else None

    def get_history(self, vault_address: str, limit: int = 10) -> List[CycleResult]:
        return self._history.get(normalize_address(vault_address), [])[-limit:]

    # --------------------------------------------------------
    # CYCLES
    # --------------------------------------------------------

    async def run_all(self) -> List[CycleResult]:
        """Run one cycle for every vault."""
        return [await self.run_cycle(vault) for vault in self.vaults]

    async def run_periodic(self, stop: asyncio.Event) -> None:
        """Run cycles every interval until `stop` is set."""
        while not stop.is_set():
            await self.run_all()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_cycle(self, vault_address: str) -> CycleResult:
        """
        Run one reconciliation cycle for a vault.

        Never raises for read failures; they are reported on the
        result and leave state untouched.
        """
        vault = normalize_address(vault_address)
        machine = self._machine(vault)
        allocation = self._allocations[vault]

        async with self._lock:
            self._cycle_counter += 1
            result = CycleResult(
                vault_address=vault,
                cycle=self._cycle_counter,
                started_at=self._clock.now(),
                state_before=machine.state,
                state_after=machine.state,
            )

            try:
                balances = await self._read_with_retry(allocation)
            except AllocationReadFailure as failure:
                result.failure = failure
                result.stale = True
                previous = self._snapshots.get(vault)
                if previous is not None:
                    result.snapshot = previous
                    result.drift = compute_drift(allocation.targets, previous.balances)
                logger.warning(
                    f"Reconciliation cycle {result.cycle} for {vault} skipped: {failure.message}"
                )
                self._record(vault, result)
                return result

            snapshot = AllocationSnapshot(vault, dict(balances), self._clock.now())
            self._snapshots[vault] = snapshot
            result.snapshot = snapshot
            result.drift = compute_drift(allocation.targets, balances)

            within = self._within_threshold(result.drift, snapshot.total)
            issue = self._advance(machine, within, result)
            if issue:
                result.intent = await self._issue_intent(machine, result)

            result.state_after = machine.state
            self._record(vault, result)

        logger.info(
            f"Reconciliation cycle {result.cycle} for {vault}: "
            f"{result.state_before.value} -> {result.state_after.value}, "
            f"max drift {result.max_abs_delta_bp:.2f} bp"
        )
        return result

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    async def _read_with_retry(self, allocation: VaultAllocation) -> Dict[str, int]:
        retry = self._config.retry
        last_error: Optional[Exception] = None

        for attempt in range(1, retry.max_attempts + 1):
            try:
                return await self._reader.read_balances(
                    allocation.vault_address, allocation.strategy_ids
                )
            except Exception as e:
                last_error = e
                if attempt < retry.max_attempts:
                    delay = retry.delay_for(attempt)
                    logger.warning(
                        f"Balance read for {allocation.vault_address} failed "
                        f"(attempt {attempt}/{retry.max_attempts}), retrying in {delay:.1f}s: {e}"
                    )
                    await asyncio.sleep(delay)

        raise AllocationReadFailure(
            f"Balance read failed after {retry.max_attempts} attempts: {last_error}",
            vault_address=allocation.vault_address,
            attempts=retry.max_attempts,
            cause=last_error,
        )

    def _within_threshold(self, drift: List[StrategyDrift], total: int) -> bool:
        if total == 0:
            return True
        return max_abs_delta(drift) <= self._config.drift_threshold_bp

    def _advance(
        self,
        machine: AllocationStateMachine,
        within: bool,
        result: CycleResult,
    ) -> bool:
        """Apply this cycle's drift to the state machine; True if an intent is due."""
        state = machine.state

        if state is ReconcilerState.BALANCED:
            if within:
                return False
            machine.transition(
                ReconcilerState.DRIFTED,
                f"max drift {result.max_abs_delta_bp:.2f} bp exceeds "
                f"{self._config.drift_threshold_bp} bp",
            )
            return True

        if state is ReconcilerState.DRIFTED:
            if within:
                machine.transition(ReconcilerState.BALANCED, "drift resolved")
                return False
            return True

        if within:
            machine.transition(ReconcilerState.BALANCED, "rebalance converged")
            return False
        if machine.tick_rebalancing() >= self._config.rebalance_timeout_cycles:
            machine.transition(
                ReconcilerState.DRIFTED,
                f"no convergence after {self._config.rebalance_timeout_cycles} cycles",
            )
        return False

    async def _issue_intent(
        self,
        machine: AllocationStateMachine,
        result: CycleResult,
    ) -> RebalanceIntent:
        snapshot = result.snapshot
        legs = plan_rebalance(result.drift, snapshot.total, snapshot.balances)
        intent = RebalanceIntent(
            vault_address=result.vault_address,
            total=snapshot.total,
            legs=legs,
            created_at=self._clock.now(),
            cycle=result.cycle,
        )
        machine.transition(ReconcilerState.REBALANCING, "intent issued")

        if self._on_intent is not None:
            try:
                await self._on_intent(intent)
            except Exception as e:
                # Convergence timeout re-issues the intent
                logger.error(f"Keeper rejected intent for {result.vault_address}: {e}")
        return intent

    def _record(self, vault: str, result: CycleResult) -> None:
        history = self._history.setdefault(vault, [])
        history.append(result)
        if len(history) > self._config.max_history:
            history.pop(0)

    def _machine(self, vault_address: str) -> AllocationStateMachine:
        vault = normalize_address(vault_address)
        machine = self._machines.get(vault)
        if machine is None:
            raise KeyError(f"Vault not configured for reconciliation: {vault}")
        return machine
