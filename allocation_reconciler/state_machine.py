"""
Allocation Reconciler - State Machine.

============================================================
PURPOSE
============================================================
Per-vault allocation state with strict transitions.

STATE MACHINE:

    BALANCED ──(drift > threshold)──► DRIFTED
        ▲                               │  ▲
        │                               │  │
        │  (drift resolved)             │  │ (timeout without
        ├───────────────────────────────┘  │  convergence)
        │                                  │
        │                         (intent issued)
        │                                  │
        └──(converged)── REBALANCING ◄─────┘

INVARIANTS:
- Each transition has a guard
- All transitions are logged and kept in history

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Set, Tuple

from core.exceptions import InvalidStateTransition

from .types import ReconcilerState


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[ReconcilerState, Set[ReconcilerState]] = {
    ReconcilerState.BALANCED: {
        ReconcilerState.DRIFTED,
    },
    ReconcilerState.DRIFTED: {
        ReconcilerState.REBALANCING,
        ReconcilerState.BALANCED,
    },
    ReconcilerState.REBALANCING: {
        ReconcilerState.BALANCED,
        ReconcilerState.DRIFTED,
    },
}


@dataclass
class StateTransitionEvent:
    """A recorded state transition."""

    vault_address: str
    from_state: ReconcilerState
    to_state: ReconcilerState
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class TransitionGuard:
    """Checks transitions against VALID_TRANSITIONS."""

    @staticmethod
    def can_transition(
        from_state: ReconcilerState,
        to_state: ReconcilerState,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_state == to_state:
            return True, "Same state"
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"
        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"


# ============================================================
# VAULT STATE MACHINE
# ============================================================

class AllocationStateMachine:
    """
    Allocation state of one vault.

    Also counts cycles spent in REBALANCING for the convergence
    timeout.
    """

    def __init__(
        self,
        vault_address: str,
        initial_state: ReconcilerState = ReconcilerState.BALANCED,
    ):
        self._vault_address = vault_address
        self._state = initial_state
        self._rebalancing_cycles = 0
        self._history: List[StateTransitionEvent] = []

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def rebalancing_cycles(self) -> int:
        """Cycles observed since entering REBALANCING."""
        return self._rebalancing_cycles

    @property
    def history(self) -> List[StateTransitionEvent]:
        return list(self._history)

    def transition(self, to_state: ReconcilerState, reason: str = "") -> bool:
        """
        Move to a new state.

        Returns:
            True if the state changed, False for a same-state call

        Raises:
            InvalidStateTransition: If the transition is not allowed
        """
        allowed, message = TransitionGuard.can_transition(self._state, to_state)
        if not allowed:
            raise InvalidStateTransition(
                f"{self._vault_address}: {message}",
                context={"vault_address": self._vault_address, "reason": reason},
            )
        if to_state == self._state:
            return False

        event = StateTransitionEvent(self._vault_address, self._state, to_state, reason)
        self._history.append(event)
        logger.info(
            f"Allocation state {self._vault_address}: "
            f"{self._state.value} -> {to_state.value} ({reason})"
        )
        self._state = to_state
        self._rebalancing_cycles = 0
        return True

    def tick_rebalancing(self) -> int:
        """Count one more cycle in REBALANCING."""
        if self._state is ReconcilerState.REBALANCING:
            self._rebalancing_cycles += 1
        return self._rebalancing_cycles
