"""
Points Ledger - Ledger.

============================================================
PURPOSE
============================================================
Owns every PointsEvent. Awards and redemptions are appended to an
immutable log; balances are derived from it.

CRITICAL INVARIANTS:
    "sum(amount for wallet) >= 0 always holds."
    "An idempotency key is recorded at most once."

CONCURRENCY:
- Awards and redemptions on a wallet run under that wallet's lock
- Redemption re-derives the balance under the lock before commit

CACHING:
- Balances are cached incrementally
- verify_balances() re-derives every wallet from the log and
  repairs any divergence

============================================================
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.exceptions import InsufficientPoints, InvalidPointsAmount
from core.types import PointsSource, normalize_address

from .config import PointsConfig
from .types import BalanceDivergence, PointsEvent


logger = logging.getLogger(__name__)


class PointsLedger:
    """
    Append-only points ledger.

    The event log is the sole source of truth; the balance map is a
    materialized view that can always be rebuilt from it.
    """

    def __init__(
        self,
        config: Optional[PointsConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize the ledger.

        Args:
            config: Points configuration
            clock: Clock used when a caller supplies no timestamp
        """
        self._config = config or PointsConfig()
        self._clock = clock or SystemClock()

        self._log: List[PointsEvent] = []
        self._by_key: Dict[str, PointsEvent] = {}
        self._by_wallet: Dict[str, List[PointsEvent]] = defaultdict(list)
        self._balances: Dict[str, int] = defaultdict(int)

        self._log_lock = threading.Lock()
        self._wallet_locks: Dict[str, threading.RLock] = {}
        self._wallet_locks_guard = threading.Lock()

    @property
    def config(self) -> PointsConfig:
        return self._config

    # --------------------------------------------------------
    # MUTATIONS
    # --------------------------------------------------------

    def award(
        self,
        wallet: str,
        amount: int,
        source: PointsSource,
        idempotency_key: str,
        timestamp: Optional[datetime] = None,
        tx_hash: Optional[str] = None,
    ) -> PointsEvent:
        """
        Award points.

        Args:
            wallet: Wallet address
            amount: Non-negative amount
            source: Origin of the award (any source except redemption)
            idempotency_key: Key of the originating event
            timestamp: Event time
            tx_hash: Originating transaction

        Returns:
            The recorded event, or the existing one for a duplicate key

        Raises:
            InvalidPointsAmount: Negative amount or redemption source
        """
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise InvalidPointsAmount(f"Points amount must be an integer, got {amount!r}")
        if amount < 0:
            raise InvalidPointsAmount(
                f"Awards must be non-negative (got {amount}); use redeem for debits",
                context={"wallet_address": wallet, "idempotency_key": idempotency_key},
            )
        if source is PointsSource.REDEMPTION:
            raise InvalidPointsAmount("Redemptions must go through redeem()")
        if not idempotency_key:
            raise InvalidPointsAmount("Awards require an idempotency key")

        address = normalize_address(wallet)
        with self._wallet_lock(address):
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                logger.debug(f"Duplicate points award ignored: {idempotency_key}")
                return existing

            event = self._append(
                address, amount, source, idempotency_key, timestamp, tx_hash
            )

        logger.info(
            f"Awarded {amount} points to {address} "
            f"(source={source.value}, key={idempotency_key})"
        )
        return event

    def redeem(
        self,
        wallet: str,
        amount: int,
        idempotency_key: str,
        timestamp: Optional[datetime] = None,
    ) -> PointsEvent:
        """
        Spend points.

        Args:
            wallet: Wallet address
            amount: Positive amount to spend
            idempotency_key: Key identifying this redemption
            timestamp: Redemption time

        Returns:
            The recorded (negative) event, or the existing one for a
            duplicate key

        Raises:
            InvalidPointsAmount: Amount not positive
            InsufficientPoints: Amount exceeds the current balance
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidPointsAmount(f"Redemption amount must be a positive integer, got {amount!r}")
        if not idempotency_key:
            raise InvalidPointsAmount("Redemptions require an idempotency key")

        address = normalize_address(wallet)
        with self._wallet_lock(address):
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                logger.debug(f"Duplicate redemption ignored: {idempotency_key}")
                return existing

            # Re-derive immediately before commit
            balance = self._derive(address)
            if amount > balance:
                logger.warning(
                    f"Redemption rejected for {address}: "
                    f"requested {amount}, available {balance}"
                )
                raise InsufficientPoints(address, amount, balance)

            event = self._append(
                address, -amount, PointsSource.REDEMPTION, idempotency_key, timestamp, None
            )

        logger.info(f"Redeemed {amount} points for {address} (key={idempotency_key})")
        return event

    def restore(self, events: Iterable[PointsEvent]) -> int:
        """
        Load events from storage into an empty ledger.

        Events are appended in sequence order and balances rebuilt.

        Returns:
            Number of events loaded
        """
        ordered = sorted(events, key=lambda e: e.sequence)
        with self._log_lock:
            if self._log:
                raise RuntimeError("restore() requires an empty ledger")
            for event in ordered:
                if event.idempotency_key in self._by_key:
                    continue
                self._log.append(event)
                self._by_key[event.idempotency_key] = event
                self._by_wallet[event.wallet_address].append(event)
        self.rebuild_cache()
        return len(self._log)

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def balance_of(self, wallet: str) -> int:
        """Current balance (>= 0)."""
        try:
            address = normalize_address(wallet)
        except ValueError:
            return 0
        with self._wallet_lock(address):
            if self._config.verify_on_read:
                self._verify_wallet(address)
            return self._balances.get(address, 0)

    def events_for(self, wallet: str) -> List[PointsEvent]:
        """All events for a wallet, oldest first."""
        try:
            address = normalize_address(wallet)
        except ValueError:
            return []
        with self._wallet_lock(address):
            return list(self._by_wallet.get(address, []))

    def has_event(self, idempotency_key: str) -> bool:
        """Whether a key has been recorded."""
        return idempotency_key in self._by_key

    def get_event(self, idempotency_key: str) -> Optional[PointsEvent]:
        return self._by_key.get(idempotency_key)

    def wallets(self) -> List[str]:
        """Wallets with at least one event."""
        with self._log_lock:
            return list(self._by_wallet.keys())

    def all_events(self) -> List[PointsEvent]:
        """The full log, in append order."""
        with self._log_lock:
            return list(self._log)

    def balances(self) -> Dict[str, int]:
        """Snapshot of every wallet's balance."""
        with self._log_lock:
            return dict(self._balances)

    def total_points(self) -> int:
        """Sum of all balances."""
        with self._log_lock:
            return sum(self._balances.values())

    # --------------------------------------------------------
    # CACHE VERIFICATION
    # --------------------------------------------------------

    def verify_balances(self) -> List[BalanceDivergence]:
        """
        Re-derive every balance from the log and repair divergence.

        Returns:
            Divergences found (empty when the cache was consistent)
        """
        divergences: List[BalanceDivergence] = []
        for address in self.wallets():
            with self._wallet_lock(address):
                divergence = self._verify_wallet(address)
                if divergence:
                    divergences.append(divergence)
        if divergences:
            logger.error(f"Points cache diverged for {len(divergences)} wallets; repaired from log")
        return divergences

    def rebuild_cache(self) -> None:
        """Recompute every balance from the log."""
        with self._log_lock:
            self._balances = defaultdict(int)
            for event in self._log:
                self._balances[event.wallet_address] += event.amount

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _append(
        self,
        address: str,
        amount: int,
        source: PointsSource,
        idempotency_key: str,
        timestamp: Optional[datetime],
        tx_hash: Optional[str],
    ) -> PointsEvent:
        created_at = ensure_utc(timestamp) if timestamp else self._clock.now()
        with self._log_lock:
            event = PointsEvent(
                wallet_address=address,
                amount=amount,
                source=source,
                idempotency_key=idempotency_key,
                created_at=created_at,
                tx_hash=tx_hash.lower() if tx_hash else None,
                sequence=len(self._log),
            )
            self._log.append(event)
            self._by_key[idempotency_key] = event
            self._by_wallet[address].append(event)
            self._balances[address] += amount
        return event

    def _derive(self, address: str) -> int:
        with self._log_lock:
            return sum(e.amount for e in self._by_wallet.get(address, []))

    def _verify_wallet(self, address: str) -> Optional[BalanceDivergence]:
        derived = self._derive(address)
        with self._log_lock:
            cached = self._balances.get(address, 0)
            if cached == derived:
                return None
            self._balances[address] = derived
        logger.warning(f"Points cache for {address} was {cached}, log says {derived}")
        return BalanceDivergence(address, cached, derived)

    def _wallet_lock(self, address: str) -> threading.RLock:
        with self._wallet_locks_guard:
            lock = self._wallet_locks.get(address)
            if lock is None:
                lock = threading.RLock()
                self._wallet_locks[address] = lock
            return lock
