"""
Position Ledger - Ledger.

============================================================
PURPOSE
============================================================
Owns every VaultPosition. Applies Deposited, Withdrawn and
YieldHarvested events and answers maturity/penalty questions.

CRITICAL INVARIANTS:
    "principal >= 0 for every lot."
    "A lot goes active -> inactive exactly once."
    "Active principal never exceeds deposited minus withdrawn."

APPLY CONTRACT:
- Every apply_* call is idempotent on the event's idempotency key
- Validation and planning happen before any mutation
- Points are awarded before positions change; awards are
  themselves idempotent, so a retried event converges
- credit_points() pays the points of an event whose position effect
  a re-sync already captured; lots are not touched

============================================================
"""

import dataclasses
import logging
import threading
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple, Union

from core.clock import ClockProtocol, SystemClock, ensure_utc
from core.events import DepositEvent, HarvestEvent, WithdrawEvent
from core.exceptions import MalformedEvent, OutOfOrderEvent
from core.types import PointsSource, VaultType, normalize_address
from core.user_registry import UserRegistry
from points_ledger import PointsLedger, vault_points

from .config import PositionConfig, WithdrawalMode
from .maturity import maturity_quote, withdrawal_preview
from .types import MaturityQuote, VaultPosition, WithdrawalOutcome


logger = logging.getLogger(__name__)


class PositionLedger:
    """
    Per-user, per-vault deposit lots.

    All mutations run under a single ledger lock. Events for one user
    are already serialized by the dispatcher; the lock protects the
    shared indexes when different users are applied concurrently.
    """

    def __init__(
        self,
        users: UserRegistry,
        points: PointsLedger,
        config: Optional[PositionConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize the ledger.

        Args:
            users: Shared user registry
            points: Points ledger receiving deposit/harvest awards
            config: Position configuration
            clock: Clock used for maturity quotes
        """
        self._users = users
        self._points = points
        self._config = config or PositionConfig()
        self._clock = clock or SystemClock()

        self._positions: Dict[str, VaultPosition] = {}
        self._by_event_key: Dict[str, VaultPosition] = {}
        self._by_owner: Dict[Tuple[str, str], List[VaultPosition]] = defaultdict(list)

        self._withdrawals: Dict[str, WithdrawalOutcome] = {}
        self._harvests: Dict[str, int] = {}
        self._restored_keys: Set[str] = set()
        self._credited: Set[str] = set()

        self._lock = threading.RLock()

    @property
    def config(self) -> PositionConfig:
        return self._config

    # --------------------------------------------------------
    # DEPOSIT
    # --------------------------------------------------------

    def apply_deposit(self, event: DepositEvent) -> VaultPosition:
        """
        Apply a Deposited event.

        Returns:
            The new position, or the existing one if the event was
            already applied
        """
        key = event.idempotency_key
        self._require_non_negative(event.assets, "assets", key)
        self._require_non_negative(event.shares, "shares", key)
        user = normalize_address(event.user)
        vault = normalize_address(event.vault_address)
        timestamp = ensure_utc(event.block_timestamp)

        with self._lock:
            existing = self._by_event_key.get(key)
            if existing is not None:
                logger.debug(f"Deposit {key} already applied")
                return existing

            self._users.upsert(user, timestamp, risk_level=event.vault_type.risk_level)

            points = vault_points(
                event.assets,
                event.vault_type,
                self._config.asset_decimals,
                self._points.config.usd_per_point,
            )
            if points > 0:
                self._points.award(
                    user, points, PointsSource.DEPOSIT, key, timestamp, event.tx_hash
                )

            position = VaultPosition(
                user_address=user,
                vault_address=vault,
                vault_type=event.vault_type,
                principal=event.assets,
                shares=event.shares,
                deposited_at=timestamp,
                deposit_tx_hash=event.tx_hash.lower(),
                event_key=key,
            )
            self._insert(position)

        logger.info(
            f"Deposit applied: {user} -> {event.vault_type.value} vault "
            f"(assets={event.assets}, shares={event.shares}, points={points})"
        )
        return position

    # --------------------------------------------------------
    # WITHDRAW
    # --------------------------------------------------------

    def apply_withdraw(self, event: WithdrawEvent) -> WithdrawalOutcome:
        """
        Apply a Withdrawn event.

        Raises:
            OutOfOrderEvent: (user, vault) holds no active position, or
                FIFO burning exceeds the shares on the ledger
        """
        key = event.idempotency_key
        self._require_non_negative(event.assets_returned, "assets_returned", key)
        self._require_non_negative(event.shares_burned, "shares_burned", key)
        user = normalize_address(event.user)
        vault = normalize_address(event.vault_address)
        timestamp = ensure_utc(event.block_timestamp)

        with self._lock:
            previous = self._withdrawals.get(key)
            if previous is not None:
                logger.debug(f"Withdraw {key} already applied")
                return dataclasses.replace(previous, duplicate=True)
            if key in self._restored_keys or key in self._credited:
                return WithdrawalOutcome(
                    idempotency_key=key, user_address=user, vault_address=vault, duplicate=True
                )

            lots = self._by_owner.get((user, vault), [])
            active = self._oldest_first(p for p in lots if p.is_active)
            if not active:
                reason = "every lot is already closed" if lots else "no matching deposit"
                raise OutOfOrderEvent(
                    f"Withdraw {key} for {user} on {vault}: {reason}",
                    user_address=user,
                    vault_address=vault,
                    ordering_key=event.ordering_key,
                    idempotency_key=key,
                )

            if self._config.withdrawal_mode is WithdrawalMode.FIFO_SHARES:
                plan = self._plan_fifo(active, event.shares_burned, event, user, vault)
            else:
                plan = [(p, p.shares, p.principal) for p in active]

            outcome = WithdrawalOutcome(
                idempotency_key=key,
                user_address=user,
                vault_address=vault,
                shares_burned=event.shares_burned,
                yield_amount=event.assets_returned - event.shares_burned,
            )
            maturity = self._config.maturity
            for position, _, principal_out in plan:
                quote = maturity_quote(position, timestamp, maturity)
                if not quote.is_mature and principal_out > 0:
                    outcome.early = True
                    outcome.penalty += Decimal(principal_out) * maturity.penalty_rate

            if outcome.yield_amount > 0 and self._config.award_harvest_points_on_withdraw:
                outcome.points_awarded = vault_points(
                    outcome.yield_amount,
                    event.vault_type,
                    self._config.asset_decimals,
                    self._points.config.usd_per_point,
                )
                if outcome.points_awarded > 0:
                    self._points.award(
                        user,
                        outcome.points_awarded,
                        PointsSource.HARVEST,
                        key,
                        timestamp,
                        event.tx_hash,
                    )

            for position, shares_out, principal_out in plan:
                position.shares -= shares_out
                position.principal -= principal_out
                outcome.principal_released += principal_out
                if position.shares == 0 or self._config.withdrawal_mode is WithdrawalMode.FULL:
                    self._deactivate(position, timestamp)
                    outcome.closed_positions.append(position)
                else:
                    outcome.reduced_positions.append(position)

            self._users.upsert(user, timestamp)
            self._withdrawals[key] = outcome

        if outcome.early:
            logger.warning(
                f"Early withdrawal by {user} on {vault}: "
                f"penalty {outcome.penalty} on {outcome.principal_released} principal"
            )
        logger.info(
            f"Withdraw applied: {user} on {vault} "
            f"(closed={len(outcome.closed_positions)}, "
            f"reduced={len(outcome.reduced_positions)}, yield={outcome.yield_amount})"
        )
        return outcome

    def _plan_fifo(
        self,
        active: List[VaultPosition],
        shares_burned: int,
        event: WithdrawEvent,
        user: str,
        vault: str,
    ) -> List[Tuple[VaultPosition, int, int]]:
        """Plan (position, shares_out, principal_out) burning oldest lots first."""
        available = sum(p.shares for p in active)
        if shares_burned > available:
            raise OutOfOrderEvent(
                f"Withdraw {event.idempotency_key} burns {shares_burned} shares, "
                f"ledger holds {available} for {user} on {vault}",
                user_address=user,
                vault_address=vault,
                ordering_key=event.ordering_key,
                idempotency_key=event.idempotency_key,
            )

        plan = []
        remaining = shares_burned
        for position in active:
            if remaining == 0:
                break
            burn = min(position.shares, remaining)
            if burn == position.shares:
                principal_out = position.principal
            else:
                principal_out = position.principal * burn // position.shares
            plan.append((position, burn, principal_out))
            remaining -= burn
        return plan

    # --------------------------------------------------------
    # HARVEST
    # --------------------------------------------------------

    def apply_harvest(self, event: HarvestEvent) -> int:
        """
        Apply a YieldHarvested event.

        Returns:
            Points awarded (0 for a redelivery)

        Raises:
            OutOfOrderEvent: The user holds no active position in the vault
        """
        key = event.idempotency_key
        self._require_non_negative(event.amount, "amount", key)
        user = normalize_address(event.user)
        vault = normalize_address(event.vault_address)
        timestamp = ensure_utc(event.block_timestamp)

        with self._lock:
            if key in self._harvests or key in self._restored_keys or key in self._credited:
                logger.debug(f"Harvest {key} already applied")
                return 0

            active = [p for p in self._by_owner.get((user, vault), []) if p.is_active]
            if not active:
                raise OutOfOrderEvent(
                    f"Harvest {key} for {user} on {vault} has no active position",
                    user_address=user,
                    vault_address=vault,
                    ordering_key=event.ordering_key,
                    idempotency_key=key,
                )

            points = vault_points(
                event.amount,
                event.vault_type,
                self._config.asset_decimals,
                self._points.config.usd_per_point,
            )
            if points > 0:
                self._points.award(
                    user, points, PointsSource.HARVEST, key, timestamp, event.tx_hash
                )

            for position in active:
                position.last_harvest_at = timestamp
            self._users.upsert(user, timestamp)
            self._harvests[key] = points

        logger.info(f"Harvest applied: {user} on {vault} (amount={event.amount}, points={points})")
        return points

    # --------------------------------------------------------
    # RE-SYNC
    # --------------------------------------------------------

    def resync(
        self,
        user: str,
        vault_address: str,
        shares: int,
        assets: int,
        as_of: datetime,
        anchor: str,
        vault_type: Optional[VaultType] = None,
    ) -> Optional[VaultPosition]:
        """
        Replace the ledger's view of (user, vault) with on-chain state.

        Closes every active lot and, when shares remain, opens one lot
        holding them. The new lot keeps the earliest open deposit time
        so maturity is not reset. No points are awarded.

        Args:
            user: Wallet address
            vault_address: Vault contract
            shares: Authoritative share balance
            assets: convertToAssets(shares)
            as_of: Time of the on-chain read
            anchor: Idempotency anchor for this re-sync
            vault_type: Vault type when the ledger has never seen the vault

        Returns:
            The replacement lot, or None when the balance is zero
        """
        if shares < 0 or assets < 0:
            raise ValueError(f"Re-sync balances must be >= 0 (shares={shares}, assets={assets})")
        user = normalize_address(user)
        vault = normalize_address(vault_address)
        as_of = ensure_utc(as_of)

        with self._lock:
            existing = self._by_event_key.get(anchor)
            if existing is not None:
                return existing

            lots = self._by_owner.get((user, vault), [])
            if vault_type is None:
                if not lots:
                    raise ValueError(f"Unknown vault type for re-sync of {user} on {vault}")
                vault_type = lots[0].vault_type

            active = self._oldest_first(p for p in lots if p.is_active)
            deposited_at = active[0].deposited_at if active else as_of

            for position in active:
                self._deactivate(position, as_of)

            self._users.upsert(user, as_of, risk_level=vault_type.risk_level)

            replacement = None
            if shares > 0:
                replacement = VaultPosition(
                    user_address=user,
                    vault_address=vault,
                    vault_type=vault_type,
                    principal=assets,
                    shares=shares,
                    deposited_at=deposited_at,
                    deposit_tx_hash="",
                    event_key=anchor,
                )
                self._insert(replacement)

        logger.warning(
            f"Re-synced {user} on {vault}: closed {len(active)} lots, "
            f"on-chain shares={shares}, assets={assets}"
        )
        return replacement

    def credit_points(self, event: Union[DepositEvent, WithdrawEvent, HarvestEvent]) -> int:
        """
        Award the points of an event a re-sync already accounted for.

        The re-synced lot holds the event's position effect, so lots
        are left untouched; only the deposit or yield points are owed.

        Returns:
            Points awarded (0 when the key was already handled)
        """
        key = event.idempotency_key
        if isinstance(event, DepositEvent):
            self._require_non_negative(event.assets, "assets", key)
            amount, source = event.assets, PointsSource.DEPOSIT
        elif isinstance(event, WithdrawEvent):
            self._require_non_negative(event.assets_returned, "assets_returned", key)
            self._require_non_negative(event.shares_burned, "shares_burned", key)
            amount, source = event.assets_returned - event.shares_burned, PointsSource.HARVEST
            if not self._config.award_harvest_points_on_withdraw:
                amount = 0
        elif isinstance(event, HarvestEvent):
            self._require_non_negative(event.amount, "amount", key)
            amount, source = event.amount, PointsSource.HARVEST
        else:
            raise MalformedEvent(
                f"Cannot credit {type(event).__name__} {key}", idempotency_key=key
            )
        user = normalize_address(event.user)
        timestamp = ensure_utc(event.block_timestamp)

        with self._lock:
            if self._is_handled(key):
                return 0

            points = 0
            if amount > 0:
                points = vault_points(
                    amount,
                    event.vault_type,
                    self._config.asset_decimals,
                    self._points.config.usd_per_point,
                )
            if points > 0:
                self._points.award(user, points, source, key, timestamp, event.tx_hash)
            self._users.upsert(user, timestamp)
            self._credited.add(key)

        logger.info(f"Credited {points} {source.value} points to {user} for re-synced event {key}")
        return points

    # --------------------------------------------------------
    # MATURITY
    # --------------------------------------------------------

    def maturity(self, position: VaultPosition, now: Optional[datetime] = None) -> MaturityQuote:
        """Maturity quote for a position (default: clock time)."""
        return maturity_quote(position, now or self._clock.now(), self._config.maturity)

    def withdrawal_preview(
        self,
        position: VaultPosition,
        current_value: int,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """Amount a full withdrawal of the position would pay now."""
        return withdrawal_preview(
            position, current_value, now or self._clock.now(), self._config.maturity
        )

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get(self, position_id: str) -> Optional[VaultPosition]:
        with self._lock:
            return self._positions.get(position_id)

    def by_event_key(self, event_key: str) -> Optional[VaultPosition]:
        with self._lock:
            return self._by_event_key.get(event_key)

    def positions_for(self, user: str) -> List[VaultPosition]:
        """Every lot ever opened by a user, oldest first."""
        try:
            address = normalize_address(user)
        except ValueError:
            return []
        with self._lock:
            lots = [p for (owner, _), ps in self._by_owner.items() if owner == address for p in ps]
        return self._oldest_first(lots)

    def active_positions(self, user: str) -> List[VaultPosition]:
        return [p for p in self.positions_for(user) if p.is_active]

    def aggregate_principal(self, user: str, vault_type: Optional[VaultType] = None) -> int:
        """Sum of active principal, optionally for one vault type."""
        return sum(
            p.principal
            for p in self.active_positions(user)
            if vault_type is None or p.vault_type is vault_type
        )

    def total_deposited(self, user: str) -> int:
        """Sum of principal ever deposited (re-sync lots excluded)."""
        return sum(
            p.principal_deposited for p in self.positions_for(user) if p.deposit_tx_hash
        )

    def all_positions(self) -> List[VaultPosition]:
        with self._lock:
            return list(self._positions.values())

    def applied_keys(self) -> List[str]:
        """Idempotency keys of applied withdraw and harvest events and credited events."""
        with self._lock:
            return (
                list(self._withdrawals.keys())
                + list(self._harvests.keys())
                + sorted(self._credited)
                + sorted(self._restored_keys)
            )

    # --------------------------------------------------------
    # RESTORE
    # --------------------------------------------------------

    def restore(self, positions: List[VaultPosition], applied_keys: List[str]) -> None:
        """
        Load positions and applied event keys from storage.

        A redelivered withdraw whose key was restored returns an empty
        duplicate outcome; a redelivered harvest awards nothing.
        """
        with self._lock:
            for position in positions:
                self._insert(position)
            self._restored_keys.update(k for k in applied_keys if k not in self._by_event_key)
        logger.info(f"Restored {len(positions)} positions and {len(applied_keys)} applied events")

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _is_handled(self, key: str) -> bool:
        return (
            key in self._by_event_key
            or key in self._withdrawals
            or key in self._harvests
            or key in self._credited
            or key in self._restored_keys
        )

    def _insert(self, position: VaultPosition) -> None:
        self._positions[position.position_id] = position
        self._by_event_key[position.event_key] = position
        self._by_owner[(position.user_address, position.vault_address)].append(position)

    def _deactivate(self, position: VaultPosition, when: datetime) -> None:
        if not position.is_active:
            return
        position.is_active = False
        position.closed_at = when

    @staticmethod
    def _oldest_first(positions) -> List[VaultPosition]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(positions, key=lambda p: p.deposited_at)

    @staticmethod
    def _require_non_negative(value: int, field_name: str, key: str) -> None:
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise MalformedEvent(
                f"{field_name} must be a non-negative integer, got {value!r}",
                field_name=field_name,
                idempotency_key=key,
            )
