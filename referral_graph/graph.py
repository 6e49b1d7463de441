"""
Referral Graph - Graph.

============================================================
PURPOSE
============================================================
Owns referrer -> referee edges and user tiers, and propagates
referral and tier-upgrade bonuses into the PointsLedger.

CRITICAL INVARIANTS:
    "A referee has at most one direct referrer, fixed once set."
    "Indirect edges are derived, never registered."
    "Tiers only move up, except through admin_set_tier."

AWARD KEYS:
- <event key>:referrer     100 points to the direct referrer
- <event key>:grandparent   50 points to the referrer's referrer
- <event key>              tier-upgrade bonus

============================================================
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from core.clock import ensure_utc
from core.exceptions import MalformedEvent
from core.types import PointsSource, Tier, User, normalize_address
from core.user_registry import UserRegistry
from points_ledger import PointsLedger

from .tiers import NextTierProgress, compute_next_tier_progress
from .types import ReferralEdge, ReferralLevel


logger = logging.getLogger(__name__)


class ReferralGraph:
    """
    Two-level referral graph.

    Mutations run under one lock; point awards are delegated to the
    PointsLedger, which deduplicates on the derived award keys.
    """

    def __init__(self, users: UserRegistry, points: PointsLedger):
        self._users = users
        self._points = points

        self._edges: Dict[Tuple[str, str, int], ReferralEdge] = {}
        self._direct_by_referee: Dict[str, ReferralEdge] = {}
        self._by_referrer: Dict[str, List[ReferralEdge]] = defaultdict(list)
        self._by_referee: Dict[str, List[ReferralEdge]] = defaultdict(list)

        self._tier_keys: Set[str] = set()
        self._deposit_keys: Set[str] = set()

        self._lock = threading.RLock()

    # --------------------------------------------------------
    # REGISTRATION
    # --------------------------------------------------------

    def register_referral(
        self,
        referrer: str,
        referee: str,
        timestamp: datetime,
        idempotency_key: str,
        tx_hash: Optional[str] = None,
    ) -> Optional[ReferralEdge]:
        """
        Register a direct referral.

        Returns:
            The referee's direct edge (new or pre-existing), or None
            when the registration was refused
        """
        referrer = self._address(referrer, "referrer", idempotency_key)
        referee = self._address(referee, "referee", idempotency_key)
        timestamp = ensure_utc(timestamp)

        if referrer == referee:
            logger.warning(f"Self-referral ignored for {referee} ({idempotency_key})")
            return None

        with self._lock:
            existing = self._direct_by_referee.get(referee)
            if existing is not None:
                if existing.referrer != referrer:
                    logger.debug(
                        f"Referee {referee} already referred by {existing.referrer}; "
                        f"ignoring {referrer}"
                    )
                return existing

            parent_edge = self._direct_by_referee.get(referrer)
            grandparent = parent_edge.referrer if parent_edge else None
            if grandparent is None:
                referrer_user = self._users.get(referrer)
                grandparent = referrer_user.referred_by if referrer_user else None

            if grandparent == referee:
                logger.warning(
                    f"Referral cycle ignored: {referee} already refers {referrer} "
                    f"({idempotency_key})"
                )
                return None

            self._users.upsert(referrer, timestamp)
            self._users.upsert(referee, timestamp, referred_by=referrer)

            self._points.award(
                referrer,
                self._points.config.direct_referral_points,
                PointsSource.REFERRAL,
                f"{idempotency_key}:referrer",
                timestamp,
                tx_hash,
            )
            if grandparent is not None:
                self._points.award(
                    grandparent,
                    self._points.config.indirect_referral_points,
                    PointsSource.REFERRAL,
                    f"{idempotency_key}:grandparent",
                    timestamp,
                    tx_hash,
                )

            edge = ReferralEdge(referrer, referee, ReferralLevel.DIRECT, timestamp)
            self._insert(edge)
            if grandparent is not None:
                self._insert(ReferralEdge(grandparent, referee, ReferralLevel.INDIRECT, timestamp))

        logger.info(
            f"Referral registered: {referrer} -> {referee}"
            + (f" (indirect via {grandparent})" if grandparent else "")
        )
        return edge

    # --------------------------------------------------------
    # TIERS
    # --------------------------------------------------------

    def tier_of(self, user: str) -> Tier:
        """Current tier (Novice for unknown users)."""
        record = self._users.get(user)
        return record.tier if record else Tier.NOVICE

    def apply_tier_change(
        self,
        user: str,
        new_tier: Tier,
        timestamp: datetime,
        idempotency_key: str,
        tx_hash: Optional[str] = None,
    ) -> int:
        """
        Apply a TierChanged event.

        Upgrades award the bonus for the new tier once per event key.
        Downgrades and same-tier events are ignored.

        Returns:
            Points awarded by this call
        """
        address = self._address(user, "user", idempotency_key)
        new_tier = Tier.parse(new_tier)
        timestamp = ensure_utc(timestamp)

        with self._lock:
            if idempotency_key in self._tier_keys or self._points.has_event(idempotency_key):
                logger.debug(f"Tier change {idempotency_key} already applied")
                return 0

            record = self._users.upsert(address, timestamp)
            current = record.tier
            if new_tier <= current:
                logger.warning(
                    f"Tier change for {address} ignored: {current.label} -> {new_tier.label} "
                    f"is not an upgrade ({idempotency_key})"
                )
                self._tier_keys.add(idempotency_key)
                return 0

            bonus = self._points.config.bonus_for_tier(new_tier)
            if bonus > 0:
                self._points.award(
                    address, bonus, PointsSource.TIER_UPGRADE, idempotency_key, timestamp, tx_hash
                )
            self._users.set_tier(address, new_tier)
            self._tier_keys.add(idempotency_key)

        logger.info(f"Tier upgraded: {address} {current.label} -> {new_tier.label} (+{bonus} points)")
        return bonus

    def admin_set_tier(self, user: str, tier: Tier) -> User:
        """Governance override; may downgrade. Awards nothing."""
        tier = Tier.parse(tier)
        with self._lock:
            record = self._users.set_tier(user, tier)
        logger.warning(f"Admin set tier of {record.address} to {tier.label}")
        return record

    # --------------------------------------------------------
    # DEPOSIT TRACKING
    # --------------------------------------------------------

    def record_deposit(self, referee: str, assets: int, idempotency_key: Optional[str] = None) -> int:
        """
        Add a referee deposit to every edge pointing at the referee.

        Returns:
            Number of edges updated
        """
        address = normalize_address(referee)
        with self._lock:
            if idempotency_key:
                if idempotency_key in self._deposit_keys:
                    return 0
                self._deposit_keys.add(idempotency_key)
            edges = self._by_referee.get(address, [])
            for edge in edges:
                edge.total_deposited += assets
            return len(edges)

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def referrer_of(self, user: str) -> Optional[str]:
        """Direct referrer of a user."""
        try:
            address = normalize_address(user)
        except ValueError:
            return None
        with self._lock:
            edge = self._direct_by_referee.get(address)
            return edge.referrer if edge else None

    def referees_of(self, user: str, level: ReferralLevel = ReferralLevel.DIRECT) -> List[str]:
        try:
            address = normalize_address(user)
        except ValueError:
            return []
        with self._lock:
            return [e.referee for e in self._by_referrer.get(address, []) if e.level == level]

    def direct_referrals(self, user: str) -> int:
        """Number of users this user referred directly."""
        return len(self.referees_of(user, ReferralLevel.DIRECT))

    def indirect_referrals(self, user: str) -> int:
        """Number of level-2 edges where this user is the referrer."""
        return len(self.referees_of(user, ReferralLevel.INDIRECT))

    def edges_for(self, user: str) -> List[ReferralEdge]:
        """Edges where the user is referrer or referee."""
        try:
            address = normalize_address(user)
        except ValueError:
            return []
        with self._lock:
            return list(self._by_referrer.get(address, [])) + list(self._by_referee.get(address, []))

    def all_edges(self) -> List[ReferralEdge]:
        with self._lock:
            return list(self._edges.values())

    def next_tier_progress(self, user: str, total_deposit_usd: Decimal) -> NextTierProgress:
        """Progress toward the next tier from deposits and direct referrals."""
        return compute_next_tier_progress(
            self.tier_of(user),
            Decimal(total_deposit_usd),
            self.direct_referrals(user),
        )

    # --------------------------------------------------------
    # RESTORE
    # --------------------------------------------------------

    def restore(self, edges: Iterable[ReferralEdge]) -> None:
        """Load edges from storage."""
        with self._lock:
            for edge in edges:
                self._insert(edge)

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _insert(self, edge: ReferralEdge) -> None:
        if edge.key in self._edges:
            return
        self._edges[edge.key] = edge
        self._by_referrer[edge.referrer].append(edge)
        self._by_referee[edge.referee].append(edge)
        if edge.level == ReferralLevel.DIRECT:
            self._direct_by_referee[edge.referee] = edge

    @staticmethod
    def _address(value: str, field_name: str, key: str) -> str:
        try:
            return normalize_address(value)
        except ValueError as e:
            raise MalformedEvent(str(e), field_name=field_name, idempotency_key=key)
