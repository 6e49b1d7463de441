"""
Query Facade - Read Views.

============================================================
PURPOSE
============================================================
Read-only views over the ledgers for the API layer.

PRINCIPLES:
- Computed on demand from the ledgers; no separate mutable cache
- Never mutates ledger state
- Leaderboard order: points desc, earliest created_at, address

============================================================
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from core.clock import ClockProtocol, SystemClock
from core.types import User, VaultType, normalize_address
from core.user_registry import UserRegistry
from points_ledger import PointsLedger, to_usd
from position_ledger import PositionLedger, VaultPosition
from referral_graph import ReferralGraph

from .schemas import (
    LeaderboardEntry,
    LeaderboardResponse,
    MaturityView,
    NextTierProgressView,
    PortfolioSnapshot,
    PositionView,
    StatsResponse,
    UserRankResponse,
    VaultBreakdownEntry,
)


logger = logging.getLogger(__name__)


_LATEST = datetime.max.replace(tzinfo=timezone.utc)


class QueryFacade:
    """
    Portfolio, leaderboard and aggregate views.
    """

    def __init__(
        self,
        users: UserRegistry,
        positions: PositionLedger,
        points: PointsLedger,
        referrals: ReferralGraph,
        clock: Optional[ClockProtocol] = None,
    ):
        self._users = users
        self._positions = positions
        self._points = points
        self._referrals = referrals
        self._clock = clock or SystemClock()

    # --------------------------------------------------------
    # PORTFOLIO
    # --------------------------------------------------------

    def portfolio_snapshot(self, user: str) -> Optional[PortfolioSnapshot]:
        """
        Snapshot of one wallet.

        Returns:
            None for an invalid address or a wallet the ledger has
            never seen
        """
        try:
            address = normalize_address(user)
        except ValueError:
            return None
        record = self._users.get(address)
        if record is None:
            return None

        now = self._clock.now()
        decimals = self._positions.config.asset_decimals
        active = self._positions.active_positions(address)

        by_type: Dict[str, int] = {vault_type.value: 0 for vault_type in VaultType}
        for position in active:
            by_type[position.vault_type.value] += position.principal
        total_principal = sum(by_type.values())

        deposited_usd = to_usd(self._positions.total_deposited(address), decimals)
        progress = self._referrals.next_tier_progress(address, deposited_usd)

        return PortfolioSnapshot(
            address=address,
            tier=record.tier.label,
            tier_level=int(record.tier),
            referral_code=record.referral_code,
            referred_by=record.referred_by,
            active_positions=[self._position_view(p, now) for p in active],
            total_principal=total_principal,
            total_principal_usd=to_usd(total_principal, decimals),
            principal_by_vault_type=by_type,
            total_points=self._points.balance_of(address),
            direct_referrals=self._referrals.direct_referrals(address),
            indirect_referrals=self._referrals.indirect_referrals(address),
            next_tier=NextTierProgressView(
                current_tier=progress.current_tier.label,
                next_tier=progress.next_tier.label if progress.next_tier is not None else None,
                deposit_requirement=progress.deposit_requirement,
                referral_requirement=progress.referral_requirement,
                deposit_progress=progress.deposit_progress,
                referral_progress=progress.referral_progress,
                is_max_tier=progress.is_max_tier,
            ),
            as_of=now,
        )

    def _position_view(self, position: VaultPosition, now: datetime) -> PositionView:
        quote = self._positions.maturity(position, now)
        return PositionView(
            position_id=position.position_id,
            vault_address=position.vault_address,
            vault_type=position.vault_type.value,
            principal=position.principal,
            shares=position.shares,
            deposited_at=position.deposited_at,
            last_harvest_at=position.last_harvest_at,
            maturity=MaturityView(
                is_mature=quote.is_mature,
                days_remaining=quote.days_remaining,
                penalty=quote.penalty,
                amount_to_receive=quote.amount_to_receive,
                forfeited_bonus_points=quote.forfeited_bonus_points,
                matures_at=quote.matures_at,
            ),
        )

    # --------------------------------------------------------
    # LEADERBOARD
    # --------------------------------------------------------

    def leaderboard(self, limit: int = 100, offset: int = 0) -> LeaderboardResponse:
        """Users with points, ranked."""
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")

        ranked = self._ranked()
        page = ranked[offset:offset + limit]
        entries = [
            self._entry(rank, address, points)
            for rank, (address, points) in enumerate(page, start=offset + 1)
        ]
        return LeaderboardResponse(entries=entries, total=len(ranked), limit=limit, offset=offset)

    def user_rank(self, user: str) -> UserRankResponse:
        address = normalize_address(user)
        for rank, (ranked_address, points) in enumerate(self._ranked(), start=1):
            if ranked_address == address:
                return UserRankResponse(address=address, rank=rank, total_points=points)
        return UserRankResponse(address=address, rank=None, total_points=self._points.balance_of(address))

    def _ranked(self) -> List[Tuple[str, int]]:
        rows = []
        for address, points in self._points.balances().items():
            if points <= 0:
                continue
            record = self._users.get(address)
            created_at = record.created_at if record else _LATEST
            rows.append((-points, created_at, address))
        rows.sort()
        return [(address, -negated) for negated, _, address in rows]

    def _entry(self, rank: int, address: str, points: int) -> LeaderboardEntry:
        record: Optional[User] = self._users.get(address)
        return LeaderboardEntry(
            rank=rank,
            address=address,
            total_points=points,
            tier=record.tier.label if record else "Novice",
            direct_referrals=self._referrals.direct_referrals(address),
            indirect_referrals=self._referrals.indirect_referrals(address),
            created_at=record.created_at if record else None,
        )

    # --------------------------------------------------------
    # AGGREGATES
    # --------------------------------------------------------

    def stats(self) -> StatsResponse:
        """Global counters."""
        holders = [p for p in self._points.balances().values() if p > 0]
        total_points = sum(holders)
        average = Decimal(0)
        if holders:
            average = (Decimal(total_points) / len(holders)).quantize(
                Decimal("0.01"), rounding=ROUND_HALF_UP
            )

        active = [p for p in self._positions.all_positions() if p.is_active]
        return StatsResponse(
            total_users=len(self._users),
            users_with_points=len(holders),
            total_points=total_points,
            average_points=average,
            max_points=max(holders) if holders else 0,
            active_positions=len(active),
            total_active_principal=sum(p.principal for p in active),
        )

    def vault_breakdown(self) -> List[VaultBreakdownEntry]:
        """Active principal, shares and depositors per vault."""
        vaults: Dict[str, Dict] = {}
        for position in self._positions.all_positions():
            if not position.is_active:
                continue
            row = vaults.setdefault(position.vault_address, {
                "vault_type": position.vault_type.value,
                "principal": 0,
                "shares": 0,
                "positions": 0,
                "depositors": set(),
            })
            row["principal"] += position.principal
            row["shares"] += position.shares
            row["positions"] += 1
            row["depositors"].add(position.user_address)

        return [
            VaultBreakdownEntry(
                vault_address=vault,
                vault_type=row["vault_type"],
                active_principal=row["principal"],
                active_shares=row["shares"],
                active_positions=row["positions"],
                depositors=len(row["depositors"]),
            )
            for vault, row in sorted(vaults.items())
        ]
