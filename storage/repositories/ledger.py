"""
Ledger Repository.

============================================================
PURPOSE
============================================================
Persists the in-memory ledgers to the durable row contract and
rebuilds them after a restart.

- save_ledgers(): upsert mutable rows (cursors and re-sync marks
  included), append new points events and processed keys; the caller's transaction makes it atomic
- rebuild(): load every table back into empty ledgers

Points events are append-only: a stored sequence is never
rewritten.

============================================================
"""

from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import ensure_utc
from core.types import PointsSource, Tier, User, VaultType
from core.user_registry import UserRegistry
from event_ingestion.ordering import OrderingGuard
from points_ledger import PointsEvent, PointsLedger
from position_ledger import PositionLedger, VaultPosition
from referral_graph import ReferralEdge, ReferralGraph, ReferralLevel
from storage.models.ledger import (
    OrderingCursorRecord,
    PointsEventRecord,
    ProcessedEventRecord,
    ReferralRecord,
    ResyncMarkRecord,
    UserRecord,
    VaultPositionRecord,
)
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import ImmutableRecordError


SCOPE_POSITION = "position"
SCOPE_ORDERING = "ordering"


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


class LedgerRepository(BaseRepository):
    """
    Save and rebuild the full ledger state.
    """

    def __init__(self, session: Session):
        super().__init__(session, "LedgerRepository")

    # =========================================================
    # SAVE
    # =========================================================

    def save_ledgers(
        self,
        users: UserRegistry,
        positions: PositionLedger,
        points: PointsLedger,
        referrals: ReferralGraph,
        ordering: Optional[OrderingGuard] = None,
    ) -> Dict[str, int]:
        """
        Write the current ledger state.

        Does not commit; run inside Database.transaction_scope().

        Returns:
            Rows written per table
        """
        written = {
            "users": self.save_users(users.all()),
            "vault_positions": self.save_positions(positions.all_positions()),
            "points_events": self.append_points_events(points.all_events()),
            "referrals": self.save_referrals(referrals.all_edges()),
            "processed_events": self.save_processed_keys(positions.applied_keys(), SCOPE_POSITION),
        }
        if ordering is not None:
            written["processed_events"] += self.save_processed_keys(
                ordering.applied_keys(), SCOPE_ORDERING
            )
            written["ordering_cursors"] = self.save_ordering_cursors(ordering.snapshot())
            written["resync_marks"] = self.save_resync_marks(ordering.resync_marks())
        self._flush()

        self._logger.info(
            "Ledger saved: " + ", ".join(f"{table}={count}" for table, count in written.items())
        )
        return written

    def save_users(self, users: List[User]) -> int:
        for user in users:
            self._merge(UserRecord(
                address=user.address,
                referral_code=user.referral_code,
                referred_by=user.referred_by,
                tier=int(user.tier),
                auto_compound=user.auto_compound,
                risk_level=user.risk_level,
                leverage_active=user.leverage_active,
                leverage_multiplier=user.leverage_multiplier,
                created_at=user.created_at,
                last_active_at=user.last_active_at,
            ))
        return len(users)

    def save_positions(self, positions: List[VaultPosition]) -> int:
        for position in positions:
            self._merge(VaultPositionRecord(
                position_id=position.position_id,
                user_address=position.user_address,
                vault_address=position.vault_address,
                vault_type=position.vault_type.value,
                principal=position.principal,
                shares=position.shares,
                principal_deposited=position.principal_deposited,
                shares_received=position.shares_received,
                deposited_at=position.deposited_at,
                last_harvest_at=position.last_harvest_at,
                is_active=position.is_active,
                closed_at=position.closed_at,
                deposit_tx_hash=position.deposit_tx_hash,
                event_key=position.event_key,
            ))
        return len(positions)

    def append_points_events(self, events: List[PointsEvent]) -> int:
        """
        Insert events whose sequence is not stored yet.

        Raises:
            ImmutableRecordError: A stored sequence holds a different key
        """
        stored = self._stored_points_keys()
        new_rows = []
        for event in events:
            existing = stored.get(event.sequence)
            if existing is not None:
                if existing != event.idempotency_key:
                    raise ImmutableRecordError(
                        repository_name=self._repository_name,
                        record_id=event.sequence,
                        attempted_operation="rewrite",
                    )
                continue
            new_rows.append(PointsEventRecord(
                sequence=event.sequence,
                wallet_address=event.wallet_address,
                amount=event.amount,
                source=event.source.value,
                idempotency_key=event.idempotency_key,
                tx_hash=event.tx_hash,
                created_at=event.created_at,
            ))
        if new_rows:
            self._add_all(new_rows)
        return len(new_rows)

    def save_referrals(self, edges: List[ReferralEdge]) -> int:
        for edge in edges:
            self._merge(ReferralRecord(
                referrer=edge.referrer,
                referee=edge.referee,
                level=int(edge.level),
                is_active=edge.is_active,
                total_deposited=edge.total_deposited,
                created_at=edge.created_at,
            ))
        return len(edges)

    def save_processed_keys(self, keys, scope: str) -> int:
        stored = self.load_processed_keys(scope)
        new_rows = [
            ProcessedEventRecord(idempotency_key=key, scope=scope)
            for key in sorted(set(keys) - stored)
        ]
        if new_rows:
            self._add_all(new_rows)
        return len(new_rows)

    def save_ordering_cursors(self, cursors: Dict[str, Tuple[int, int]]) -> int:
        for partition, (block_number, log_index) in cursors.items():
            self._merge(OrderingCursorRecord(
                partition=partition,
                block_number=block_number,
                log_index=log_index,
            ))
        return len(cursors)

    def save_resync_marks(self, marks: Dict[Tuple[str, str], Tuple[int, int]]) -> int:
        for (user, vault), (block_number, log_index) in marks.items():
            self._merge(ResyncMarkRecord(
                user_address=user,
                vault_address=vault,
                block_number=block_number,
                log_index=log_index,
            ))
        return len(marks)

    # =========================================================
    # LOAD
    # =========================================================

    def load_users(self) -> List[User]:
        records = self._execute_query(select(UserRecord).order_by(UserRecord.created_at))
        return [
            User(
                address=r.address,
                referral_code=r.referral_code,
                created_at=ensure_utc(r.created_at),
                last_active_at=ensure_utc(r.last_active_at),
                referred_by=r.referred_by,
                tier=Tier(r.tier),
                auto_compound=r.auto_compound,
                risk_level=r.risk_level,
                leverage_active=r.leverage_active,
                leverage_multiplier=r.leverage_multiplier,
            )
            for r in records
        ]

    def load_positions(self) -> List[VaultPosition]:
        records = self._execute_query(
            select(VaultPositionRecord).order_by(
                VaultPositionRecord.deposited_at, VaultPositionRecord.event_key
            )
        )
        return [
            VaultPosition(
                user_address=r.user_address,
                vault_address=r.vault_address,
                vault_type=VaultType(r.vault_type),
                principal=r.principal,
                shares=r.shares,
                deposited_at=ensure_utc(r.deposited_at),
                deposit_tx_hash=r.deposit_tx_hash,
                event_key=r.event_key,
                principal_deposited=r.principal_deposited,
                shares_received=r.shares_received,
                last_harvest_at=_utc(r.last_harvest_at),
                is_active=r.is_active,
                closed_at=_utc(r.closed_at),
                position_id=r.position_id,
            )
            for r in records
        ]

    def load_points_events(self) -> List[PointsEvent]:
        records = self._execute_query(select(PointsEventRecord).order_by(PointsEventRecord.sequence))
        return [
            PointsEvent(
                wallet_address=r.wallet_address,
                amount=r.amount,
                source=PointsSource(r.source),
                idempotency_key=r.idempotency_key,
                created_at=ensure_utc(r.created_at),
                tx_hash=r.tx_hash,
                sequence=r.sequence,
            )
            for r in records
        ]

    def load_referrals(self) -> List[ReferralEdge]:
        records = self._execute_query(
            select(ReferralRecord).order_by(ReferralRecord.created_at, ReferralRecord.level)
        )
        return [
            ReferralEdge(
                referrer=r.referrer,
                referee=r.referee,
                level=ReferralLevel(r.level),
                created_at=ensure_utc(r.created_at),
                is_active=r.is_active,
                total_deposited=r.total_deposited,
            )
            for r in records
        ]

    def load_processed_keys(self, scope: str) -> Set[str]:
        try:
            result = self._session.execute(
                select(ProcessedEventRecord.idempotency_key).where(ProcessedEventRecord.scope == scope)
            )
            return set(result.scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "load_processed_keys", {"scope": scope})
            raise

    def load_ordering_cursors(self) -> Dict[str, Tuple[int, int]]:
        records = self._execute_query(select(OrderingCursorRecord))
        return {r.partition: (r.block_number, r.log_index) for r in records}

    def load_resync_marks(self) -> Dict[Tuple[str, str], Tuple[int, int]]:
        records = self._execute_query(select(ResyncMarkRecord))
        return {
            (r.user_address, r.vault_address): (r.block_number, r.log_index)
            for r in records
        }

    # =========================================================
    # REBUILD
    # =========================================================

    def rebuild(
        self,
        users: UserRegistry,
        positions: PositionLedger,
        points: PointsLedger,
        referrals: ReferralGraph,
        ordering: Optional[OrderingGuard] = None,
    ) -> Dict[str, int]:
        """
        Load stored state into empty ledgers.

        Returns:
            Rows loaded per table
        """
        loaded_users = self.load_users()
        for user in loaded_users:
            users.restore(user)

        loaded_points = points.restore(self.load_points_events())

        loaded_positions = self.load_positions()
        position_keys = self.load_processed_keys(SCOPE_POSITION)
        positions.restore(loaded_positions, sorted(position_keys))

        loaded_edges = self.load_referrals()
        referrals.restore(loaded_edges)

        counts = {
            "users": len(loaded_users),
            "points_events": loaded_points,
            "vault_positions": len(loaded_positions),
            "referrals": len(loaded_edges),
            "processed_events": len(position_keys),
        }

        if ordering is not None:
            cursors = self.load_ordering_cursors()
            applied = self.load_processed_keys(SCOPE_ORDERING)
            marks = self.load_resync_marks()
            ordering.restore(cursors, applied, marks)
            counts["ordering_cursors"] = len(cursors)
            counts["resync_marks"] = len(marks)
            counts["processed_events"] += len(applied)

        self._logger.info(
            "Ledger rebuilt: " + ", ".join(f"{table}={count}" for table, count in counts.items())
        )
        return counts

    # =========================================================
    # INTERNALS
    # =========================================================

    def _stored_points_keys(self) -> Dict[int, str]:
        try:
            result = self._session.execute(
                select(PointsEventRecord.sequence, PointsEventRecord.idempotency_key)
            )
            return {sequence: key for sequence, key in result.all()}
        except SQLAlchemyError as e:
            self._handle_db_error(e, "stored_points_keys")
            raise
