"""
Ledger Domain ORM Models.

============================================================
PURPOSE
============================================================
Durable row contract for the ledgers: users, vault positions,
points events, referral edges, and the bookkeeping needed to keep
replays idempotent after a restart.

============================================================
DATA LIFECYCLE ROLE
============================================================
- users:            MUTABLE (tier, last_active_at), never deleted
- vault_positions:  MUTABLE until closed, never reactivated
- points_events:    IMMUTABLE (append-only)
- referrals:        MUTABLE (total_deposited)
- processed_events: IMMUTABLE (append-only)
- ordering_cursors: MUTABLE (monotonic)
- resync_marks:     MUTABLE (monotonic)

All amounts are raw integer token units (TokenAmount).

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin, TokenAmount


class UserRecord(Base, TimestampMixin):
    """
    Wallet-keyed account.
    """

    __tablename__ = "users"

    address: Mapped[str] = mapped_column(
        String(42),
        primary_key=True,
        comment="Lowercase wallet address"
    )

    referral_code: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        unique=True,
    )

    referred_by: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    tier: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="0 Novice, 1 Scout, 2 Captain, 3 Whale"
    )

    auto_compound: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    risk_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leverage_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    leverage_multiplier: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="First qualifying event time"
    )

    last_active_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<UserRecord(address={self.address}, tier={self.tier})>"


class VaultPositionRecord(Base, TimestampMixin):
    """
    One deposit lot.

    event_key is the txHash:logIndex of the creating Deposited event
    (or the re-sync anchor) and is unique.
    """

    __tablename__ = "vault_positions"

    position_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    vault_address: Mapped[str] = mapped_column(String(42), nullable=False)
    vault_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="conservative | aggressive"
    )

    principal: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    shares: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    principal_deposited: Mapped[int] = mapped_column(TokenAmount, nullable=False)
    shares_received: Mapped[int] = mapped_column(TokenAmount, nullable=False)

    deposited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_harvest_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    deposit_tx_hash: Mapped[str] = mapped_column(
        String(66),
        nullable=False,
        default="",
        comment="Empty for positions created by re-sync"
    )

    event_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)

    __table_args__ = (
        Index("ix_vault_positions_owner", "user_address", "vault_address"),
        Index("ix_vault_positions_active", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<VaultPositionRecord(id={self.position_id}, user={self.user_address}, "
            f"principal={self.principal}, active={self.is_active})>"
        )


class PointsEventRecord(Base, TimestampMixin):
    """
    Append-only points award or redemption.

    A wallet's balance is SUM(amount); it is never stored.
    """

    __tablename__ = "points_events"

    sequence: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Position in the append-only log"
    )

    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="deposit | harvest | referral | tier_upgrade | redemption"
    )
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ReferralRecord(Base, TimestampMixin):
    """
    Referral edge keyed by (referrer, referee, level).
    """

    __tablename__ = "referrals"

    referrer: Mapped[str] = mapped_column(String(42), primary_key=True)
    referee: Mapped[str] = mapped_column(String(42), primary_key=True)
    level: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        comment="1 direct, 2 indirect"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_deposited: Mapped[int] = mapped_column(TokenAmount, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_referrals_referee", "referee"),
    )


class ProcessedEventRecord(Base, TimestampMixin):
    """
    Idempotency key of an applied event.

    scope:
    - "position": withdraw, harvest or credited event handled by the
      position ledger
    - "ordering": any event recorded by the ordering guard
    """

    __tablename__ = "processed_events"

    idempotency_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    scope: Mapped[str] = mapped_column(String(20), primary_key=True)


class OrderingCursorRecord(Base, TimestampMixin):
    """
    Last applied (block_number, log_index) per partition address.
    """

    __tablename__ = "ordering_cursors"

    partition: Mapped[str] = mapped_column(String(42), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)


class ResyncMarkRecord(Base, TimestampMixin):
    """
    Highest re-sync trigger per (user, vault).

    Late vault events at or below the mark are credited points only.
    """

    __tablename__ = "resync_marks"

    user_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    vault_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
