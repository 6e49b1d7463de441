"""
Points Ledger - Types.

============================================================
PURPOSE
============================================================
PointsEvent is the immutable, append-only record of a points
award or redemption. A wallet's balance is always derived from
these records.

============================================================
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from core.types import PointsSource


@dataclass(frozen=True)
class PointsEvent:
    """A single award (positive) or redemption (negative)."""

    wallet_address: str
    """Lowercase wallet address."""

    amount: int
    """Signed amount; negative only for redemptions."""

    source: PointsSource
    """Origin of the points."""

    idempotency_key: str
    """Key of the originating event; unique across the ledger."""

    created_at: datetime
    """Event time (UTC)."""

    tx_hash: Optional[str] = None
    """Originating transaction hash, if any."""

    sequence: int = 0
    """Position in the append-only log."""

    @property
    def is_redemption(self) -> bool:
        return self.source is PointsSource.REDEMPTION

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "wallet_address": self.wallet_address,
            "amount": self.amount,
            "source": self.source.value,
            "idempotency_key": self.idempotency_key,
            "tx_hash": self.tx_hash,
            "created_at": self.created_at.isoformat(),
            "sequence": self.sequence,
        }


@dataclass
class BalanceDivergence:
    """A cached balance that disagreed with the event log."""

    wallet_address: str
    cached: int
    derived: int
