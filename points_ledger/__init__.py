"""
Points Ledger Package.

============================================================
PURPOSE
============================================================
Owns every point award and redemption.

CRITICAL PRINCIPLE:
    "The event log is the source of truth."
    "A wallet's balance never goes negative."

============================================================
MODULES
============================================================
- types: PointsEvent, BalanceDivergence
- config: Points configuration and tier bonus table
- rules: Deposit/harvest point formulas
- ledger: PointsLedger

============================================================
"""

from .config import PointsConfig
from .ledger import PointsLedger
from .rules import to_usd, vault_points
from .types import BalanceDivergence, PointsEvent


__all__ = [
    "PointsConfig",
    "PointsLedger",
    "PointsEvent",
    "BalanceDivergence",
    "to_usd",
    "vault_points",
]
