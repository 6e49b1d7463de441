"""
Position Ledger Package.

============================================================
PURPOSE
============================================================
Tracks principal and shares per user, per vault, per deposit
lot, and computes maturity and early-withdrawal penalties.

CRITICAL PRINCIPLE:
    "Shares are minted only by Deposited and burned only by Withdrawn."
    "Out-of-order events are surfaced, never guessed around."

============================================================
MODULES
============================================================
- types: VaultPosition, MaturityQuote, WithdrawalOutcome
- config: PositionConfig, MaturityConfig, WithdrawalMode
- maturity: Maturity and penalty math
- ledger: PositionLedger

============================================================
"""

from .config import MaturityConfig, PositionConfig, WithdrawalMode
from .ledger import PositionLedger
from .maturity import matures_at, maturity_quote, withdrawal_preview
from .types import MaturityQuote, VaultPosition, WithdrawalOutcome


__all__ = [
    "PositionConfig",
    "MaturityConfig",
    "WithdrawalMode",
    "PositionLedger",
    "VaultPosition",
    "MaturityQuote",
    "WithdrawalOutcome",
    "matures_at",
    "maturity_quote",
    "withdrawal_preview",
]
