"""
Core Module - Shared Domain Types.

============================================================
PURPOSE
============================================================
Types shared by every ledger:

- Tier: referral-network rank (Novice/Scout/Captain/Whale)
- VaultType: Conservative or Aggressive vault tier
- PointsSource: origin of a points event
- User: wallet-keyed account record

Wallet addresses are the sole external identifier and are always
stored lowercase.

============================================================
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, Optional


ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")


def normalize_address(address: str) -> str:
    """
    Lowercase and validate a wallet or contract address.

    Raises:
        ValueError: If the value is not a 20-byte hex address
    """
    if not isinstance(address, str):
        raise ValueError(f"Address must be a string, got {type(address).__name__}")
    value = address.strip().lower()
    if not ADDRESS_PATTERN.match(value):
        raise ValueError(f"Invalid address: {address!r}")
    return value


def is_valid_address(address: Any) -> bool:
    """Check whether a value is a well-formed address."""
    try:
        normalize_address(address)
        return True
    except ValueError:
        return False


# ============================================================
# ENUMS
# ============================================================

class Tier(IntEnum):
    """
    User tier.

    Ordered: a higher value is a higher tier. The ledger only ever
    moves a user upward.
    """

    NOVICE = 0
    SCOUT = 1
    CAPTAIN = 2
    WHALE = 3

    @property
    def label(self) -> str:
        """Display name."""
        return self.name.capitalize()

    @classmethod
    def parse(cls, value: Any) -> "Tier":
        """Parse a tier from an int index or a name."""
        if isinstance(value, Tier):
            return value
        if isinstance(value, str) and not value.strip().isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown tier: {value!r}")
        return cls(int(value))


class VaultType(Enum):
    """Vault tier."""

    CONSERVATIVE = "conservative"
    """Lower-risk strategies, 1.0x points."""

    AGGRESSIVE = "aggressive"
    """Higher-risk strategies, 1.5x points."""

    @property
    def points_multiplier(self) -> Decimal:
        """Points multiplier for deposits and harvests."""
        return {
            VaultType.CONSERVATIVE: Decimal("1.0"),
            VaultType.AGGRESSIVE: Decimal("1.5"),
        }[self]

    @property
    def risk_level(self) -> int:
        """Risk level assigned to a user whose first deposit lands here."""
        return 0 if self is VaultType.CONSERVATIVE else 1


class PointsSource(Enum):
    """Origin of a points event."""

    DEPOSIT = "deposit"
    HARVEST = "harvest"
    REFERRAL = "referral"
    TIER_UPGRADE = "tier_upgrade"
    REDEMPTION = "redemption"


# ============================================================
# USER
# ============================================================

@dataclass
class User:
    """Wallet-keyed account record."""

    address: str
    """Lowercase wallet address."""

    referral_code: str
    """Derived, unique referral code."""

    created_at: datetime
    """First qualifying event."""

    last_active_at: datetime
    """Most recent event touching this address."""

    referred_by: Optional[str] = None
    """Direct referrer (back-reference only)."""

    tier: Tier = Tier.NOVICE

    auto_compound: bool = True

    risk_level: int = 0

    leverage_active: bool = False

    leverage_multiplier: int = 1

    @staticmethod
    def derive_referral_code(address: str) -> str:
        """Referral code: ten hex chars after the 0x prefix, uppercased."""
        return address[2:12].upper()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "address": self.address,
            "referral_code": self.referral_code,
            "referred_by": self.referred_by,
            "tier": self.tier.label,
            "auto_compound": self.auto_compound,
            "risk_level": self.risk_level,
            "leverage_active": self.leverage_active,
            "leverage_multiplier": self.leverage_multiplier,
            "created_at": self.created_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
        }
