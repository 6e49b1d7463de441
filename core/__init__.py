"""
Core Module Package.

This package contains the shared infrastructure that every ledger
component depends on.

Components:
- clock: Unified time abstraction
- types: Addresses, Tier, VaultType, PointsSource, User
- user_registry: Address-keyed user records
- events: Canonical chain events
- exceptions: Exception hierarchy
- constants: Protocol constants
- settings: LedgerSettings loader (import core.settings directly)
"""

from .clock import ClockProtocol, MockClock, SystemClock
from .exceptions import LedgerException
from .types import PointsSource, Tier, User, VaultType, normalize_address
from .user_registry import UserRegistry

__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "LedgerException",
    "PointsSource",
    "Tier",
    "User",
    "VaultType",
    "normalize_address",
    "UserRegistry",
]
