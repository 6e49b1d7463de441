"""
Core Module - User Registry.

============================================================
RESPONSIBILITY
============================================================
Holds User records shared by all ledgers.

- Users are created on first deposit or referral registration
- Users are mutated only through address-keyed upserts
- Users are never deleted
- Tier is never downgraded here; only explicit admin action may

============================================================
"""

import logging
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from .clock import ensure_utc
from .types import Tier, User, normalize_address


logger = logging.getLogger(__name__)


class UserRegistry:
    """
    In-memory user store keyed by lowercase address.

    All reads and writes are serialized by a single lock; upserts are
    short and never call back into other components.
    """

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._codes: Dict[str, str] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None

    def __iter__(self) -> Iterator[User]:
        with self._lock:
            return iter(list(self._users.values()))

    def get(self, address: str) -> Optional[User]:
        """Get a user by address (case-insensitive)."""
        try:
            key = normalize_address(address)
        except ValueError:
            return None
        with self._lock:
            return self._users.get(key)

    def by_referral_code(self, code: str) -> Optional[User]:
        """Look up a user by referral code."""
        with self._lock:
            address = self._codes.get(code.upper())
            return self._users.get(address) if address else None

    def all(self) -> List[User]:
        """All users, in creation order."""
        with self._lock:
            return list(self._users.values())

    def upsert(
        self,
        address: str,
        timestamp: datetime,
        referred_by: Optional[str] = None,
        risk_level: Optional[int] = None,
    ) -> User:
        """
        Create the user if absent, otherwise touch last_active_at.

        Args:
            address: Wallet address
            timestamp: Event time
            referred_by: Direct referrer, set only if the user has none
            risk_level: Risk level applied only when creating the user

        Returns:
            The stored User
        """
        key = normalize_address(address)
        timestamp = ensure_utc(timestamp)
        with self._lock:
            user = self._users.get(key)
            if user is None:
                user = User(
                    address=key,
                    referral_code=self._unique_code(key),
                    created_at=timestamp,
                    last_active_at=timestamp,
                    referred_by=normalize_address(referred_by) if referred_by else None,
                    risk_level=risk_level if risk_level is not None else 0,
                )
                self._users[key] = user
                self._codes[user.referral_code] = key
                logger.debug(f"Created user {key} (code={user.referral_code})")
                return user

            if timestamp > user.last_active_at:
                user.last_active_at = timestamp
            if referred_by and user.referred_by is None:
                user.referred_by = normalize_address(referred_by)
            return user

    def set_tier(self, address: str, tier: Tier) -> User:
        """
        Overwrite a user's tier.

        Callers are responsible for the monotonicity rule; the referral
        graph only upgrades, admin overrides may downgrade.
        """
        key = normalize_address(address)
        with self._lock:
            user = self._users.get(key)
            if user is None:
                raise KeyError(f"Unknown user: {key}")
            user.tier = tier
            return user

    def restore(self, user: User) -> None:
        """Insert a fully formed user (used when rebuilding from storage)."""
        with self._lock:
            self._users[user.address] = user
            self._codes[user.referral_code] = user.address

    def _unique_code(self, address: str) -> str:
        code = User.derive_referral_code(address)
        if code not in self._codes:
            return code
        # Collision on the 10-char prefix: extend with the next chars
        for length in range(13, 43):
            candidate = address[2:length].upper()
            if candidate not in self._codes:
                return candidate
        return address[2:].upper()
