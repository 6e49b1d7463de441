"""
Core Module - Domain Events.

============================================================
PURPOSE
============================================================
Canonical events produced by the EventNormalizer and consumed by
the ledgers.

Every event carries:
- idempotency_key: "<txHash>:<logIndex>", the sole defense against
  duplicate processing under at-least-once delivery
- ordering_key: (block_number, log_index), used to detect
  per-user ordering regressions
- partition_key: the address whose events must be serialized
- crosses_partitions: set on referral registrations, whose level-2
  edge depends on the referrer's own registration

============================================================
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

from .types import Tier, VaultType


class EventType(Enum):
    """Domain event variant."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    HARVEST = "harvest"
    REFERRAL_REGISTERED = "referral_registered"
    TIER_CHANGED = "tier_changed"


def make_idempotency_key(tx_hash: str, log_index: int) -> str:
    """Build the idempotency key for a chain log."""
    return f"{tx_hash.lower()}:{int(log_index)}"


# ============================================================
# BASE EVENT
# ============================================================

@dataclass(frozen=True)
class DomainEvent:
    """Fields common to every normalized chain event."""

    event_type: ClassVar[EventType]

    crosses_partitions: ClassVar[bool] = False
    """Reads state written by other partitions; applied after every earlier event."""

    tx_hash: str
    """Lowercase transaction hash."""

    log_index: int
    """Log index within the block."""

    block_number: int
    """Block number."""

    block_timestamp: datetime
    """Block time (UTC)."""

    contract_address: str
    """Emitting contract (lowercase)."""

    @property
    def idempotency_key(self) -> str:
        """Key of the form txHash:logIndex."""
        return make_idempotency_key(self.tx_hash, self.log_index)

    @property
    def ordering_key(self) -> Tuple[int, int]:
        """Chain order: (block number, log index)."""
        return (self.block_number, self.log_index)

    @property
    def partition_key(self) -> str:
        """Address whose events must be applied serially."""
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "event_type": self.event_type.value,
            "idempotency_key": self.idempotency_key,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp.isoformat(),
            "contract_address": self.contract_address,
        }


# ============================================================
# VAULT EVENTS
# ============================================================

@dataclass(frozen=True)
class DepositEvent(DomainEvent):
    """Deposited(user, assets, shares) on a vault."""

    event_type: ClassVar[EventType] = EventType.DEPOSIT

    user: str
    vault_type: VaultType
    assets: int
    shares: int

    @property
    def vault_address(self) -> str:
        return self.contract_address

    @property
    def partition_key(self) -> str:
        return self.user

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "user": self.user,
            "vault_type": self.vault_type.value,
            "assets": str(self.assets),
            "shares": str(self.shares),
        })
        return data


@dataclass(frozen=True)
class WithdrawEvent(DomainEvent):
    """Withdrawn(user, assets, shares) on a vault."""

    event_type: ClassVar[EventType] = EventType.WITHDRAW

    user: str
    vault_type: VaultType
    assets_returned: int
    shares_burned: int

    @property
    def vault_address(self) -> str:
        return self.contract_address

    @property
    def partition_key(self) -> str:
        return self.user

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "user": self.user,
            "vault_type": self.vault_type.value,
            "assets_returned": str(self.assets_returned),
            "shares_burned": str(self.shares_burned),
        })
        return data


@dataclass(frozen=True)
class HarvestEvent(DomainEvent):
    """YieldHarvested(user, amount) on a vault."""

    event_type: ClassVar[EventType] = EventType.HARVEST

    user: str
    vault_type: VaultType
    amount: int

    @property
    def vault_address(self) -> str:
        return self.contract_address

    @property
    def partition_key(self) -> str:
        return self.user

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "user": self.user,
            "vault_type": self.vault_type.value,
            "amount": str(self.amount),
        })
        return data


# ============================================================
# REFERRAL EVENTS
# ============================================================

@dataclass(frozen=True)
class ReferralRegisteredEvent(DomainEvent):
    """ReferralRegistered(referrer, referee) on the referral manager."""

    event_type: ClassVar[EventType] = EventType.REFERRAL_REGISTERED
    crosses_partitions: ClassVar[bool] = True

    referrer: str
    referee: str

    @property
    def partition_key(self) -> str:
        return self.referee

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"referrer": self.referrer, "referee": self.referee})
        return data


@dataclass(frozen=True)
class TierChangedEvent(DomainEvent):
    """TierChanged(user, oldTier, newTier) on the referral manager."""

    event_type: ClassVar[EventType] = EventType.TIER_CHANGED

    user: str
    new_tier: Tier
    old_tier: Optional[Tier] = None

    @property
    def partition_key(self) -> str:
        return self.user

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "user": self.user,
            "new_tier": self.new_tier.label,
            "old_tier": self.old_tier.label if self.old_tier is not None else None,
        })
        return data
