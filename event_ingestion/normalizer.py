"""
Event Ingestion - Event Normalizer.

============================================================
PURPOSE
============================================================
Converts raw chain logs into canonical DomainEvents.

INPUT:
    {contractAddress, eventName, args, txHash, logIndex,
     blockTimestamp, blockNumber}
    camelCase or snake_case keys, or a RawChainEvent.

GUARANTEES:
- Pure: no ledger access
- Unknown event names return None with a warning, never raise
- Anything else that cannot be interpreted raises MalformedEvent
- Addresses and tx hashes are lowercased

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from core.clock import from_block_timestamp
from core.constants import (
    EVENT_DEPOSITED,
    EVENT_REFERRAL_REGISTERED,
    EVENT_TIER_CHANGED,
    EVENT_WITHDRAWN,
    EVENT_YIELD_HARVESTED,
)
from core.events import (
    DepositEvent,
    DomainEvent,
    HarvestEvent,
    ReferralRegisteredEvent,
    TierChangedEvent,
    WithdrawEvent,
)
from core.exceptions import MalformedEvent
from core.types import TX_HASH_PATTERN, Tier, VaultType, normalize_address

from .registry import ContractRegistry


logger = logging.getLogger(__name__)


VAULT_EVENTS = {EVENT_DEPOSITED, EVENT_WITHDRAWN, EVENT_YIELD_HARVESTED}
REFERRAL_EVENTS = {EVENT_REFERRAL_REGISTERED, EVENT_TIER_CHANGED}


@dataclass
class RawChainEvent:
    """A chain log as delivered by the indexer."""

    contract_address: str
    event_name: str
    args: Dict[str, Any]
    tx_hash: str
    log_index: int
    block_timestamp: Any
    block_number: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RawChainEvent":
        """
        Build from a camelCase or snake_case mapping.

        Raises:
            MalformedEvent: A required field is missing
        """
        def pick(*names: str) -> Any:
            for name in names:
                if name in data and data[name] is not None:
                    return data[name]
            raise MalformedEvent(
                f"Missing required field {names[0]}",
                field_name=names[0],
                raw_event=data,
            )

        args = data.get("args")
        if args is None:
            args = {}
        if not isinstance(args, Mapping):
            raise MalformedEvent("args must be an object", field_name="args", raw_event=data)

        return cls(
            contract_address=pick("contractAddress", "contract_address", "address"),
            event_name=pick("eventName", "event_name", "event"),
            args=dict(args),
            tx_hash=pick("txHash", "tx_hash", "transactionHash"),
            log_index=pick("logIndex", "log_index"),
            block_timestamp=pick("blockTimestamp", "block_timestamp", "timestamp"),
            block_number=pick("blockNumber", "block_number"),
        )


@dataclass
class NormalizerStats:
    """Counters for monitoring."""

    normalized: int = 0
    unknown: int = 0
    malformed: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)


class EventNormalizer:
    """
    Raw log -> DomainEvent.
    """

    def __init__(self, registry: ContractRegistry):
        self._registry = registry
        self._stats = NormalizerStats()

    @property
    def stats(self) -> NormalizerStats:
        return self._stats

    def normalize(self, raw: Union[RawChainEvent, Mapping[str, Any]]) -> Optional[DomainEvent]:
        """
        Normalize one raw event.

        Returns:
            The DomainEvent, or None for an unknown event name

        Raises:
            MalformedEvent: Missing or invalid fields, or an unexpected
                emitting contract
        """
        event = raw if isinstance(raw, RawChainEvent) else RawChainEvent.from_dict(raw)
        name = str(event.event_name)

        if name not in VAULT_EVENTS and name not in REFERRAL_EVENTS:
            self._stats.unknown += 1
            logger.warning(f"Unknown event {name!r} from {event.contract_address} dropped")
            return None

        tx_hash = self._tx_hash(event)
        log_index = self._non_negative_int(event.log_index, "logIndex", event)
        key = f"{tx_hash}:{log_index}"
        common = dict(
            tx_hash=tx_hash,
            log_index=log_index,
            block_number=self._non_negative_int(event.block_number, "blockNumber", event, key),
            block_timestamp=self._timestamp(event, key),
            contract_address=self._address(event.contract_address, "contractAddress", event, key),
        )
        contract = common["contract_address"]
        args = event.args

        if name in VAULT_EVENTS:
            vault_type = self._registry.vault_type(contract)
            if vault_type is None:
                raise MalformedEvent(
                    f"{name} emitted by {contract}, which is not a registered vault",
                    field_name="contractAddress",
                    raw_event=event,
                    idempotency_key=key,
                )
            result = self._vault_event(name, vault_type, args, common, event, key)
        else:
            if not self._registry.is_referral_manager(contract):
                raise MalformedEvent(
                    f"{name} emitted by {contract}, which is not a registered referral manager",
                    field_name="contractAddress",
                    raw_event=event,
                    idempotency_key=key,
                )
            result = self._referral_event(name, args, common, event, key)

        self._stats.normalized += 1
        self._stats.by_type[name] = self._stats.by_type.get(name, 0) + 1
        return result

    def normalize_batch(self, raws: Iterable[Union[RawChainEvent, Mapping[str, Any]]]) -> List[DomainEvent]:
        """
        Normalize many events, dropping malformed and unknown ones.

        Malformed events are logged and never retried.
        """
        events = []
        for raw in raws:
            try:
                event = self.normalize(raw)
            except MalformedEvent as e:
                self._stats.malformed += 1
                logger.error(f"Malformed event dropped: {e.message}")
                continue
            if event is not None:
                events.append(event)
        return events

    # --------------------------------------------------------
    # VARIANTS
    # --------------------------------------------------------

    def _vault_event(
        self,
        name: str,
        vault_type: VaultType,
        args: Dict[str, Any],
        common: Dict[str, Any],
        raw: RawChainEvent,
        key: str,
    ) -> DomainEvent:
        user = self._address(self._arg(args, raw, key, "user", "owner"), "user", raw, key)

        if name == EVENT_DEPOSITED:
            return DepositEvent(
                user=user,
                vault_type=vault_type,
                assets=self._amount(self._arg(args, raw, key, "assets"), "assets", raw, key),
                shares=self._amount(self._arg(args, raw, key, "shares"), "shares", raw, key),
                **common,
            )
        if name == EVENT_WITHDRAWN:
            return WithdrawEvent(
                user=user,
                vault_type=vault_type,
                assets_returned=self._amount(self._arg(args, raw, key, "assets"), "assets", raw, key),
                shares_burned=self._amount(self._arg(args, raw, key, "shares"), "shares", raw, key),
                **common,
            )
        return HarvestEvent(
            user=user,
            vault_type=vault_type,
            amount=self._amount(self._arg(args, raw, key, "amount"), "amount", raw, key),
            **common,
        )

    def _referral_event(
        self,
        name: str,
        args: Dict[str, Any],
        common: Dict[str, Any],
        raw: RawChainEvent,
        key: str,
    ) -> DomainEvent:
        if name == EVENT_REFERRAL_REGISTERED:
            return ReferralRegisteredEvent(
                referrer=self._address(self._arg(args, raw, key, "referrer"), "referrer", raw, key),
                referee=self._address(self._arg(args, raw, key, "referee"), "referee", raw, key),
                **common,
            )

        old_tier = args.get("oldTier", args.get("old_tier"))
        return TierChangedEvent(
            user=self._address(self._arg(args, raw, key, "user"), "user", raw, key),
            new_tier=self._tier(self._arg(args, raw, key, "newTier", "new_tier"), "newTier", raw, key),
            old_tier=self._tier(old_tier, "oldTier", raw, key) if old_tier is not None else None,
            **common,
        )

    # --------------------------------------------------------
    # FIELD PARSING
    # --------------------------------------------------------

    @staticmethod
    def _arg(args: Dict[str, Any], raw: RawChainEvent, key: str, *names: str) -> Any:
        for name in names:
            if args.get(name) is not None:
                return args[name]
        raise MalformedEvent(
            f"Missing event argument {names[0]}",
            field_name=f"args.{names[0]}",
            raw_event=raw,
            idempotency_key=key,
        )

    @staticmethod
    def _tx_hash(raw: RawChainEvent) -> str:
        value = raw.tx_hash.lower() if isinstance(raw.tx_hash, str) else ""
        if not TX_HASH_PATTERN.match(value):
            raise MalformedEvent(f"Invalid txHash: {raw.tx_hash!r}", field_name="txHash", raw_event=raw)
        return value

    @staticmethod
    def _address(value: Any, field_name: str, raw: RawChainEvent, key: Optional[str] = None) -> str:
        try:
            return normalize_address(value)
        except ValueError as e:
            raise MalformedEvent(str(e), field_name=field_name, raw_event=raw, idempotency_key=key)

    @staticmethod
    def _non_negative_int(
        value: Any,
        field_name: str,
        raw: RawChainEvent,
        key: Optional[str] = None,
    ) -> int:
        parsed = EventNormalizer._parse_int(value)
        if parsed is None or parsed < 0:
            raise MalformedEvent(
                f"{field_name} must be a non-negative integer, got {value!r}",
                field_name=field_name,
                raw_event=raw,
                idempotency_key=key,
            )
        return parsed

    @staticmethod
    def _amount(value: Any, field_name: str, raw: RawChainEvent, key: str) -> int:
        return EventNormalizer._non_negative_int(value, f"args.{field_name}", raw, key)

    @staticmethod
    def _parse_int(value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            text = value.strip()
            try:
                if text.lower().startswith("0x"):
                    return int(text, 16)
                return int(text, 10)
            except ValueError:
                return None
        return None

    @staticmethod
    def _timestamp(raw: RawChainEvent, key: str):
        try:
            return from_block_timestamp(raw.block_timestamp)
        except (ValueError, TypeError, OverflowError, OSError) as e:
            raise MalformedEvent(
                f"Invalid blockTimestamp: {raw.block_timestamp!r}",
                field_name="blockTimestamp",
                raw_event=raw,
                idempotency_key=key,
                cause=e,
            )

    @staticmethod
    def _tier(value: Any, field_name: str, raw: RawChainEvent, key: str) -> Tier:
        try:
            return Tier.parse(value)
        except (ValueError, TypeError) as e:
            raise MalformedEvent(
                f"Invalid tier {value!r}",
                field_name=f"args.{field_name}",
                raw_event=raw,
                idempotency_key=key,
                cause=e,
            )
