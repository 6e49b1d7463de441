"""
Event Ingestion - Pipeline.

============================================================
PURPOSE
============================================================
Routes normalized events to the ledgers, the sole mutation entry
points, regardless of how events were discovered.

FLOW:
    raw -> EventNormalizer -> OrderingGuard -> ledger.apply_*

OUTCOMES:
- APPLIED       ledger state changed (or converged)
- DUPLICATE     key already applied; ignored
- OUT_OF_ORDER  surfaced; vault events schedule an on-chain re-sync
- CREDITED      late vault event already covered by a re-sync;
                points awarded, lots untouched
- MALFORMED     dropped and logged, never retried
- UNKNOWN       unrecognized event name; dropped
- FAILED        unexpected error (e.g. storage); surfaced to the host

============================================================
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from core.clock import ClockProtocol, SystemClock
from core.events import (
    DepositEvent,
    DomainEvent,
    HarvestEvent,
    ReferralRegisteredEvent,
    TierChangedEvent,
    WithdrawEvent,
)
from core.exceptions import DuplicateEvent, MalformedEvent, OutOfOrderEvent
from core.types import VaultType
from position_ledger import PositionLedger
from referral_graph import ReferralGraph

from .normalizer import EventNormalizer, RawChainEvent
from .ordering import OrderingGuard


logger = logging.getLogger(__name__)


class ApplyStatus(Enum):
    """Outcome of applying one event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    CREDITED = "credited"
    MALFORMED = "malformed"
    UNKNOWN = "unknown"
    FAILED = "failed"


@dataclass
class ApplyResult:
    """Result of one pipeline step."""

    status: ApplyStatus
    event: Optional[DomainEvent] = None
    detail: Any = None
    """Ledger return value (position, outcome, points, edge)."""

    error: Optional[Exception] = None

    @property
    def idempotency_key(self) -> Optional[str]:
        return self.event.idempotency_key if self.event else None


@dataclass(frozen=True)
class ResyncRequest:
    """A (user, vault) whose ledger view must be rebuilt from chain."""

    user_address: str
    vault_address: str
    vault_type: VaultType
    ordering_key: Tuple[int, int]
    idempotency_key: str
    requested_at: datetime


@dataclass
class PipelineStats:
    """Counters by outcome."""

    by_status: Dict[str, int] = field(default_factory=dict)

    def record(self, status: ApplyStatus) -> None:
        self.by_status[status.value] = self.by_status.get(status.value, 0) + 1

    def count(self, status: ApplyStatus) -> int:
        return self.by_status.get(status.value, 0)


class IngestionPipeline:
    """
    Normalize, order-check and apply chain events.
    """

    def __init__(
        self,
        normalizer: EventNormalizer,
        positions: PositionLedger,
        referrals: ReferralGraph,
        ordering: Optional[OrderingGuard] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._normalizer = normalizer
        self._positions = positions
        self._referrals = referrals
        self._ordering = ordering or OrderingGuard()
        self._clock = clock or SystemClock()

        self._resyncs: Dict[Tuple[str, str], ResyncRequest] = {}
        self._resync_triggers: Dict[Tuple[str, str], List[DomainEvent]] = {}
        self._resync_lock = threading.Lock()
        self._stats = PipelineStats()

    @property
    def normalizer(self) -> EventNormalizer:
        return self._normalizer

    @property
    def ordering(self) -> OrderingGuard:
        return self._ordering

    @property
    def stats(self) -> PipelineStats:
        return self._stats

    # --------------------------------------------------------
    # ENTRY POINTS
    # --------------------------------------------------------

    def ingest(self, raw: Union[RawChainEvent, Mapping[str, Any]]) -> ApplyResult:
        """Normalize and apply one raw event."""
        try:
            event = self._normalizer.normalize(raw)
        except MalformedEvent as e:
            logger.error(f"Malformed event dropped: {e.message}")
            return self._finish(ApplyResult(ApplyStatus.MALFORMED, error=e))
        if event is None:
            return self._finish(ApplyResult(ApplyStatus.UNKNOWN))
        return self.apply(event)

    def apply(self, event: DomainEvent) -> ApplyResult:
        """
        Apply one normalized event.

        Never raises for event-level failures; StorageError and other
        unexpected errors propagate.
        """
        try:
            self._ordering.check(event)
        except DuplicateEvent as e:
            logger.debug(f"Duplicate event ignored: {event.idempotency_key}")
            return self._finish(ApplyResult(ApplyStatus.DUPLICATE, event, error=e))
        except OutOfOrderEvent as e:
            if self._ordering.is_covered(event):
                return self._credit_covered(event)
            logger.error(f"Ordering regression: {e.message}")
            return self._finish(ApplyResult(ApplyStatus.OUT_OF_ORDER, event, error=e))

        try:
            detail = self._dispatch(event)
        except OutOfOrderEvent as e:
            logger.error(f"Out-of-order event {event.idempotency_key}: {e.message}")
            self._request_resync(event)
            return self._finish(ApplyResult(ApplyStatus.OUT_OF_ORDER, event, error=e))
        except MalformedEvent as e:
            logger.error(f"Malformed event dropped: {e.message}")
            return self._finish(ApplyResult(ApplyStatus.MALFORMED, event, error=e))

        self._ordering.record(event)
        return self._finish(ApplyResult(ApplyStatus.APPLIED, event, detail=detail))

    # --------------------------------------------------------
    # RE-SYNC REQUESTS
    # --------------------------------------------------------

    def pending_resyncs(self, user: Optional[str] = None) -> List[ResyncRequest]:
        """Outstanding re-sync requests, optionally for one user."""
        with self._resync_lock:
            return [
                r for r in self._resyncs.values()
                if user is None or r.user_address == user.lower()
            ]

    def complete_resync(self, request: ResyncRequest) -> List[ApplyResult]:
        """
        Clear a request and move the user's ordering past its trigger.

        The events that triggered the re-sync are covered by it: their
        points are credited here.

        Returns:
            One CREDITED result per trigger event
        """
        owner = (request.user_address, request.vault_address)
        with self._resync_lock:
            self._resyncs.pop(owner, None)
            triggers = self._resync_triggers.pop(owner, [])
            later = [e for e in triggers if e.ordering_key > request.ordering_key]
            if later:
                self._resync_triggers[owner] = later
        self._ordering.mark_resynced(request.user_address, request.vault_address, request.ordering_key)
        return [self._credit_covered(e) for e in triggers if self._ordering.is_covered(e)]

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _dispatch(self, event: DomainEvent) -> Any:
        if isinstance(event, DepositEvent):
            position = self._positions.apply_deposit(event)
            self._referrals.record_deposit(event.user, event.assets, event.idempotency_key)
            return position
        if isinstance(event, WithdrawEvent):
            return self._positions.apply_withdraw(event)
        if isinstance(event, HarvestEvent):
            return self._positions.apply_harvest(event)
        if isinstance(event, ReferralRegisteredEvent):
            return self._referrals.register_referral(
                event.referrer,
                event.referee,
                event.block_timestamp,
                event.idempotency_key,
                event.tx_hash,
            )
        if isinstance(event, TierChangedEvent):
            return self._referrals.apply_tier_change(
                event.user,
                event.new_tier,
                event.block_timestamp,
                event.idempotency_key,
                event.tx_hash,
            )
        raise MalformedEvent(
            f"Unsupported event type {type(event).__name__}",
            idempotency_key=event.idempotency_key,
        )

    def _request_resync(self, event: DomainEvent) -> None:
        vault_type = getattr(event, "vault_type", None)
        if vault_type is None:
            return
        request = ResyncRequest(
            user_address=event.partition_key,
            vault_address=event.contract_address,
            vault_type=vault_type,
            ordering_key=event.ordering_key,
            idempotency_key=event.idempotency_key,
            requested_at=self._clock.now(),
        )
        owner = (request.user_address, request.vault_address)
        with self._resync_lock:
            current = self._resyncs.get(owner)
            if current is None or request.ordering_key > current.ordering_key:
                self._resyncs[owner] = request
            self._resync_triggers.setdefault(owner, []).append(event)
        logger.warning(
            f"Re-sync requested for {request.user_address} on {request.vault_address}"
        )

    def _credit_covered(self, event: DomainEvent) -> ApplyResult:
        try:
            points = self._positions.credit_points(event)
        except MalformedEvent as e:
            logger.error(f"Malformed event dropped: {e.message}")
            return self._finish(ApplyResult(ApplyStatus.MALFORMED, event, error=e))
        if isinstance(event, DepositEvent):
            self._referrals.record_deposit(event.user, event.assets, event.idempotency_key)
        self._ordering.mark_applied(event.idempotency_key)
        logger.info(
            f"Event {event.idempotency_key} covered by re-sync of {event.partition_key}: "
            f"{points} points credited"
        )
        return self._finish(ApplyResult(ApplyStatus.CREDITED, event, detail=points))

    def _finish(self, result: ApplyResult) -> ApplyResult:
        self._stats.record(result.status)
        return result
