"""
Event Ingestion - Ordering Guard.

============================================================
PURPOSE
============================================================
Tracks, per partition address, the last applied chain position
(block number, log index) and rejects regressions.

- Redelivery of an applied key      -> DuplicateEvent
- New key at or before the last one -> OutOfOrderEvent

A re-sync leaves a mark per (user, vault) at the event that
triggered it. A late vault event at or below that mark whose key
was never applied is "covered": its position effect is already in
the re-synced lot, only its points are still owed.

============================================================
"""

import logging
import threading
from typing import Dict, Optional, Set, Tuple

from core.events import DomainEvent
from core.exceptions import DuplicateEvent, OutOfOrderEvent


logger = logging.getLogger(__name__)


OrderingKey = Tuple[int, int]
ResyncMarks = Dict[Tuple[str, str], OrderingKey]


class OrderingGuard:
    """Per-address ordering and redelivery check."""

    def __init__(self) -> None:
        self._last: Dict[str, OrderingKey] = {}
        self._applied: Set[str] = set()
        self._resynced: ResyncMarks = {}
        self._lock = threading.Lock()

    def check(self, event: DomainEvent) -> None:
        """
        Verify an event may be applied.

        Raises:
            DuplicateEvent: The key was already applied
            OutOfOrderEvent: The event does not advance its partition
        """
        key = event.idempotency_key
        partition = event.partition_key
        with self._lock:
            if key in self._applied:
                raise DuplicateEvent(f"Event {key} already applied", idempotency_key=key)

            last = self._last.get(partition)
            if last is not None and event.ordering_key <= last:
                raise OutOfOrderEvent(
                    f"Event {key} at {event.ordering_key} regresses {partition} "
                    f"(last applied {last})",
                    user_address=partition,
                    ordering_key=event.ordering_key,
                    last_applied=last,
                    idempotency_key=key,
                )

    def record(self, event: DomainEvent) -> None:
        """Mark an event as applied."""
        with self._lock:
            self._applied.add(event.idempotency_key)
            self._advance(event.partition_key, event.ordering_key)

    def mark_applied(self, idempotency_key: str) -> None:
        """Mark a key as applied without moving its partition."""
        with self._lock:
            self._applied.add(idempotency_key)

    def mark_resynced(self, partition: str, vault_address: str, ordering_key: OrderingKey) -> None:
        """Move a partition past a re-sync trigger and remember what it covers."""
        mark = (partition.lower(), vault_address.lower())
        with self._lock:
            self._advance(mark[0], ordering_key)
            current = self._resynced.get(mark)
            if current is None or ordering_key > current:
                self._resynced[mark] = ordering_key

    def is_covered(self, event: DomainEvent) -> bool:
        """True for an unapplied vault event at or below its vault's re-sync mark."""
        if getattr(event, "vault_type", None) is None:
            return False
        mark = (event.partition_key.lower(), event.contract_address.lower())
        with self._lock:
            if event.idempotency_key in self._applied:
                return False
            resynced = self._resynced.get(mark)
            return resynced is not None and event.ordering_key <= resynced

    def last_applied(self, partition: str) -> Optional[OrderingKey]:
        with self._lock:
            return self._last.get(partition)

    def is_applied(self, idempotency_key: str) -> bool:
        with self._lock:
            return idempotency_key in self._applied

    def restore(
        self,
        last: Dict[str, OrderingKey],
        applied: Set[str],
        resynced: Optional[ResyncMarks] = None,
    ) -> None:
        """Load state from storage."""
        with self._lock:
            for partition, ordering_key in last.items():
                self._advance(partition, tuple(ordering_key))
            self._applied.update(applied)
            for mark, ordering_key in (resynced or {}).items():
                self._resynced[mark] = max(tuple(ordering_key), self._resynced.get(mark, (-1, -1)))

    def snapshot(self) -> Dict[str, OrderingKey]:
        with self._lock:
            return dict(self._last)

    def resync_marks(self) -> ResyncMarks:
        with self._lock:
            return dict(self._resynced)

    def applied_keys(self) -> Set[str]:
        with self._lock:
            return set(self._applied)

    def _advance(self, partition: str, ordering_key: OrderingKey) -> None:
        last = self._last.get(partition)
        if last is None or ordering_key > last:
            self._last[partition] = ordering_key
