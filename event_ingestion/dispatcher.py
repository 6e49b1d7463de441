"""
Event Ingestion - Partitioned Dispatcher.

============================================================
PURPOSE
============================================================
Applies events concurrently across users while keeping each
user's events strictly serial.

DESIGN:
- A fixed pool of worker tasks, each owning one asyncio.Queue
- Events are routed by a stable hash of their partition address,
  so one user's events always land on the same worker
- An out-of-order vault event triggers the user's re-sync on the
  same worker, before the next event for that user
- A ReferralRegistered event reads the referrer's own registration,
  written on another partition; it is a barrier: every earlier
  event is drained before it is applied

This also keeps a referee's deposits after the registration that
created their referral edges.

============================================================
"""

import asyncio
import logging
import zlib
from typing import Any, Dict, List, Mapping, Optional, Union

from core.events import DomainEvent
from core.exceptions import MalformedEvent

from .normalizer import RawChainEvent
from .pipeline import ApplyResult, ApplyStatus, IngestionPipeline
from .resync import PositionResyncer


logger = logging.getLogger(__name__)


_STOP = object()


def partition_index(address: str, workers: int) -> int:
    """Stable worker index for an address."""
    return zlib.crc32(address.lower().encode("utf-8")) % workers


class EventDispatcher:
    """
    Worker pool keyed by partition address.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        workers: int = 4,
        resyncer: Optional[PositionResyncer] = None,
        queue_size: int = 0,
    ):
        """
        Args:
            pipeline: Pipeline applying events
            workers: Number of worker tasks
            resyncer: Re-sync executor for out-of-order events
            queue_size: Per-worker queue bound (0 = unbounded)
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._pipeline = pipeline
        self._worker_count = workers
        self._resyncer = resyncer
        self._queue_size = queue_size

        self._queues: List[asyncio.Queue] = []
        self._tasks: List[asyncio.Task] = []
        self._results: List[ApplyResult] = []
        self._errors: List[Exception] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def results(self) -> List[ApplyResult]:
        return list(self._results)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in self._results:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._running:
            return
        self._queues = [asyncio.Queue(maxsize=self._queue_size) for _ in range(self._worker_count)]
        self._tasks = [
            asyncio.create_task(self._worker(i, queue))
            for i, queue in enumerate(self._queues)
        ]
        self._running = True
        logger.info(f"Event dispatcher started with {self._worker_count} workers")

    async def join(self) -> None:
        """
        Wait until every submitted event has been processed.

        Raises:
            Exception: The first unexpected worker error, if any
        """
        for queue in self._queues:
            await queue.join()
        if self._errors:
            error = self._errors[0]
            self._errors = []
            raise error

    async def stop(self) -> None:
        """Drain queues and stop the workers."""
        if not self._running:
            return
        for queue in self._queues:
            await queue.put(_STOP)
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._running = False
        logger.info("Event dispatcher stopped")

    async def __aenter__(self) -> "EventDispatcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # --------------------------------------------------------
    # SUBMISSION
    # --------------------------------------------------------

    async def submit(self, event: DomainEvent) -> None:
        """
        Queue a normalized event on its partition's worker.

        Events that cross partitions wait for every queue to drain and
        are then applied inline, so they observe all earlier events.
        Submit from a single task, in chain order.
        """
        if not self._running:
            raise RuntimeError("Dispatcher is not running")
        if event.crosses_partitions:
            await self._drain()
            await self._handle("inline", event)
            return
        index = partition_index(event.partition_key, self._worker_count)
        await self._queues[index].put(event)

    async def submit_raw(self, raw: Union[RawChainEvent, Mapping[str, Any]]) -> bool:
        """
        Normalize and queue a raw event.

        Returns:
            False if the event was dropped (malformed or unknown)
        """
        try:
            event = self._pipeline.normalizer.normalize(raw)
        except MalformedEvent as e:
            logger.error(f"Malformed event dropped: {e.message}")
            self._results.append(ApplyResult(ApplyStatus.MALFORMED, error=e))
            return False
        if event is None:
            self._results.append(ApplyResult(ApplyStatus.UNKNOWN))
            return False
        await self.submit(event)
        return True

    # --------------------------------------------------------
    # WORKERS
    # --------------------------------------------------------

    async def _drain(self) -> None:
        for queue in self._queues:
            await queue.join()

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                await self._handle(f"worker {index}", item)
            finally:
                queue.task_done()

    async def _handle(self, label: str, event: DomainEvent) -> None:
        try:
            await self._process(event)
        except Exception as e:
            # Keep serving other partitions; join() re-raises
            logger.critical(f"{label} failed on {event.idempotency_key}: {e}")
            self._results.append(ApplyResult(ApplyStatus.FAILED, event, error=e))
            self._errors.append(e)

    async def _process(self, event: DomainEvent) -> None:
        result = self._pipeline.apply(event)
        self._results.append(result)

        if result.status is ApplyStatus.OUT_OF_ORDER and self._resyncer is not None:
            for resync in await self._resyncer.run_pending(event.partition_key):
                self._results.extend(resync.credited)
                if not resync.success:
                    logger.warning(
                        f"Re-sync of {resync.request.user_address} deferred: {resync.error}"
                    )
