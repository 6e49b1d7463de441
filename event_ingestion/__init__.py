"""
Event Ingestion Package.

============================================================
PURPOSE
============================================================
Turns the chain event stream into ledger mutations.

CRITICAL PRINCIPLE:
    "Every event is keyed by txHash:logIndex and applied at most once."
    "Events of one user are applied in chain order."

============================================================
MODULES
============================================================
- registry: ContractRegistry (injected contract addresses)
- normalizer: EventNormalizer, RawChainEvent
- ordering: OrderingGuard
- pipeline: IngestionPipeline
- resync: PositionResyncer
- dispatcher: EventDispatcher (per-user async worker pool)

============================================================
"""

from .dispatcher import EventDispatcher, partition_index
from .normalizer import EventNormalizer, NormalizerStats, RawChainEvent
from .ordering import OrderingGuard
from .pipeline import (
    ApplyResult,
    ApplyStatus,
    IngestionPipeline,
    PipelineStats,
    ResyncRequest,
)
from .registry import ContractRegistry
from .resync import PositionResyncer, ResyncResult


__all__ = [
    "ContractRegistry",
    "EventNormalizer",
    "NormalizerStats",
    "RawChainEvent",
    "OrderingGuard",
    "IngestionPipeline",
    "ApplyResult",
    "ApplyStatus",
    "PipelineStats",
    "ResyncRequest",
    "PositionResyncer",
    "ResyncResult",
    "EventDispatcher",
    "partition_index",
]
