"""
Event Ingestion - Position Re-sync.

============================================================
PURPOSE
============================================================
Rebuilds a user's position in one vault from authoritative
on-chain state after an out-of-order event.

    shares = vault.balanceOf(user)
    assets = vault.convertToAssets(shares)
    PositionLedger.resync(user, vault, shares, assets, ...)

A failed read leaves the request pending for the next attempt.
On success the triggering events are credited their points.

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from allocation_reconciler.readers import VaultReader
from core.clock import ClockProtocol, SystemClock
from position_ledger import PositionLedger, VaultPosition

from .pipeline import ApplyResult, IngestionPipeline, ResyncRequest


logger = logging.getLogger(__name__)


@dataclass
class ResyncResult:
    """Outcome of one re-sync attempt."""

    request: ResyncRequest
    success: bool
    shares: int = 0
    assets: int = 0
    position: Optional[VaultPosition] = None
    error: Optional[str] = None
    credited: List[ApplyResult] = field(default_factory=list)
    """Trigger events whose points were credited after the re-sync."""


class PositionResyncer:
    """
    Executes pending re-sync requests.
    """

    def __init__(
        self,
        reader: VaultReader,
        positions: PositionLedger,
        pipeline: IngestionPipeline,
        clock: Optional[ClockProtocol] = None,
    ):
        self._reader = reader
        self._positions = positions
        self._pipeline = pipeline
        self._clock = clock or SystemClock()

    async def resync(self, request: ResyncRequest) -> ResyncResult:
        """Re-sync one (user, vault) from chain."""
        try:
            shares = await self._reader.balance_of(request.vault_address, request.user_address)
            assets = await self._reader.convert_to_assets(request.vault_address, shares)
        except Exception as e:
            logger.error(
                f"Re-sync read failed for {request.user_address} on "
                f"{request.vault_address}: {e}"
            )
            return ResyncResult(request, success=False, error=str(e))

        block_number, log_index = request.ordering_key
        anchor = f"resync:{request.vault_address}:{request.user_address}:{block_number}:{log_index}"
        position = self._positions.resync(
            request.user_address,
            request.vault_address,
            shares,
            assets,
            as_of=self._clock.now(),
            anchor=anchor,
            vault_type=request.vault_type,
        )
        credited = self._pipeline.complete_resync(request)
        return ResyncResult(
            request,
            success=True,
            shares=shares,
            assets=assets,
            position=position,
            credited=credited,
        )

    async def run_pending(self, user: Optional[str] = None) -> List[ResyncResult]:
        """Attempt every pending request (optionally for one user)."""
        results = []
        for request in self._pipeline.pending_resyncs(user):
            results.append(await self.resync(request))
        return results
