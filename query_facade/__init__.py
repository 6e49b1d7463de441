"""
Query Facade Package.

============================================================
PURPOSE
============================================================
Read-only views over the ledgers for the API layer.

CRITICAL PRINCIPLE:
    "Views are derived on demand. Queries never mutate."

============================================================
MODULES
============================================================
- service: QueryFacade
- schemas: pydantic response models
- router: FastAPI APIRouter

============================================================
"""

from .schemas import (
    LeaderboardEntry,
    LeaderboardResponse,
    MaturityView,
    NextTierProgressView,
    PortfolioSnapshot,
    PositionView,
    StatsResponse,
    UserRankResponse,
    VaultBreakdownEntry,
)
from .service import QueryFacade


__all__ = [
    "QueryFacade",
    "LeaderboardEntry",
    "LeaderboardResponse",
    "MaturityView",
    "NextTierProgressView",
    "PortfolioSnapshot",
    "PositionView",
    "StatsResponse",
    "UserRankResponse",
    "VaultBreakdownEntry",
]
