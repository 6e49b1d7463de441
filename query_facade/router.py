"""
FastAPI Router for Ledger Query Endpoints.

Provides read-only REST views:
- Portfolio snapshot per wallet
- Leaderboard and user rank
- Global stats and per-vault breakdown
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status

from core.types import is_valid_address
from query_facade.schemas import (
    LeaderboardResponse,
    PortfolioSnapshot,
    StatsResponse,
    UserRankResponse,
    VaultBreakdownEntry,
)
from query_facade.service import QueryFacade

router = APIRouter(prefix="/ledger", tags=["Ledger"])


# =============================================================
# HELPER: Facade dependency
# =============================================================

def install_query_facade(app: FastAPI, facade: Optional[QueryFacade]) -> None:
    """Attach the facade served to an application (None to detach)."""
    app.state.query_facade = facade


def get_query_facade(request: Request) -> QueryFacade:
    facade = getattr(request.app.state, "query_facade", None)
    if facade is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger not loaded",
        )
    return facade


def _require_address(address: str) -> str:
    if not is_valid_address(address):
        raise HTTPException(status_code=400, detail=f"Invalid address: {address}")
    return address.lower()


# =============================================================
# WALLET ENDPOINTS
# =============================================================

@router.get("/portfolio/{address}", response_model=PortfolioSnapshot)
def get_portfolio(
    address: str,
    facade: QueryFacade = Depends(get_query_facade),
):
    """
    Positions, points, tier and referral counts of one wallet.

    Maturity figures are computed at request time.
    """
    snapshot = facade.portfolio_snapshot(_require_address(address))
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"User {address} not found")
    return snapshot


@router.get("/rank/{address}", response_model=UserRankResponse)
def get_user_rank(
    address: str,
    facade: QueryFacade = Depends(get_query_facade),
):
    return facade.user_rank(_require_address(address))


# =============================================================
# GLOBAL ENDPOINTS
# =============================================================

@router.get("/leaderboard", response_model=LeaderboardResponse)
def get_leaderboard(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    facade: QueryFacade = Depends(get_query_facade),
):
    """Users with points, highest first; ties go to the earlier user."""
    return facade.leaderboard(limit=limit, offset=offset)


@router.get("/stats", response_model=StatsResponse)
def get_stats(facade: QueryFacade = Depends(get_query_facade)):
    return facade.stats()


@router.get("/vaults", response_model=List[VaultBreakdownEntry])
def get_vault_breakdown(facade: QueryFacade = Depends(get_query_facade)):
    """Active principal, shares and depositors per vault."""
    return facade.vault_breakdown()
