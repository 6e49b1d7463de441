"""
Shared test fixtures.

Addresses, a fixed clock, wired ledgers and event factories used
across the package test suites.
"""

import itertools
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from core.clock import MockClock
from core.events import (
    DepositEvent,
    HarvestEvent,
    ReferralRegisteredEvent,
    TierChangedEvent,
    WithdrawEvent,
)
from core.types import Tier, VaultType
from core.user_registry import UserRegistry
from event_ingestion import ContractRegistry, EventNormalizer, IngestionPipeline, OrderingGuard
from points_ledger import PointsConfig, PointsLedger
from position_ledger import PositionConfig, PositionLedger
from referral_graph import ReferralGraph


# ============================================================
# CONSTANTS
# ============================================================

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20
DAVE = "0x" + "d4" * 20

CONSERVATIVE_VAULT = "0x" + "1c" * 20
AGGRESSIVE_VAULT = "0x" + "2a" * 20
REFERRAL_MANAGER = "0x" + "3f" * 20

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)

USDC = 10 ** 6


def tx(n: int) -> str:
    """Deterministic transaction hash."""
    return "0x" + format(n, "064x")


# ============================================================
# CORE FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock(BASE_TIME)


@pytest.fixture
def users():
    return UserRegistry()


@pytest.fixture
def points(clock):
    return PointsLedger(PointsConfig(), clock)


@pytest.fixture
def positions(users, points, clock):
    return PositionLedger(users, points, PositionConfig.for_testing(), clock)


@pytest.fixture
def referrals(users, points):
    return ReferralGraph(users, points)


@pytest.fixture
def registry():
    return ContractRegistry(
        vaults={
            CONSERVATIVE_VAULT: VaultType.CONSERVATIVE,
            AGGRESSIVE_VAULT: VaultType.AGGRESSIVE,
        },
        referral_managers=[REFERRAL_MANAGER],
    )


@pytest.fixture
def normalizer(registry):
    return EventNormalizer(registry)


@pytest.fixture
def pipeline(normalizer, positions, referrals, clock):
    return IngestionPipeline(normalizer, positions, referrals, OrderingGuard(), clock)


# ============================================================
# EVENT FACTORIES
# ============================================================

@pytest.fixture
def make_deposit():
    counter = itertools.count(1)

    def _make(
        user: str = ALICE,
        assets: int = 1000 * USDC,
        shares: Optional[int] = None,
        vault: str = CONSERVATIVE_VAULT,
        vault_type: VaultType = VaultType.CONSERVATIVE,
        block: Optional[int] = None,
        log_index: int = 0,
        at: datetime = BASE_TIME,
        tx_hash: Optional[str] = None,
    ) -> DepositEvent:
        n = next(counter)
        return DepositEvent(
            tx_hash=tx_hash or tx(1000 + n),
            log_index=log_index,
            block_number=block if block is not None else 100 + n,
            block_timestamp=at,
            contract_address=vault,
            user=user,
            vault_type=vault_type,
            assets=assets,
            shares=assets if shares is None else shares,
        )

    return _make


@pytest.fixture
def make_withdraw():
    counter = itertools.count(1)

    def _make(
        user: str = ALICE,
        assets_returned: int = 1000 * USDC,
        shares_burned: int = 1000 * USDC,
        vault: str = CONSERVATIVE_VAULT,
        vault_type: VaultType = VaultType.CONSERVATIVE,
        block: Optional[int] = None,
        log_index: int = 0,
        at: datetime = BASE_TIME + timedelta(days=61),
        tx_hash: Optional[str] = None,
    ) -> WithdrawEvent:
        n = next(counter)
        return WithdrawEvent(
            tx_hash=tx_hash or tx(2000 + n),
            log_index=log_index,
            block_number=block if block is not None else 10_000 + n,
            block_timestamp=at,
            contract_address=vault,
            user=user,
            vault_type=vault_type,
            assets_returned=assets_returned,
            shares_burned=shares_burned,
        )

    return _make


@pytest.fixture
def make_harvest():
    counter = itertools.count(1)

    def _make(
        user: str = ALICE,
        amount: int = 200 * USDC,
        vault: str = CONSERVATIVE_VAULT,
        vault_type: VaultType = VaultType.CONSERVATIVE,
        block: Optional[int] = None,
        log_index: int = 0,
        at: datetime = BASE_TIME + timedelta(days=10),
        tx_hash: Optional[str] = None,
    ) -> HarvestEvent:
        n = next(counter)
        return HarvestEvent(
            tx_hash=tx_hash or tx(3000 + n),
            log_index=log_index,
            block_number=block if block is not None else 5_000 + n,
            block_timestamp=at,
            contract_address=vault,
            user=user,
            vault_type=vault_type,
            amount=amount,
        )

    return _make


@pytest.fixture
def make_referral():
    counter = itertools.count(1)

    def _make(
        referrer: str,
        referee: str,
        block: Optional[int] = None,
        log_index: int = 0,
        at: datetime = BASE_TIME,
        tx_hash: Optional[str] = None,
    ) -> ReferralRegisteredEvent:
        n = next(counter)
        return ReferralRegisteredEvent(
            tx_hash=tx_hash or tx(4000 + n),
            log_index=log_index,
            block_number=block if block is not None else 50 + n,
            block_timestamp=at,
            contract_address=REFERRAL_MANAGER,
            referrer=referrer,
            referee=referee,
        )

    return _make


@pytest.fixture
def make_tier_change():
    counter = itertools.count(1)

    def _make(
        user: str = ALICE,
        new_tier: Tier = Tier.CAPTAIN,
        old_tier: Optional[Tier] = None,
        block: Optional[int] = None,
        log_index: int = 0,
        at: datetime = BASE_TIME,
        tx_hash: Optional[str] = None,
    ) -> TierChangedEvent:
        n = next(counter)
        return TierChangedEvent(
            tx_hash=tx_hash or tx(5000 + n),
            log_index=log_index,
            block_number=block if block is not None else 20_000 + n,
            block_timestamp=at,
            contract_address=REFERRAL_MANAGER,
            user=user,
            new_tier=new_tier,
            old_tier=old_tier,
        )

    return _make
