"""
Tests for the Ledger Repository.

============================================================
TEST PRINCIPLES:
- A saved ledger rebuilds to the same balances and positions
- Stored points events are never rewritten
- Redelivered events stay duplicates after a restart
============================================================
"""

from datetime import timedelta

import pytest

from core.types import PointsSource, Tier
from core.user_registry import UserRegistry
from event_ingestion import ApplyStatus, IngestionPipeline, OrderingGuard
from points_ledger import PointsConfig, PointsLedger
from position_ledger import PositionConfig, PositionLedger
from referral_graph import ReferralGraph, ReferralLevel
from storage import Database, LedgerRepository
from storage.models import PointsEventRecord, UserRecord
from storage.repositories import ImmutableRecordError

from conftest import ALICE, BASE_TIME, BOB, CAROL, USDC


class Ledgers:
    """A full set of empty ledgers sharing one registry."""

    def __init__(self, clock, normalizer):
        self.users = UserRegistry()
        self.points = PointsLedger(PointsConfig(), clock)
        self.positions = PositionLedger(self.users, self.points, PositionConfig.for_testing(), clock)
        self.referrals = ReferralGraph(self.users, self.points)
        self.ordering = OrderingGuard()
        self.pipeline = IngestionPipeline(
            normalizer, self.positions, self.referrals, self.ordering, clock
        )

    def save(self, database):
        with database.transaction_scope() as session:
            return LedgerRepository(session).save_ledgers(
                self.users, self.positions, self.points, self.referrals, self.ordering
            )

    def rebuild(self, database):
        with database.transaction_scope() as session:
            return LedgerRepository(session).rebuild(
                self.users, self.positions, self.points, self.referrals, self.ordering
            )


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def ledgers(clock, normalizer):
    return Ledgers(clock, normalizer)


@pytest.fixture
def history(ledgers, make_referral, make_deposit, make_harvest, make_withdraw, make_tier_change):
    """ALICE refers BOB, BOB refers CAROL; deposits, a harvest and a withdrawal."""
    events = [
        make_referral(ALICE, BOB),
        make_referral(BOB, CAROL),
        make_deposit(user=ALICE, assets=2000 * USDC),
        make_deposit(user=BOB, assets=1000 * USDC),
        make_deposit(user=CAROL, assets=500 * USDC),
        make_harvest(user=ALICE, amount=300 * USDC),
        make_withdraw(user=BOB, assets_returned=1100 * USDC, shares_burned=1000 * USDC),
        make_tier_change(user=ALICE, new_tier=Tier.SCOUT),
    ]
    for event in events:
        assert ledgers.pipeline.apply(event).status is ApplyStatus.APPLIED
    return events


# ============================================================
# DATABASE
# ============================================================

class TestDatabase:

    def test_health_check(self, database):
        assert database.health_check()

    def test_rollback_on_error(self, database):
        with pytest.raises(RuntimeError):
            with database.transaction_scope() as session:
                session.add(UserRecord(
                    address=ALICE,
                    referral_code="A1A1A1A1A1",
                    tier=0,
                    created_at=BASE_TIME,
                    last_active_at=BASE_TIME,
                ))
                raise RuntimeError("abort")

        with database.transaction_scope() as session:
            assert session.query(UserRecord).count() == 0


# ============================================================
# ROUND TRIP
# ============================================================

class TestLedgerRoundTrip:

    def test_save_counts(self, database, ledgers, history):
        written = ledgers.save(database)

        assert written["users"] == 3
        assert written["points_events"] == len(ledgers.points.all_events())
        assert written["referrals"] == 3
        assert written["vault_positions"] == 3

    def test_rebuild_matches(self, database, ledgers, history, clock, normalizer):
        ledgers.save(database)

        restored = Ledgers(clock, normalizer)
        counts = restored.rebuild(database)

        assert counts["users"] == 3
        assert restored.points.balances() == ledgers.points.balances()
        assert restored.points.verify_balances() == []
        assert [e.idempotency_key for e in restored.points.all_events()] == [
            e.idempotency_key for e in ledgers.points.all_events()
        ]

        alice = restored.users.get(ALICE)
        assert alice.tier is Tier.SCOUT
        assert alice.created_at == BASE_TIME
        assert restored.users.get(CAROL).referred_by == BOB

        assert restored.referrals.referrer_of(CAROL) == BOB
        assert restored.referrals.referees_of(ALICE, ReferralLevel.INDIRECT) == [CAROL]
        carol_edges = restored.referrals.edges_for(CAROL)
        assert all(e.total_deposited == 500 * USDC for e in carol_edges)

        original = {p.position_id: p for p in ledgers.positions.all_positions()}
        for position in restored.positions.all_positions():
            assert position.to_dict() == original[position.position_id].to_dict()

    def test_large_amounts_keep_precision(self, database, ledgers, make_deposit, clock, normalizer):
        huge = 2 ** 70
        ledgers.pipeline.apply(make_deposit(user=ALICE, assets=huge))
        ledgers.save(database)

        restored = Ledgers(clock, normalizer)
        restored.rebuild(database)

        assert restored.positions.active_positions(ALICE)[0].principal == huge

    def test_redelivery_after_restart(self, database, ledgers, history, clock, normalizer):
        ledgers.save(database)
        restored = Ledgers(clock, normalizer)
        restored.rebuild(database)

        before = restored.points.balances()
        for event in history:
            assert restored.pipeline.apply(event).status is ApplyStatus.DUPLICATE
        assert restored.points.balances() == before

    def test_restored_withdraw_is_duplicate_at_ledger(self, database, ledgers, history, clock, normalizer):
        ledgers.save(database)
        restored = Ledgers(clock, normalizer)
        restored.rebuild(database)

        withdraw = history[6]
        assert restored.positions.apply_withdraw(withdraw).duplicate

    def test_incremental_save_appends(self, database, ledgers, history, make_deposit):
        ledgers.save(database)
        ledgers.pipeline.apply(make_deposit(user=CAROL, at=BASE_TIME + timedelta(days=2)))

        written = ledgers.save(database)

        assert written["points_events"] == 1
        with database.transaction_scope() as session:
            assert session.query(PointsEventRecord).count() == len(ledgers.points.all_events())

    def test_late_deposit_credited_after_restart(
        self, database, ledgers, make_deposit, make_withdraw, clock, normalizer
    ):
        withdraw = make_withdraw(user=ALICE, assets_returned=1000 * USDC, shares_burned=1000 * USDC, block=50)
        assert ledgers.pipeline.apply(withdraw).status is ApplyStatus.OUT_OF_ORDER
        ledgers.pipeline.complete_resync(ledgers.pipeline.pending_resyncs(ALICE)[0])

        written = ledgers.save(database)
        restored = Ledgers(clock, normalizer)
        counts = restored.rebuild(database)

        assert written["resync_marks"] == 1
        assert counts["resync_marks"] == 1
        deposit = make_deposit(user=ALICE, assets=1000 * USDC, block=40)
        result = restored.pipeline.apply(deposit)
        assert result.status is ApplyStatus.CREDITED
        assert restored.points.balance_of(ALICE) == 10
        assert restored.pipeline.apply(deposit).status is ApplyStatus.DUPLICATE


# ============================================================
# APPEND-ONLY
# ============================================================

class TestImmutablePointsLog:

    def test_rewrite_rejected(self, database, ledgers, clock, normalizer):
        ledgers.points.award(ALICE, 10, PointsSource.DEPOSIT, "k1")
        ledgers.save(database)

        other = Ledgers(clock, normalizer)
        other.points.award(ALICE, 10, PointsSource.DEPOSIT, "k2")

        with pytest.raises(ImmutableRecordError):
            other.save(database)

        with database.transaction_scope() as session:
            keys = [r.idempotency_key for r in session.query(PointsEventRecord).all()]
        assert keys == ["k1"]
