"""
Tests for Event Ingestion.

============================================================
TEST PRINCIPLES:
- Raw logs normalize to one canonical form
- Each user's events apply in chain order, exactly once
- Out-of-order vault events end in an on-chain re-sync
============================================================
"""

from unittest.mock import AsyncMock

import pytest

from allocation_reconciler import VaultReader
from core.events import DepositEvent, TierChangedEvent, WithdrawEvent
from core.exceptions import ConfigurationError, DuplicateEvent, MalformedEvent, OutOfOrderEvent
from core.types import Tier, VaultType
from event_ingestion import (
    ApplyStatus,
    ContractRegistry,
    EventDispatcher,
    OrderingGuard,
    PositionResyncer,
    partition_index,
)
from referral_graph import ReferralLevel

from conftest import (
    AGGRESSIVE_VAULT,
    ALICE,
    BASE_TIME,
    BOB,
    CAROL,
    CONSERVATIVE_VAULT,
    REFERRAL_MANAGER,
    USDC,
    tx,
)


BASE_UNIX = 1735689600


def raw_event(name, args, contract=CONSERVATIVE_VAULT, n=1, block=None, log_index=0, offset=0):
    return {
        "contractAddress": contract,
        "eventName": name,
        "args": args,
        "txHash": tx(n),
        "logIndex": log_index,
        "blockNumber": block if block is not None else n,
        "blockTimestamp": BASE_UNIX + offset,
    }


def raw_deposit(user=ALICE, assets=1000 * USDC, n=1, **kwargs):
    return raw_event("Deposited", {"user": user, "assets": str(assets), "shares": str(assets)}, n=n, **kwargs)


def raw_withdraw(user=ALICE, assets=1000 * USDC, shares=1000 * USDC, n=2, **kwargs):
    return raw_event("Withdrawn", {"user": user, "assets": str(assets), "shares": str(shares)}, n=n, **kwargs)


# ============================================================
# CONTRACT REGISTRY
# ============================================================

class TestContractRegistry:

    def test_roles(self, registry):
        assert registry.vault_type(CONSERVATIVE_VAULT) is VaultType.CONSERVATIVE
        assert registry.is_referral_manager(REFERRAL_MANAGER)
        assert not registry.is_known(ALICE)
        assert registry.vault_type("garbage") is None

    def test_from_dict_parses_types(self):
        registry = ContractRegistry.from_dict({
            "vaults": {AGGRESSIVE_VAULT.upper().replace("0X", "0x"): "Aggressive"},
            "referral_managers": [REFERRAL_MANAGER],
        })
        assert registry.vault_type(AGGRESSIVE_VAULT) is VaultType.AGGRESSIVE
        assert registry.vaults_of_type(VaultType.AGGRESSIVE) == [AGGRESSIVE_VAULT]

    def test_overlap_rejected(self):
        with pytest.raises(ConfigurationError):
            ContractRegistry(
                vaults={REFERRAL_MANAGER: VaultType.CONSERVATIVE},
                referral_managers=[REFERRAL_MANAGER],
            )

    def test_invalid_address_rejected(self):
        with pytest.raises(ConfigurationError):
            ContractRegistry(referral_managers=["0x1234"])


# ============================================================
# NORMALIZER
# ============================================================

class TestEventNormalizer:

    def test_camel_case_deposit(self, normalizer):
        raw = raw_event("Deposited", {"user": ALICE.upper().replace("0X", "0x"), "assets": "0x3b9aca00", "shares": 999})

        event = normalizer.normalize(raw)

        assert isinstance(event, DepositEvent)
        assert event.user == ALICE
        assert event.assets == 10 ** 9
        assert event.shares == 999
        assert event.vault_type is VaultType.CONSERVATIVE
        assert event.block_timestamp == BASE_TIME
        assert event.idempotency_key == f"{tx(1)}:0"

    def test_snake_case_withdraw(self, normalizer):
        raw = {
            "contract_address": CONSERVATIVE_VAULT,
            "event_name": "Withdrawn",
            "args": {"owner": ALICE, "assets": "1100", "shares": "1000"},
            "tx_hash": tx(7),
            "log_index": 3,
            "block_number": 12,
            "block_timestamp": "2025-01-01T00:00:00+00:00",
        }

        event = normalizer.normalize(raw)

        assert isinstance(event, WithdrawEvent)
        assert event.assets_returned == 1100
        assert event.shares_burned == 1000
        assert event.ordering_key == (12, 3)

    def test_tier_change(self, normalizer):
        raw = raw_event(
            "TierChanged", {"user": ALICE, "newTier": 2, "oldTier": "Novice"}, contract=REFERRAL_MANAGER
        )

        event = normalizer.normalize(raw)

        assert isinstance(event, TierChangedEvent)
        assert event.new_tier is Tier.CAPTAIN
        assert event.old_tier is Tier.NOVICE

    def test_unknown_event_returns_none(self, normalizer):
        assert normalizer.normalize(raw_event("Approval", {})) is None
        assert normalizer.stats.unknown == 1

    def test_missing_field_is_malformed(self, normalizer):
        raw = raw_deposit()
        del raw["txHash"]
        with pytest.raises(MalformedEvent):
            normalizer.normalize(raw)

    @pytest.mark.parametrize("assets", ["-5", "abc", 1.5, True])
    def test_bad_amount_is_malformed(self, normalizer, assets):
        raw = raw_event("Deposited", {"user": ALICE, "assets": assets, "shares": "1"})
        with pytest.raises(MalformedEvent):
            normalizer.normalize(raw)

    def test_vault_event_from_non_vault_is_malformed(self, normalizer):
        with pytest.raises(MalformedEvent):
            normalizer.normalize(raw_deposit(contract=REFERRAL_MANAGER))

    def test_referral_event_from_vault_is_malformed(self, normalizer):
        raw = raw_event("ReferralRegistered", {"referrer": ALICE, "referee": BOB})
        with pytest.raises(MalformedEvent):
            normalizer.normalize(raw)

    def test_batch_drops_bad_events(self, normalizer):
        bad = raw_deposit(n=2)
        bad["txHash"] = "0xnothex"

        events = normalizer.normalize_batch([raw_deposit(n=1), bad, raw_event("Approval", {}, n=3)])

        assert len(events) == 1
        assert normalizer.stats.malformed == 1
        assert normalizer.stats.by_type == {"Deposited": 1}


# ============================================================
# ORDERING GUARD
# ============================================================

class TestOrderingGuard:

    def test_redelivery_is_duplicate(self, make_deposit):
        guard = OrderingGuard()
        event = make_deposit()
        guard.record(event)

        with pytest.raises(DuplicateEvent):
            guard.check(event)

    def test_regression_is_out_of_order(self, make_deposit):
        guard = OrderingGuard()
        guard.record(make_deposit(block=200))

        with pytest.raises(OutOfOrderEvent):
            guard.check(make_deposit(block=150))
        with pytest.raises(OutOfOrderEvent):
            guard.check(make_deposit(block=200))

        guard.check(make_deposit(block=200, log_index=1))

    def test_partitions_are_independent(self, make_deposit):
        guard = OrderingGuard()
        guard.record(make_deposit(user=ALICE, block=200))

        guard.check(make_deposit(user=BOB, block=10))

    def test_restore(self, make_deposit):
        event = make_deposit(block=50)
        guard = OrderingGuard()
        guard.restore({ALICE: (100, 0)}, {event.idempotency_key})

        assert guard.last_applied(ALICE) == (100, 0)
        assert guard.is_applied(event.idempotency_key)

    def test_resync_mark_covers_earlier_events_of_its_vault(self, make_deposit):
        guard = OrderingGuard()
        guard.mark_resynced(ALICE, CONSERVATIVE_VAULT, (100, 0))
        late = make_deposit(block=50)

        assert guard.last_applied(ALICE) == (100, 0)
        assert guard.is_covered(late)
        assert guard.is_covered(make_deposit(block=100))
        assert not guard.is_covered(make_deposit(block=101))
        assert not guard.is_covered(make_deposit(
            block=50, vault=AGGRESSIVE_VAULT, vault_type=VaultType.AGGRESSIVE
        ))

        guard.mark_applied(late.idempotency_key)
        assert not guard.is_covered(late)
        assert guard.last_applied(ALICE) == (100, 0)

    def test_tier_change_is_never_covered(self, make_tier_change):
        guard = OrderingGuard()
        guard.mark_resynced(ALICE, REFERRAL_MANAGER, (100, 0))

        assert not guard.is_covered(make_tier_change(user=ALICE, block=50))

    def test_restore_resync_marks(self, make_deposit):
        guard = OrderingGuard()
        guard.restore({ALICE: (100, 0)}, set(), {(ALICE, CONSERVATIVE_VAULT): (100, 0)})

        assert guard.resync_marks() == {(ALICE, CONSERVATIVE_VAULT): (100, 0)}
        assert guard.is_covered(make_deposit(block=60))


# ============================================================
# PIPELINE
# ============================================================

class TestIngestionPipeline:

    def test_deposit_applied(self, pipeline, points):
        result = pipeline.ingest(raw_deposit())

        assert result.status is ApplyStatus.APPLIED
        assert points.balance_of(ALICE) == 10

    def test_redelivery_is_duplicate(self, pipeline, points):
        pipeline.ingest(raw_deposit())
        result = pipeline.ingest(raw_deposit())

        assert result.status is ApplyStatus.DUPLICATE
        assert points.balance_of(ALICE) == 10
        assert pipeline.stats.count(ApplyStatus.DUPLICATE) == 1

    def test_unknown_and_malformed(self, pipeline):
        assert pipeline.ingest(raw_event("Approval", {})).status is ApplyStatus.UNKNOWN
        assert pipeline.ingest({"eventName": "Deposited"}).status is ApplyStatus.MALFORMED

    def test_withdraw_before_deposit_requests_resync(self, pipeline):
        result = pipeline.ingest(raw_withdraw(user=BOB))

        assert result.status is ApplyStatus.OUT_OF_ORDER
        pending = pipeline.pending_resyncs(BOB)
        assert len(pending) == 1
        assert pending[0].vault_address == CONSERVATIVE_VAULT
        assert pending[0].vault_type is VaultType.CONSERVATIVE

    def test_withdraw_after_full_exit_requests_resync(self, pipeline, points):
        pipeline.ingest(raw_deposit(n=1))
        pipeline.ingest(raw_withdraw(n=2))

        result = pipeline.ingest(raw_withdraw(assets=600 * USDC, shares=100 * USDC, n=3))

        assert result.status is ApplyStatus.OUT_OF_ORDER
        assert len(pipeline.pending_resyncs(ALICE)) == 1
        assert points.balance_of(ALICE) == 10

    def test_regression_is_flagged_without_resync(self, pipeline, positions):
        pipeline.ingest(raw_deposit(n=1, block=200))
        result = pipeline.ingest(raw_deposit(n=2, block=150))

        assert result.status is ApplyStatus.OUT_OF_ORDER
        assert pipeline.pending_resyncs() == []
        assert len(positions.positions_for(ALICE)) == 1

    def test_referral_then_deposit(self, pipeline, referrals, points):
        pipeline.ingest(raw_event(
            "ReferralRegistered", {"referrer": ALICE, "referee": BOB}, contract=REFERRAL_MANAGER, n=1
        ))
        pipeline.ingest(raw_deposit(user=BOB, n=2))

        assert points.balance_of(ALICE) == 100
        assert points.balance_of(BOB) == 10
        assert referrals.edges_for(BOB)[0].total_deposited == 1000 * USDC

    def test_tier_upgrade(self, pipeline, points):
        result = pipeline.ingest(raw_event(
            "TierChanged", {"user": CAROL, "newTier": "Whale"}, contract=REFERRAL_MANAGER
        ))

        assert result.status is ApplyStatus.APPLIED
        assert result.detail == 1000
        assert points.balance_of(CAROL) == 1000


# ============================================================
# RE-SYNC
# ============================================================

@pytest.fixture
def vault_reader():
    reader = AsyncMock(spec=VaultReader)
    reader.balance_of.return_value = 800 * USDC
    reader.convert_to_assets.return_value = 820 * USDC
    return reader


class TestPositionResyncer:

    @pytest.mark.asyncio
    async def test_resync_from_chain(self, pipeline, positions, points, vault_reader, clock):
        pipeline.ingest(raw_withdraw(user=BOB, n=9, block=90, log_index=2))
        resyncer = PositionResyncer(vault_reader, positions, pipeline, clock)

        results = await resyncer.run_pending(BOB)

        assert len(results) == 1
        assert results[0].success
        lot = results[0].position
        assert lot.shares == 800 * USDC
        assert lot.principal == 820 * USDC
        assert positions.active_positions(BOB) == [lot]
        assert points.balance_of(BOB) == 0
        assert pipeline.pending_resyncs() == []
        assert pipeline.ordering.last_applied(BOB) == (90, 2)
        assert [r.status for r in results[0].credited] == [ApplyStatus.CREDITED]
        vault_reader.balance_of.assert_awaited_once_with(CONSERVATIVE_VAULT, BOB)
        vault_reader.convert_to_assets.assert_awaited_once_with(CONSERVATIVE_VAULT, 800 * USDC)

    @pytest.mark.asyncio
    async def test_failed_read_keeps_request(self, pipeline, positions, vault_reader, clock):
        pipeline.ingest(raw_withdraw(user=BOB))
        vault_reader.balance_of.side_effect = RuntimeError("rpc down")
        resyncer = PositionResyncer(vault_reader, positions, pipeline, clock)

        results = await resyncer.run_pending()

        assert not results[0].success
        assert "rpc down" in results[0].error
        assert len(pipeline.pending_resyncs(BOB)) == 1
        assert results[0].credited == []

    @pytest.mark.asyncio
    async def test_trigger_yield_credited_after_resync(self, pipeline, positions, points, vault_reader, clock):
        vault_reader.balance_of.return_value = 0
        vault_reader.convert_to_assets.return_value = 0
        pipeline.ingest(raw_withdraw(user=BOB, assets=1200 * USDC, shares=1000 * USDC, n=5))
        resyncer = PositionResyncer(vault_reader, positions, pipeline, clock)

        results = await resyncer.run_pending(BOB)

        assert [(r.status, r.detail) for r in results[0].credited] == [(ApplyStatus.CREDITED, 2)]
        assert points.balance_of(BOB) == 2
        assert positions.positions_for(BOB) == []

    @pytest.mark.asyncio
    async def test_late_deposit_is_credited_once(self, pipeline, positions, points, referrals, vault_reader, clock):
        vault_reader.balance_of.return_value = 0
        vault_reader.convert_to_assets.return_value = 0
        pipeline.ingest(raw_event(
            "ReferralRegistered", {"referrer": CAROL, "referee": ALICE}, contract=REFERRAL_MANAGER, n=1
        ))
        pipeline.ingest(raw_withdraw(assets=1001 * USDC, shares=1001 * USDC, n=5, block=5))
        await PositionResyncer(vault_reader, positions, pipeline, clock).run_pending(ALICE)

        late = pipeline.ingest(raw_deposit(assets=1001 * USDC, n=4, block=4))
        again = pipeline.ingest(raw_deposit(assets=1001 * USDC, n=4, block=4))

        assert late.status is ApplyStatus.CREDITED
        assert late.detail == 10
        assert again.status is ApplyStatus.DUPLICATE
        assert points.balance_of(ALICE) == 10
        assert positions.positions_for(ALICE) == []
        assert referrals.edges_for(ALICE)[0].total_deposited == 1001 * USDC


# ============================================================
# DISPATCHER
# ============================================================

class TestEventDispatcher:

    def test_partition_index_is_stable(self):
        assert partition_index(ALICE, 4) == partition_index(ALICE.upper().replace("0X", "0x"), 4)
        assert 0 <= partition_index(BOB, 4) < 4

    def test_invalid_worker_count(self, pipeline):
        with pytest.raises(ValueError):
            EventDispatcher(pipeline, workers=0)

    @pytest.mark.asyncio
    async def test_applies_events_per_user_in_order(self, pipeline, positions, points):
        raws = []
        for i, user in enumerate([ALICE, BOB, CAROL]):
            raws.append(raw_deposit(user=user, n=10 + i, block=10 + i))
            raws.append(raw_withdraw(user=user, n=20 + i, block=20 + i, offset=61 * 86400))

        async with EventDispatcher(pipeline, workers=3) as dispatcher:
            for raw in raws:
                assert await dispatcher.submit_raw(raw)
            await dispatcher.join()

        assert dispatcher.counts() == {"applied": 6}
        for user in (ALICE, BOB, CAROL):
            assert positions.active_positions(user) == []
            assert points.balance_of(user) == 10

    @pytest.mark.asyncio
    async def test_dropped_events_counted(self, pipeline):
        async with EventDispatcher(pipeline, workers=2) as dispatcher:
            assert not await dispatcher.submit_raw(raw_event("Approval", {}))
            assert not await dispatcher.submit_raw({"eventName": "Deposited"})
            await dispatcher.join()

        assert dispatcher.counts() == {"unknown": 1, "malformed": 1}

    @pytest.mark.asyncio
    async def test_out_of_order_triggers_resync(self, pipeline, positions, vault_reader, clock):
        resyncer = PositionResyncer(vault_reader, positions, pipeline, clock)

        async with EventDispatcher(pipeline, workers=2, resyncer=resyncer) as dispatcher:
            await dispatcher.submit_raw(raw_withdraw(user=BOB, n=5, block=5))
            await dispatcher.join()

        assert dispatcher.counts() == {"out_of_order": 1, "credited": 1}
        assert len(positions.active_positions(BOB)) == 1
        assert pipeline.pending_resyncs() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("workers", [1, 2, 3, 4])
    async def test_referral_chain_across_workers(self, pipeline, points, referrals, workers):
        raws = [
            raw_event("ReferralRegistered", {"referrer": CAROL, "referee": BOB}, contract=REFERRAL_MANAGER, n=1),
            raw_deposit(user=ALICE, n=2),
            raw_event("ReferralRegistered", {"referrer": BOB, "referee": ALICE}, contract=REFERRAL_MANAGER, n=3),
            raw_deposit(user=ALICE, n=4),
        ]

        async with EventDispatcher(pipeline, workers=workers) as dispatcher:
            for raw in raws:
                await dispatcher.submit_raw(raw)
            await dispatcher.join()

        assert dispatcher.counts() == {"applied": 4}
        assert points.balance_of(CAROL) == 100 + 50
        assert points.balance_of(BOB) == 100
        assert points.balance_of(ALICE) == 20
        assert referrals.referees_of(CAROL, ReferralLevel.INDIRECT) == [ALICE]
        assert [e.total_deposited for e in referrals.edges_for(ALICE)] == [1000 * USDC, 1000 * USDC]

    @pytest.mark.asyncio
    async def test_referral_applied_before_submit_returns(self, pipeline, referrals):
        async with EventDispatcher(pipeline, workers=2) as dispatcher:
            await dispatcher.submit_raw(raw_event(
                "ReferralRegistered", {"referrer": CAROL, "referee": BOB}, contract=REFERRAL_MANAGER, n=1
            ))
            assert referrals.referrer_of(BOB) == CAROL
            await dispatcher.join()

    @pytest.mark.asyncio
    async def test_withdraw_then_late_deposit(self, pipeline, positions, points, vault_reader, clock):
        vault_reader.balance_of.return_value = 0
        vault_reader.convert_to_assets.return_value = 0
        resyncer = PositionResyncer(vault_reader, positions, pipeline, clock)

        async with EventDispatcher(pipeline, workers=1, resyncer=resyncer) as dispatcher:
            await dispatcher.submit_raw(raw_withdraw(assets=1001 * USDC, shares=1001 * USDC, n=5, block=5))
            await dispatcher.submit_raw(raw_deposit(assets=1001 * USDC, n=4, block=4))
            await dispatcher.join()

        assert dispatcher.counts() == {"out_of_order": 1, "credited": 2}
        assert points.balance_of(ALICE) == 10
        assert positions.active_positions(ALICE) == []
        assert pipeline.pending_resyncs() == []

    @pytest.mark.asyncio
    async def test_submit_requires_running(self, pipeline, make_deposit):
        dispatcher = EventDispatcher(pipeline)
        with pytest.raises(RuntimeError):
            await dispatcher.submit(make_deposit())
