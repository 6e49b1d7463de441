"""
Tests for the Referral Graph.

============================================================
TEST PRINCIPLES:
- Referral bonuses fan out exactly once
- A referee's referrer never changes
- Tiers only move up through events
============================================================
"""

from decimal import Decimal

import pytest

from core.exceptions import MalformedEvent
from core.types import Tier
from referral_graph import ReferralLevel, compute_next_tier_progress

from conftest import ALICE, BASE_TIME, BOB, CAROL, DAVE, USDC


def register(referrals, referrer, referee, key):
    return referrals.register_referral(referrer, referee, BASE_TIME, key)


# ============================================================
# REGISTRATION
# ============================================================

class TestRegisterReferral:

    def test_direct_and_indirect_awards(self, referrals, points):
        register(referrals, ALICE, BOB, "k1")
        register(referrals, BOB, CAROL, "k2")

        assert points.balance_of(ALICE) == 100 + 50
        assert points.balance_of(BOB) == 100
        assert points.balance_of(CAROL) == 0

    def test_redelivery_awards_once(self, referrals, points):
        register(referrals, ALICE, BOB, "k1")
        register(referrals, BOB, CAROL, "k2")
        register(referrals, BOB, CAROL, "k2")

        assert points.balance_of(ALICE) == 150
        assert points.balance_of(BOB) == 100
        assert len(referrals.all_edges()) == 3

    def test_referrer_is_fixed_once_set(self, referrals, points, users):
        first = register(referrals, ALICE, CAROL, "k1")
        second = register(referrals, BOB, CAROL, "k2")

        assert second is first
        assert referrals.referrer_of(CAROL) == ALICE
        assert users.get(CAROL).referred_by == ALICE
        assert points.balance_of(BOB) == 0

    def test_self_referral_ignored(self, referrals, points):
        assert register(referrals, ALICE, ALICE, "k1") is None
        assert points.balance_of(ALICE) == 0
        assert referrals.all_edges() == []

    def test_two_cycle_ignored(self, referrals, points):
        register(referrals, ALICE, BOB, "k1")

        assert register(referrals, BOB, ALICE, "k2") is None
        assert referrals.referrer_of(ALICE) is None
        assert points.balance_of(BOB) == 0

    def test_invalid_address_is_malformed(self, referrals):
        with pytest.raises(MalformedEvent):
            register(referrals, "not-an-address", BOB, "k1")

    def test_indirect_edges_derived(self, referrals):
        register(referrals, ALICE, BOB, "k1")
        register(referrals, BOB, CAROL, "k2")
        register(referrals, BOB, DAVE, "k3")

        assert referrals.direct_referrals(BOB) == 2
        assert referrals.indirect_referrals(ALICE) == 2
        assert sorted(referrals.referees_of(ALICE, ReferralLevel.INDIRECT)) == sorted([CAROL, DAVE])

    def test_record_deposit_updates_edges(self, referrals):
        register(referrals, ALICE, BOB, "k1")
        register(referrals, BOB, CAROL, "k2")

        assert referrals.record_deposit(CAROL, 500 * USDC, "d1") == 2
        assert referrals.record_deposit(CAROL, 500 * USDC, "d1") == 0
        assert all(e.total_deposited == 500 * USDC for e in referrals.edges_for(CAROL))


# ============================================================
# TIERS
# ============================================================

class TestTierChange:

    def test_upgrade_awards_bonus_once(self, referrals, points, users):
        assert referrals.apply_tier_change(ALICE, Tier.CAPTAIN, BASE_TIME, "t1") == 500
        assert referrals.apply_tier_change(ALICE, Tier.CAPTAIN, BASE_TIME, "t1") == 0

        assert points.balance_of(ALICE) == 500
        assert users.get(ALICE).tier is Tier.CAPTAIN

    @pytest.mark.parametrize("tier,bonus", [
        (Tier.SCOUT, 250),
        (Tier.CAPTAIN, 500),
        (Tier.WHALE, 1000),
    ])
    def test_bonus_by_new_tier(self, referrals, tier, bonus):
        assert referrals.apply_tier_change(ALICE, tier, BASE_TIME, "t1") == bonus

    def test_downgrade_is_ignored(self, referrals, points):
        referrals.apply_tier_change(ALICE, Tier.WHALE, BASE_TIME, "t1")

        assert referrals.apply_tier_change(ALICE, Tier.SCOUT, BASE_TIME, "t2") == 0
        assert referrals.tier_of(ALICE) is Tier.WHALE
        assert points.balance_of(ALICE) == 1000

    def test_same_tier_is_ignored(self, referrals):
        referrals.apply_tier_change(ALICE, Tier.SCOUT, BASE_TIME, "t1")
        assert referrals.apply_tier_change(ALICE, Tier.SCOUT, BASE_TIME, "t2") == 0

    def test_admin_override_may_downgrade(self, referrals, points):
        referrals.apply_tier_change(ALICE, Tier.CAPTAIN, BASE_TIME, "t1")

        referrals.admin_set_tier(ALICE, Tier.NOVICE)

        assert referrals.tier_of(ALICE) is Tier.NOVICE
        assert points.balance_of(ALICE) == 500

    def test_tier_parsed_from_label(self, referrals):
        referrals.apply_tier_change(ALICE, "Scout", BASE_TIME, "t1")
        assert referrals.tier_of(ALICE) is Tier.SCOUT


# ============================================================
# NEXT TIER PROGRESS
# ============================================================

class TestNextTierProgress:

    def test_novice_progress(self):
        progress = compute_next_tier_progress(Tier.NOVICE, Decimal("500"), 1)

        assert progress.next_tier is Tier.SCOUT
        assert progress.deposit_progress == Decimal("50")
        assert progress.referral_progress == Decimal("20")
        assert not progress.is_max_tier

    def test_progress_capped(self):
        progress = compute_next_tier_progress(Tier.SCOUT, Decimal("25000"), 40)

        assert progress.deposit_progress == Decimal("100")
        assert progress.referral_progress == Decimal("100")

    def test_whale_is_max_tier(self):
        progress = compute_next_tier_progress(Tier.WHALE, Decimal("0"), 0)

        assert progress.is_max_tier
        assert progress.next_tier is None
        assert progress.deposit_progress == Decimal("100")

    def test_graph_counts_direct_referrals(self, referrals):
        register(referrals, ALICE, BOB, "k1")
        register(referrals, ALICE, CAROL, "k2")

        progress = referrals.next_tier_progress(ALICE, Decimal("0"))
        assert progress.referral_progress == Decimal("40")
