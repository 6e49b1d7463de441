"""
Tests for core types, the user registry and the clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.clock import MockClock, ensure_utc, from_block_timestamp
from core.types import Tier, VaultType, is_valid_address, normalize_address
from core.user_registry import UserRegistry

from conftest import ALICE, BASE_TIME, BOB


class TestAddresses:

    def test_normalize_lowercases(self):
        assert normalize_address("0x" + "AB" * 20) == "0x" + "ab" * 20

    @pytest.mark.parametrize("value", ["", "0x1234", "ab" * 20, None, 42])
    def test_invalid(self, value):
        assert not is_valid_address(value)
        with pytest.raises(ValueError):
            normalize_address(value)


class TestTier:

    @pytest.mark.parametrize("value,expected", [
        ("Captain", Tier.CAPTAIN),
        ("whale", Tier.WHALE),
        (1, Tier.SCOUT),
        ("0", Tier.NOVICE),
        (Tier.SCOUT, Tier.SCOUT),
    ])
    def test_parse(self, value, expected):
        assert Tier.parse(value) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            Tier.parse("Admiral")

    def test_ordering_and_label(self):
        assert Tier.NOVICE < Tier.SCOUT < Tier.CAPTAIN < Tier.WHALE
        assert Tier.CAPTAIN.label == "Captain"

    def test_vault_multipliers(self):
        assert VaultType.AGGRESSIVE.points_multiplier > VaultType.CONSERVATIVE.points_multiplier


class TestUserRegistry:

    def test_upsert_creates_once(self):
        users = UserRegistry()
        first = users.upsert(ALICE, BASE_TIME)
        later = users.upsert(ALICE, BASE_TIME + timedelta(days=1), referred_by=BOB)

        assert later is first
        assert len(users) == 1
        assert first.created_at == BASE_TIME
        assert first.last_active_at == BASE_TIME + timedelta(days=1)
        assert first.referred_by == BOB

    def test_referral_code_collision_extends(self):
        users = UserRegistry()
        a = users.upsert("0x" + "ab" * 5 + "00" * 15, BASE_TIME)
        b = users.upsert("0x" + "ab" * 5 + "11" * 15, BASE_TIME)

        assert a.referral_code == "ABABABABAB"
        assert b.referral_code == "ABABABABAB1"
        assert users.by_referral_code("ababababab1") is b

    def test_set_tier_unknown_user(self):
        with pytest.raises(KeyError):
            UserRegistry().set_tier(ALICE, Tier.WHALE)


class TestClock:

    def test_mock_clock_advance(self):
        clock = MockClock(BASE_TIME)
        clock.advance(days=2, hours=1)
        assert clock.now() == BASE_TIME + timedelta(days=2, hours=1)

    def test_ensure_utc(self):
        naive = datetime(2025, 1, 1)
        assert ensure_utc(naive).tzinfo is timezone.utc

    @pytest.mark.parametrize("value", [1735689600, "1735689600", "2025-01-01T00:00:00+00:00", BASE_TIME])
    def test_from_block_timestamp(self, value):
        assert from_block_timestamp(value) == BASE_TIME

    @pytest.mark.parametrize("value", [-1, True, "yesterday"])
    def test_from_block_timestamp_invalid(self, value):
        with pytest.raises(ValueError):
            from_block_timestamp(value)
