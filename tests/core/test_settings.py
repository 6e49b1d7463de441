"""
Tests for settings loading.

Precedence: defaults, then YAML, then environment.
"""

from decimal import Decimal

import pytest

from core.exceptions import ConfigurationError
from core.settings import LedgerSettings, load_settings
from core.types import Tier, VaultType
from position_ledger import WithdrawalMode

from conftest import AGGRESSIVE_VAULT, CONSERVATIVE_VAULT, REFERRAL_MANAGER


CONFIG_YAML = f"""
database_url: sqlite:///from-yaml.db
log_level: info
rpc_url: http://localhost:8545
dispatcher_workers: 8
contracts:
  vaults:
    "{CONSERVATIVE_VAULT}": conservative
    "{AGGRESSIVE_VAULT}": Aggressive
  referral_managers: ["{REFERRAL_MANAGER}"]
positions:
  withdrawal_mode: FIFO_SHARES
  maturity:
    period_days: 30
    penalty_rate: 0.05
points:
  usd_per_point: 50
  tier_upgrade_bonus:
    captain: 600
reconciler:
  drift_threshold_bp: 250
  retry:
    max_attempts: 5
allocations:
  - vault: "{CONSERVATIVE_VAULT}"
    weights: {{aave: 7000, compound: 3000}}
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "ledger.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestLedgerSettings:

    def test_defaults(self):
        settings = load_settings(environ={})

        assert settings.database_url == "sqlite:///ledger.db"
        assert settings.rpc_url is None
        assert settings.positions.withdrawal_mode is WithdrawalMode.FULL
        assert settings.reconciler.drift_threshold_bp == 500

    def test_yaml(self, config_file):
        settings = load_settings(config_file, environ={})

        assert settings.database_url == "sqlite:///from-yaml.db"
        assert settings.log_level == "INFO"
        assert settings.dispatcher_workers == 8
        assert settings.contracts.vault_type(AGGRESSIVE_VAULT) is VaultType.AGGRESSIVE
        assert settings.contracts.is_referral_manager(REFERRAL_MANAGER)
        assert settings.positions.withdrawal_mode is WithdrawalMode.FIFO_SHARES
        assert settings.positions.maturity.period_days == 30
        assert settings.positions.maturity.penalty_rate == Decimal("0.05")
        assert settings.points.usd_per_point == Decimal("50")
        assert settings.points.bonus_for_tier(Tier.CAPTAIN) == 600
        assert settings.points.bonus_for_tier(Tier.WHALE) == 1000
        assert settings.reconciler.drift_threshold_bp == 250
        assert settings.reconciler.retry.max_attempts == 5
        assert settings.allocations[0].vault_address == CONSERVATIVE_VAULT

    def test_environment_overrides_yaml(self, config_file):
        settings = load_settings(config_file, environ={
            "LEDGER_DATABASE_URL": "postgresql://ledger@db/ledger",
            "LOG_LEVEL": "debug",
            "DRIFT_THRESHOLD_BP": "100",
            "WITHDRAWAL_MODE": "full",
        })

        assert settings.database_url == "postgresql://ledger@db/ledger"
        assert settings.log_level == "DEBUG"
        assert settings.reconciler.drift_threshold_bp == 100
        assert settings.positions.withdrawal_mode is WithdrawalMode.FULL
        assert settings.positions.maturity.period_days == 30

    def test_database_url_fallback(self):
        settings = load_settings(environ={"DATABASE_URL": "sqlite:///other.db"})
        assert settings.database_url == "sqlite:///other.db"

    def test_to_dict_hides_credentials(self):
        settings = LedgerSettings(database_url="postgresql://user:secret@db/ledger")
        assert "secret" not in str(settings.to_dict())


class TestInvalidSettings:

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "missing.yaml", environ={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("positions: [unclosed")
        with pytest.raises(ConfigurationError):
            load_settings(path, environ={})

    @pytest.mark.parametrize("data", [
        {"dispatcher_workers": 0},
        {"dispatcher_workers": "many"},
        {"log_level": "LOUD"},
        {"positions": {"withdrawal_mode": "lifo"}},
        {"positions": {"maturity": {"penalty_rate": 2}}},
        {"points": {"usd_per_point": 0}},
        {"points": {"tier_upgrade_bonus": {"admiral": 5}}},
        {"reconciler": {"drift_threshold_bp": 20000}},
        {"allocations": [{"vault": CONSERVATIVE_VAULT, "weights": {"aave": 5000}}]},
        {"allocations": {"vault": CONSERVATIVE_VAULT}},
        {"contracts": {"vaults": {CONSERVATIVE_VAULT: "conservative"}, "referral_managers": [CONSERVATIVE_VAULT]}},
    ])
    def test_bad_sections(self, data):
        with pytest.raises(ConfigurationError):
            LedgerSettings.from_dict(data)

    def test_bad_environment_value(self):
        with pytest.raises(ConfigurationError):
            load_settings(environ={"DISPATCHER_WORKERS": "lots"})
