"""
Ledger Settings.

============================================================
PURPOSE
============================================================
Assembles the runtime configuration of the ledger service.

PRECEDENCE (lowest to highest):
1. Dataclass defaults
2. YAML file (optional)
3. Environment variables (a .env file is loaded first)

============================================================
YAML SHAPE
============================================================
    database_url: sqlite:///ledger.db
    log_level: INFO
    rpc_url: https://mainnet.base.org
    dispatcher_workers: 4
    contracts:
      vaults: {"0x...": conservative}
      referral_managers: ["0x..."]
    positions: {asset_decimals: 6, withdrawal_mode: full,
                maturity: {period_days: 60, penalty_rate: 0.10}}
    points: {usd_per_point: 100, tier_upgrade_bonus: {captain: 500}}
    reconciler: {drift_threshold_bp: 500, retry: {max_attempts: 3}}
    allocations:
      - vault: "0x..."
        weights: {aave: 7000, compound: 3000}
        strategy_contracts: {aave: "0x...", compound: "0x..."}

============================================================
ENVIRONMENT
============================================================
    LEDGER_DATABASE_URL (or DATABASE_URL), LOG_LEVEL, RPC_URL,
    RPC_TIMEOUT_SECONDS, DISPATCHER_WORKERS, DRIFT_THRESHOLD_BP,
    RECONCILE_INTERVAL_SECONDS, WITHDRAWAL_MODE

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv

from allocation_reconciler.config import ReconcilerConfig, RetryConfig, VaultAllocation
from core.exceptions import ConfigurationError, InvalidAllocation
from core.types import Tier
from event_ingestion.registry import ContractRegistry
from points_ledger.config import PointsConfig
from position_ledger.config import MaturityConfig, PositionConfig


logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///ledger.db"


@dataclass
class LedgerSettings:
    """
    Runtime configuration of the ledger service.
    """

    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"

    rpc_url: Optional[str] = None
    """JSON-RPC endpoint for on-chain reads; reads are disabled when unset."""

    rpc_timeout_seconds: float = 12.0

    dispatcher_workers: int = 4
    """Worker tasks applying events (one user always maps to one worker)."""

    contracts: ContractRegistry = field(default_factory=ContractRegistry)
    positions: PositionConfig = field(default_factory=PositionConfig)
    points: PointsConfig = field(default_factory=PointsConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    allocations: List[VaultAllocation] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.dispatcher_workers < 1:
            raise ConfigurationError(
                "dispatcher_workers must be >= 1",
                config_key="dispatcher_workers",
                actual_value=self.dispatcher_workers,
            )
        level = logging.getLevelName(str(self.log_level).upper())
        if not isinstance(level, int):
            raise ConfigurationError(
                f"Unknown log level: {self.log_level}",
                config_key="log_level",
                actual_value=self.log_level,
            )
        self.log_level = str(self.log_level).upper()

    @classmethod
    def for_testing(cls) -> "LedgerSettings":
        """In-memory database, fast reconciler, no RPC."""
        return cls(
            database_url="sqlite://",
            log_level="DEBUG",
            dispatcher_workers=2,
            positions=PositionConfig.for_testing(),
            reconciler=ReconcilerConfig.for_testing(),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LedgerSettings":
        """
        Build from a parsed YAML mapping.

        Raises:
            ConfigurationError: A section is malformed
        """
        data = dict(data or {})
        kwargs: Dict[str, Any] = {}

        for key, cast in (
            ("database_url", str),
            ("log_level", str),
            ("rpc_url", str),
            ("rpc_timeout_seconds", float),
            ("dispatcher_workers", int),
        ):
            if data.get(key) is not None:
                kwargs[key] = _cast(key, data[key], cast)

        if data.get("contracts") is not None:
            kwargs["contracts"] = ContractRegistry.from_dict(_section(data, "contracts"))
        if data.get("positions") is not None:
            kwargs["positions"] = _position_config(_section(data, "positions"))
        if data.get("points") is not None:
            kwargs["points"] = _points_config(_section(data, "points"))
        if data.get("reconciler") is not None:
            kwargs["reconciler"] = _reconciler_config(_section(data, "reconciler"))
        if data.get("allocations") is not None:
            kwargs["allocations"] = _allocations(data["allocations"])

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "LedgerSettings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}", config_key="config")
        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}", config_key="config", cause=e)
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root must be a mapping: {path}", config_key="config")
        logger.info(f"Loaded settings from {path}")
        return cls.from_dict(data)

    def apply_environment(self, environ: Mapping[str, str]) -> "LedgerSettings":
        """Override fields from environment variables; returns self."""
        database_url = environ.get("LEDGER_DATABASE_URL") or environ.get("DATABASE_URL")
        if database_url:
            self.database_url = database_url
        if environ.get("LOG_LEVEL"):
            self.log_level = environ["LOG_LEVEL"]
        if environ.get("RPC_URL"):
            self.rpc_url = environ["RPC_URL"]
        if environ.get("RPC_TIMEOUT_SECONDS"):
            self.rpc_timeout_seconds = _cast("RPC_TIMEOUT_SECONDS", environ["RPC_TIMEOUT_SECONDS"], float)
        if environ.get("DISPATCHER_WORKERS"):
            self.dispatcher_workers = _cast("DISPATCHER_WORKERS", environ["DISPATCHER_WORKERS"], int)
        if environ.get("DRIFT_THRESHOLD_BP"):
            self.reconciler.drift_threshold_bp = _cast(
                "DRIFT_THRESHOLD_BP", environ["DRIFT_THRESHOLD_BP"], int
            )
        if environ.get("RECONCILE_INTERVAL_SECONDS"):
            self.reconciler.interval_seconds = _cast(
                "RECONCILE_INTERVAL_SECONDS", environ["RECONCILE_INTERVAL_SECONDS"], float
            )
        if environ.get("WITHDRAWAL_MODE"):
            self.positions = _position_config(
                {"withdrawal_mode": environ["WITHDRAWAL_MODE"]}, base=self.positions
            )
        self.__post_init__()
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Summary for startup logging (no secrets)."""
        return {
            "database": self.database_url.split("@")[-1],
            "log_level": self.log_level,
            "rpc_configured": self.rpc_url is not None,
            "dispatcher_workers": self.dispatcher_workers,
            "vaults": len(self.contracts.vaults),
            "referral_managers": len(self.contracts.referral_managers),
            "withdrawal_mode": self.positions.withdrawal_mode.value,
            "allocations": len(self.allocations),
            "drift_threshold_bp": self.reconciler.drift_threshold_bp,
        }


def load_settings(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> LedgerSettings:
    """
    Load settings: defaults, then YAML, then environment.

    Args:
        path: Optional YAML file
        environ: Environment mapping; defaults to os.environ after
            loading a .env file
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    settings = LedgerSettings.from_yaml(path) if path else LedgerSettings()
    return settings.apply_environment(environ)


# ============================================================
# SECTION PARSERS
# ============================================================

def _cast(key: str, value: Any, cast: Callable[[Any], Any]) -> Any:
    try:
        return cast(value)
    except (TypeError, ValueError, InvalidOperation) as e:
        raise ConfigurationError(
            f"Invalid value for {key}: {value!r}",
            config_key=key,
            actual_value=value,
            cause=e,
        )


def _section(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Section {key} must be a mapping", config_key=key, actual_value=value)
    return dict(value)


def _position_config(data: Dict[str, Any], base: Optional[PositionConfig] = None) -> PositionConfig:
    base = base or PositionConfig()
    mode = data.get("withdrawal_mode", base.withdrawal_mode)
    if isinstance(mode, str):
        mode = mode.strip().lower()
    try:
        maturity = base.maturity
        if data.get("maturity") is not None:
            m = _section(data, "maturity")
            maturity = MaturityConfig(
                period_days=_cast("maturity.period_days", m.get("period_days", maturity.period_days), int),
                penalty_rate=_cast(
                    "maturity.penalty_rate", str(m.get("penalty_rate", maturity.penalty_rate)), Decimal
                ),
                forfeited_bonus_points=_cast(
                    "maturity.forfeited_bonus_points",
                    m.get("forfeited_bonus_points", maturity.forfeited_bonus_points),
                    int,
                ),
            )
        return PositionConfig(
            asset_decimals=_cast("positions.asset_decimals", data.get("asset_decimals", base.asset_decimals), int),
            withdrawal_mode=mode,
            maturity=maturity,
            award_harvest_points_on_withdraw=bool(
                data.get("award_harvest_points_on_withdraw", base.award_harvest_points_on_withdraw)
            ),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid positions section: {e}", config_key="positions", cause=e)


def _points_config(data: Dict[str, Any]) -> PointsConfig:
    config = PointsConfig()
    if data.get("usd_per_point") is not None:
        config.usd_per_point = _cast("points.usd_per_point", str(data["usd_per_point"]), Decimal)
        if config.usd_per_point <= 0:
            raise ConfigurationError(
                "usd_per_point must be positive",
                config_key="points.usd_per_point",
                actual_value=data["usd_per_point"],
            )
    for key in ("direct_referral_points", "indirect_referral_points"):
        if data.get(key) is not None:
            setattr(config, key, _cast(f"points.{key}", data[key], int))
    if data.get("verify_on_read") is not None:
        config.verify_on_read = bool(data["verify_on_read"])
    if data.get("tier_upgrade_bonus") is not None:
        bonus = dict(config.tier_upgrade_bonus)
        for tier, points in _section(data, "tier_upgrade_bonus").items():
            try:
                bonus[Tier.parse(tier)] = int(points)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid tier bonus {tier}: {points!r}",
                    config_key="points.tier_upgrade_bonus",
                    actual_value=points,
                    cause=e,
                )
        config.tier_upgrade_bonus = bonus
    return config


def _reconciler_config(data: Dict[str, Any]) -> ReconcilerConfig:
    defaults = ReconcilerConfig()
    retry = defaults.retry
    if data.get("retry") is not None:
        r = _section(data, "retry")
        retry = RetryConfig(
            max_attempts=_cast("retry.max_attempts", r.get("max_attempts", retry.max_attempts), int),
            initial_delay_seconds=_cast(
                "retry.initial_delay_seconds", r.get("initial_delay_seconds", retry.initial_delay_seconds), float
            ),
            max_delay_seconds=_cast(
                "retry.max_delay_seconds", r.get("max_delay_seconds", retry.max_delay_seconds), float
            ),
            backoff_multiplier=_cast(
                "retry.backoff_multiplier", r.get("backoff_multiplier", retry.backoff_multiplier), float
            ),
        )
        if retry.max_attempts < 1:
            raise ConfigurationError(
                "retry.max_attempts must be >= 1",
                config_key="reconciler.retry.max_attempts",
                actual_value=retry.max_attempts,
            )
    try:
        return ReconcilerConfig(
            drift_threshold_bp=_cast(
                "reconciler.drift_threshold_bp", data.get("drift_threshold_bp", defaults.drift_threshold_bp), int
            ),
            rebalance_timeout_cycles=_cast(
                "reconciler.rebalance_timeout_cycles",
                data.get("rebalance_timeout_cycles", defaults.rebalance_timeout_cycles),
                int,
            ),
            interval_seconds=_cast(
                "reconciler.interval_seconds", data.get("interval_seconds", defaults.interval_seconds), float
            ),
            retry=retry,
            max_history=_cast("reconciler.max_history", data.get("max_history", defaults.max_history), int),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid reconciler section: {e}", config_key="reconciler", cause=e)


def _allocations(data: Any) -> List[VaultAllocation]:
    if not isinstance(data, list):
        raise ConfigurationError("allocations must be a list", config_key="allocations", actual_value=data)
    allocations = []
    for index, entry in enumerate(data):
        if not isinstance(entry, Mapping) or "vault" not in entry or "weights" not in entry:
            raise ConfigurationError(
                f"allocations[{index}] needs vault and weights",
                config_key="allocations",
                actual_value=entry,
            )
        try:
            allocations.append(VaultAllocation.from_weights(
                entry["vault"],
                dict(entry["weights"]),
                dict(entry.get("strategy_contracts") or {}),
            ))
        except (InvalidAllocation, ValueError) as e:
            raise ConfigurationError(
                f"Invalid allocations[{index}]: {e}",
                config_key="allocations",
                actual_value=entry,
                cause=e,
            )
    return allocations


__all__ = ["LedgerSettings", "load_settings", "DEFAULT_DATABASE_URL"]
