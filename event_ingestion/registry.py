"""
Event Ingestion - Contract Registry.

============================================================
PURPOSE
============================================================
Maps contract addresses to their role. Injected into the
normalizer and resyncer; never module-level state.

============================================================
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.exceptions import ConfigurationError
from core.types import VaultType, normalize_address


def _parse_vault_type(value: Any) -> VaultType:
    if isinstance(value, VaultType):
        return value
    return VaultType(str(value).lower())


@dataclass
class ContractRegistry:
    """
    Known protocol contracts.
    """

    vaults: Dict[str, VaultType] = field(default_factory=dict)
    """Vault address -> vault type."""

    referral_managers: List[str] = field(default_factory=list)
    """Contracts emitting ReferralRegistered / TierChanged."""

    def __post_init__(self) -> None:
        try:
            self.vaults = {
                normalize_address(address): _parse_vault_type(vault_type)
                for address, vault_type in self.vaults.items()
            }
            self.referral_managers = [normalize_address(a) for a in self.referral_managers]
        except ValueError as e:
            raise ConfigurationError(f"Invalid contract registry: {e}", config_key="contracts")

        overlap = set(self.vaults) & set(self.referral_managers)
        if overlap:
            raise ConfigurationError(
                f"Contracts registered as both vault and referral manager: {sorted(overlap)}",
                config_key="contracts",
            )

    def vault_type(self, address: str) -> Optional[VaultType]:
        """Vault type of a contract, or None if it is not a vault."""
        try:
            return self.vaults.get(normalize_address(address))
        except ValueError:
            return None

    def is_vault(self, address: str) -> bool:
        return self.vault_type(address) is not None

    def is_referral_manager(self, address: str) -> bool:
        try:
            return normalize_address(address) in self.referral_managers
        except ValueError:
            return False

    def is_known(self, address: str) -> bool:
        return self.is_vault(address) or self.is_referral_manager(address)

    def vaults_of_type(self, vault_type: VaultType) -> List[str]:
        return [a for a, t in self.vaults.items() if t is vault_type]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContractRegistry":
        """
        Build from configuration.

        Expected shape:
            {"vaults": {"0x..": "conservative"}, "referral_managers": ["0x.."]}
        """
        return cls(
            vaults=dict(data.get("vaults") or {}),
            referral_managers=list(data.get("referral_managers") or []),
        )
