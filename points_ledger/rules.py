"""
Points Ledger - Award Rules.

Pure functions converting raw token amounts into points.
"""

from decimal import Decimal, ROUND_FLOOR

from core.types import VaultType


def to_usd(amount: int, decimals: int) -> Decimal:
    """Convert raw token units to a USD amount (stablecoin assets)."""
    return Decimal(amount) / (Decimal(10) ** decimals)


def vault_points(
    amount: int,
    vault_type: VaultType,
    decimals: int,
    usd_per_point: Decimal,
) -> int:
    """
    Points for a deposit or harvest.

    floor(amount_usd / usd_per_point * multiplier); never negative.
    """
    if amount <= 0:
        return 0
    raw = to_usd(amount, decimals) / usd_per_point * vault_type.points_multiplier
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))
