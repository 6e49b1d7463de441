"""
Position Ledger - Maturity.

Maturity and early-withdrawal math. Pure functions over a
position and a point in time; no ledger state.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal

from core.clock import ensure_utc
from core.constants import SECONDS_PER_DAY

from .config import MaturityConfig
from .types import MaturityQuote, VaultPosition


def matures_at(position: VaultPosition, config: MaturityConfig) -> datetime:
    """Time at which a position becomes mature."""
    return ensure_utc(position.deposited_at) + timedelta(days=config.period_days)


def maturity_quote(
    position: VaultPosition,
    now: datetime,
    config: MaturityConfig,
) -> MaturityQuote:
    """
    Maturity state of a position at `now`.

    A position is mature once `now - deposited_at` reaches the full
    period. Before that the penalty is a fraction of principal only,
    and days_remaining rounds partial days up.
    """
    maturity_time = matures_at(position, config)
    remaining = (maturity_time - ensure_utc(now)).total_seconds()

    if remaining <= 0:
        return MaturityQuote(
            is_mature=True,
            days_remaining=0,
            penalty=Decimal("0"),
            amount_to_receive=Decimal(position.principal),
            forfeited_bonus_points=0,
            matures_at=maturity_time,
        )

    principal = Decimal(position.principal)
    penalty = principal * config.penalty_rate
    return MaturityQuote(
        is_mature=False,
        days_remaining=math.ceil(remaining / SECONDS_PER_DAY),
        penalty=penalty,
        amount_to_receive=principal - penalty,
        forfeited_bonus_points=config.forfeited_bonus_points,
        matures_at=maturity_time,
    )


def withdrawal_preview(
    position: VaultPosition,
    current_value: int,
    now: datetime,
    config: MaturityConfig,
) -> Decimal:
    """
    Amount a full withdrawal of this lot would pay out at `now`.

    Mature: the full current value (principal plus yield).
    Immature: principal minus penalty; accrued yield is forfeited.
    A lot worth less than its principal is penalized on what is left.
    """
    if current_value < 0:
        raise ValueError(f"current_value must be >= 0, got {current_value}")

    quote = maturity_quote(position, now, config)
    if quote.is_mature:
        return Decimal(current_value)

    base = Decimal(min(position.principal, current_value))
    return base - base * config.penalty_rate
