"""
Referral Graph - Types.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, Tuple


class ReferralLevel(IntEnum):
    """Edge depth."""

    DIRECT = 1
    INDIRECT = 2


@dataclass
class ReferralEdge:
    """
    Directed referrer -> referee edge.

    At most one DIRECT edge exists per referee. INDIRECT edges are
    derived from the referrer's own DIRECT edge and never set directly.
    """

    referrer: str
    referee: str
    level: ReferralLevel
    created_at: datetime

    is_active: bool = True

    total_deposited: int = 0
    """Cumulative raw units deposited by the referee."""

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.referrer, self.referee, int(self.level))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "referrer": self.referrer,
            "referee": self.referee,
            "level": int(self.level),
            "is_active": self.is_active,
            "total_deposited": str(self.total_deposited),
            "created_at": self.created_at.isoformat(),
        }
