"""
Storage Models Package.

ORM models for the ledger database.

============================================================
MODEL ORGANIZATION
============================================================
- base.py: Base, TimestampMixin, TokenAmount
- ledger.py: UserRecord, VaultPositionRecord, PointsEventRecord,
  ReferralRecord, ProcessedEventRecord, OrderingCursorRecord,
  ResyncMarkRecord

============================================================
"""

from storage.models.base import Base, TimestampMixin, TokenAmount
from storage.models.ledger import (
    OrderingCursorRecord,
    PointsEventRecord,
    ProcessedEventRecord,
    ReferralRecord,
    ResyncMarkRecord,
    UserRecord,
    VaultPositionRecord,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "TokenAmount",
    "UserRecord",
    "VaultPositionRecord",
    "PointsEventRecord",
    "ReferralRecord",
    "ProcessedEventRecord",
    "OrderingCursorRecord",
    "ResyncMarkRecord",
]
