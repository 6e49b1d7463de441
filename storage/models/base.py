"""
Base ORM Model and Column Types.

============================================================
PURPOSE
============================================================
Provides the declarative base and shared column types used by
all ledger ORM models.

============================================================
COMPONENTS
============================================================
- Base: SQLAlchemy declarative base for all models
- TimestampMixin: Common timestamp columns
- TokenAmount: Exact storage for raw uint256 token amounts

============================================================
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class TokenAmount(TypeDecorator):
    """
    Raw integer token amount stored as a decimal string.

    uint256 values overflow BIGINT and lose precision in SQLite
    NUMERIC, so amounts round-trip through text.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: Optional[int], dialect: Any) -> Optional[str]:
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value: Optional[str], dialect: Any) -> Optional[int]:
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """
    Mixin providing row bookkeeping timestamps.

    These track when the row was written, not when the chain event
    happened; event times live in domain columns.
    """

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Row creation timestamp (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last update timestamp (UTC)"
    )
