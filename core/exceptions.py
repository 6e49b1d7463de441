"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception taxonomy for the vault ledger.

- Provides clear exception hierarchy
- Encodes how each failure is handled (drop, ignore, re-sync, reject)
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
LedgerException (base)
├── ConfigurationError
├── EventError
│   ├── MalformedEvent          dropped, logged, never retried
│   ├── DuplicateEvent          ignored
│   └── OutOfOrderEvent         surfaced, triggers on-chain re-sync
├── PointsError
│   ├── InsufficientPoints      rejected, caller informed
│   └── InvalidPointsAmount
├── AllocationError
│   ├── AllocationReadFailure   cycle skipped, retried next cycle
│   ├── InvalidAllocation
│   └── InvalidStateTransition
├── ChainReadError              JSON-RPC read failed
└── StorageError                fatal, host decides restart policy

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact operations."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class LedgerException(Exception):
    """
    Base exception for all ledger errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - recoverable: whether the host process can carry on
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_recoverable: bool = True

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_fatal(self) -> bool:
        """Check if the host process should decide restart/alerting."""
        return not self.recoverable and self.severity == Severity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(LedgerException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_recoverable = False

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)


# ============================================================
# EVENT ERRORS
# ============================================================

class EventError(LedgerException):
    """Base class for chain event errors."""

    def __init__(
        self,
        message: str,
        idempotency_key: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if idempotency_key:
            context["idempotency_key"] = idempotency_key
        super().__init__(message, context=context, **kwargs)
        self.idempotency_key = idempotency_key


class MalformedEvent(EventError):
    """Event cannot be parsed; dropped and never retried."""

    default_severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        raw_event: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if field_name:
            context["field"] = field_name
        if raw_event is not None:
            context["raw_event"] = str(raw_event)[:500]
        super().__init__(message, context=context, **kwargs)
        self.field_name = field_name


class DuplicateEvent(EventError):
    """Idempotency key already applied; silently ignored."""

    default_severity = Severity.LOW


class OutOfOrderEvent(EventError):
    """
    Event arrived out of chain order for its user.

    Covers ordering-key regressions and withdraw/harvest events that
    reference a position which does not exist yet. Requires an
    authoritative re-sync of the user's position.
    """

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        user_address: str,
        vault_address: Optional[str] = None,
        ordering_key: Optional[Tuple[int, int]] = None,
        last_applied: Optional[Tuple[int, int]] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        context["user_address"] = user_address
        if vault_address:
            context["vault_address"] = vault_address
        if ordering_key is not None:
            context["ordering_key"] = list(ordering_key)
        if last_applied is not None:
            context["last_applied"] = list(last_applied)
        super().__init__(message, context=context, **kwargs)
        self.user_address = user_address
        self.vault_address = vault_address
        self.ordering_key = ordering_key
        self.last_applied = last_applied


# ============================================================
# POINTS ERRORS
# ============================================================

class PointsError(LedgerException):
    """Base class for points ledger errors."""


class InsufficientPoints(PointsError):
    """Redemption exceeds the wallet's balance."""

    def __init__(self, wallet_address: str, requested: int, available: int):
        super().__init__(
            message=(
                f"Insufficient points for {wallet_address}: "
                f"requested {requested}, available {available}"
            ),
            context={
                "wallet_address": wallet_address,
                "requested": requested,
                "available": available,
            },
        )
        self.wallet_address = wallet_address
        self.requested = requested
        self.available = available


class InvalidPointsAmount(PointsError):
    """Award or redemption amount is not allowed."""


# ============================================================
# ALLOCATION ERRORS
# ============================================================

class AllocationError(LedgerException):
    """Base class for allocation reconciler errors."""


class AllocationReadFailure(AllocationError):
    """External balance read failed; the cycle is skipped."""

    default_severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        vault_address: Optional[str] = None,
        attempts: int = 0,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if vault_address:
            context["vault_address"] = vault_address
        context["attempts"] = attempts
        super().__init__(message, context=context, **kwargs)
        self.vault_address = vault_address
        self.attempts = attempts


class InvalidAllocation(AllocationError):
    """Target weights are invalid (negative or not summing to 10,000 bp)."""

    default_recoverable = False


class InvalidStateTransition(AllocationError):
    """Reconciler state machine rejected a transition."""

    default_severity = Severity.HIGH


# ============================================================
# CHAIN READ ERRORS
# ============================================================

class ChainReadError(LedgerException):
    """A JSON-RPC read failed (transport, HTTP status or RPC error)."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if method:
            context["method"] = method
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(message, context=context, **kwargs)
        self.method = method
        self.status_code = status_code


# ============================================================
# STORAGE ERRORS
# ============================================================

class StorageError(LedgerException):
    """Unrecoverable storage failure, propagated to the host process."""

    default_severity = Severity.CRITICAL
    default_recoverable = False


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "Severity",
    "LedgerException",
    "ConfigurationError",
    "EventError",
    "MalformedEvent",
    "DuplicateEvent",
    "OutOfOrderEvent",
    "PointsError",
    "InsufficientPoints",
    "InvalidPointsAmount",
    "AllocationError",
    "AllocationReadFailure",
    "InvalidAllocation",
    "InvalidStateTransition",
    "ChainReadError",
    "StorageError",
]
