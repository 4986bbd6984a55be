"""
Exception hierarchy for the peg stabilization bot.

Provides specific exception types for each failure class of the trade
pipeline so callers can tell a rejected request apart from a failed swap
or an unreachable data source.
"""

from typing import Optional, Dict, Any


class PegStabilizerError(Exception):
    """Base exception for all peg stabilizer related errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(PegStabilizerError):
    """Raised when the bot configuration cannot be loaded or is invalid."""

    pass


class ValidationError(PegStabilizerError):
    """Raised when a trade request or config patch is malformed."""

    pass


class SafetyViolation(PegStabilizerError):
    """Raised when the risk gate rejects a trade request."""

    def __init__(
        self,
        reason: str,
        checks: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(reason, details)
        self.reason = reason
        self.checks = checks or {}


class ExecutionFailure(PegStabilizerError):
    """Raised when the chain executor fails or times out for an opened trade."""

    def __init__(
        self,
        message: str,
        trade_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.trade_id = trade_id


class UpstreamUnavailable(PegStabilizerError):
    """Raised when a price, pool or chain data source cannot be reached."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.source = source


class PersistenceError(PegStabilizerError):
    """Raised when a trade or config store read/write fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.operation = operation


class InvalidTransitionError(PersistenceError):
    """Raised when a trade record status change is not allowed."""

    def __init__(
        self,
        trade_id: str,
        from_status: Any,
        to_status: Any,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"Trade {trade_id} cannot move from {from_status} to {to_status}",
            operation="transition",
            details=details,
        )
        self.trade_id = trade_id
        self.from_status = from_status
        self.to_status = to_status
