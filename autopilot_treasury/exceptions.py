"""Error types shared by the builder, relay client and contract models.

Validator rejections are deliberately absent: they are reported as
:class:`~autopilot_treasury.validator.ValidationStatus` values.
"""
from __future__ import annotations

from typing import Any, Optional


class ConfigurationError(RuntimeError):
    """A required dependency such as the signing key or relay URL is missing."""


class RelayError(RuntimeError):
    """Raised when the relay or sponsor endpoint fails a JSON-RPC call."""

    def __init__(self, method: str, message: str, response: Any = None) -> None:
        super().__init__(f"Relay RPC error ({method}): {message}")
        self.method = method
        self.response = response


class ConfirmationTimeout(TimeoutError):
    """No receipt was observed for a submitted operation within the bound."""

    def __init__(self, operation_id: str, timeout: float) -> None:
        super().__init__(f"Operation {operation_id} not confirmed after {timeout:g}s")
        self.operation_id = operation_id
        self.timeout = timeout


class TreasuryError(RuntimeError):
    """Base class for state machine failures that revert a transition."""


class AlreadyInitialized(TreasuryError):
    pass


class NotInitialized(TreasuryError):
    pass


class Unauthorized(TreasuryError):
    pass


class InvalidStrategy(TreasuryError):
    pass


class InsufficientBalance(TreasuryError):
    pass


class SlippageExceeded(TreasuryError):
    pass


class ExecutionReverted(TreasuryError):
    """A call dispatched through the account or entry point reverted."""

    def __init__(self, message: str, *, reason: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.reason = reason


class StrategyQueryError(RuntimeError):
    """A yield strategy could not report its position."""


__all__ = [
    "AlreadyInitialized",
    "ConfigurationError",
    "ConfirmationTimeout",
    "ExecutionReverted",
    "InsufficientBalance",
    "InvalidStrategy",
    "NotInitialized",
    "RelayError",
    "SlippageExceeded",
    "StrategyQueryError",
    "TreasuryError",
    "Unauthorized",
]
