from __future__ import annotations

from typing import Optional


class ConvergenceError(Exception):
    """Base class for engine errors."""


class PlanError(ConvergenceError, ValueError):
    """Raised when a plan or inventory is structurally invalid."""


class UnresolvedVariable(ConvergenceError, LookupError):
    """Raised when a variable has no binding in any scope."""

    def __init__(self, name: str, reason: Optional[str] = None):
        message = f"variable '{name}' is not defined"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.name = name
        self.reason = reason


class ProbeFailure(ConvergenceError):
    """Raised when current state could not be determined."""


class ApplyFailure(ConvergenceError):
    """Raised when an external provider call did not succeed."""


class HandlerFailure(ApplyFailure):
    """Raised when a handler's operation fails."""


class CommandTimeout(ConvergenceError):
    """Raised when a provider call exceeds its timeout."""

    def __init__(self, command: list[str], timeout: Optional[float]):
        super().__init__(f"command timed out after {timeout}s: {' '.join(command)}")
        self.command = command
        self.timeout = timeout
