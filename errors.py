"""
Mining Ops — Errors
Every failure the core can report. Modules raise these; the orchestrator
turns them into structured ``{"success": False, ...}`` results.
"""

from typing import Optional


class OperationsError(Exception):
    """Base class. ``code`` is the machine-readable failure category."""
    code = "error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason  # e.g. 'invalid_code', 'banned', 'already_active'

    def to_result(self) -> dict:
        result = {"success": False, "error": self.message, "code": self.code}
        if self.reason:
            result["reason"] = self.reason
        return result


class ValidationError(OperationsError):
    """Malformed or missing input, unknown target. Nothing was written."""
    code = "validation"


class AuthorizationError(OperationsError):
    """Wrong role or self-targeting. Nothing was written."""
    code = "authorization"


class StateConflictError(OperationsError):
    """Operation or participant not in the required status. Safe to retry after refresh."""
    code = "state_conflict"


class TransientDependencyError(OperationsError):
    """The external ledger/pricing source failed or timed out."""
    code = "dependency"


class PersistenceError(OperationsError):
    """A transaction failed and was rolled back."""
    code = "persistence"
