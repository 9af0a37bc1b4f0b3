"""
Error taxonomy for the reconciliation engine.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for engine errors."""
    message = "Reconciliation error"

    def __init__(self, message: Optional[str] = None, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message or self.message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for UI/notification collaborators."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidScopeError(ReconciliationError):
    """Missing or ambiguous user/account scope."""
    message = "A user scope is required"


class ValidationError(ReconciliationError):
    """Input record or allocation violates an invariant."""
    message = "Validation error"


class NotFoundError(ReconciliationError):
    """Transaction, document or pattern does not exist in the scope."""
    message = "Record not found"


class ConcurrencyConflictError(ReconciliationError):
    """An optimistic write lost a race; the caller should retry."""
    message = "Record was modified concurrently, please retry"


class EscalationError(ReconciliationError):
    """The investigation service failed or returned something unusable."""
    message = "Escalation failed"


class EscalationTimeoutError(EscalationError):
    """The investigation service exceeded its deadline."""
    message = "Escalation timed out"


class EscalationInvalidReferenceError(EscalationError):
    """A verdict referenced an identifier outside the candidate set."""
    message = "Escalation verdict referenced unknown records"
