"""
Error Hierarchy

Typed errors raised by the repayment engine. Every error carries enough
detail for a caller to decide between retrying and aborting.
"""

from typing import Any, Dict, Optional


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""

    code = "loan_servicing_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details
        }


class NotFound(LoanServicingError):
    """Raised when a loan, installment or repayment does not exist."""
    code = "not_found"


class InvalidState(LoanServicingError):
    """Raised when an entity is in the wrong state for the operation."""
    code = "invalid_state"


class ValidationError(LoanServicingError, ValueError):
    """Raised when caller input is rejected."""
    code = "validation_error"


class DuplicateReceipt(LoanServicingError):
    """Raised when a receipt number is already on the ledger."""
    code = "duplicate_receipt"


class NothingToAllocate(LoanServicingError):
    """Raised when a loan has no outstanding installments to pay."""
    code = "nothing_to_allocate"


class ConcurrencyConflict(LoanServicingError):
    """Raised on lock timeouts and serialization failures; safe to retry."""
    code = "concurrency_conflict"
    retryable = True
