"""
Error taxonomy for GSTR-2B import, reconciliation and invoice actions.

Services raise these; the API layer maps them to HTTP responses in
itc_recon.main via a single exception handler.
"""
from typing import Dict, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation errors."""
    status_code = 500
    default_code = "RECONCILIATION_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict] = None):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ReconciliationError):
    """Malformed input, missing required fields, blank rejection reason."""
    status_code = 422
    default_code = "VALIDATION_ERROR"


class NotFoundError(ReconciliationError):
    """Unknown import, invoice or vendor invoice id."""
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(ReconciliationError):
    """Concurrent reconcile, lost update on an invoice, batch locked."""
    status_code = 409
    default_code = "CONFLICT"


class InvalidStateError(ReconciliationError):
    """Action attempted from an incompatible match or action status."""
    status_code = 409
    default_code = "INVALID_STATE"


class InternalError(ReconciliationError):
    """Unexpected failure in the middle of a reconciliation pass."""
    status_code = 500
    default_code = "INTERNAL_ERROR"


class DuplicateImportError(ConflictError, ValidationError):
    """A statement is already imported for the company and period."""
    status_code = 409
    default_code = "DUPLICATE_IMPORT"
