"""
Error hierarchy for the loan lifecycle engine.

Every error derives from ValueError so callers written against plain
ValueError keep working.
"""

from typing import Any, Dict, List, Optional


class LendingError(ValueError):
    """Base exception for all lending core errors."""


class ValidationError(LendingError):
    """Raised when input is malformed or a required reason is missing."""


class InvalidTransitionError(ValidationError):
    """Raised when a loan status change is not allowed from the current status."""

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot transition loan from {current} to {target}")


class NotFoundError(LendingError):
    """Raised when a referenced loan, borrower, organization or payer does not exist."""


class ConflictError(LendingError):
    """Raised when the loan is terminal, already funded, or claimed by another operation."""


class ConfigurationError(LendingError):
    """Raised when configuration is invalid or missing."""


class PaymentProcessorError(LendingError):
    """Raised when the external payment processor rejects or fails a call."""

    def __init__(self, message: str, body: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.body = body or {}
        self.code = code


class FundingError(PaymentProcessorError):
    """Raised when funding fails part way; the loan stays fully_signed."""

    def __init__(
        self,
        message: str,
        loan_id: str,
        step: str,
        created_invoice_ids: Optional[List[str]] = None,
        body: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, body=body)
        self.loan_id = loan_id
        self.step = step
        self.created_invoice_ids = list(created_invoice_ids or [])


class TerminationError(PaymentProcessorError):
    """Raised when closure or derogatory marking cannot bill the final balance."""

    def __init__(self, message: str, loan_id: str, step: str, body: Optional[Dict[str, Any]] = None):
        super().__init__(message, body=body)
        self.loan_id = loan_id
        self.step = step
