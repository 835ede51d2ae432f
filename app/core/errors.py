"""Domain errors raised by the ledger services.

The HTTP layer maps each kind to a status code (see ``app.main``); services
only raise them. Every error carries a human readable message and an
optional payload with a snapshot of the record that caused it.
"""
from typing import Optional


class LedgerError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str, payload: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}


class ValidationError(LedgerError):
    """Malformed or out-of-range input. Never mutates state."""
    pass


class NotFoundError(LedgerError):
    """Referenced member, cycle, collection, loan or transaction does not exist."""
    pass


class ConflictError(LedgerError):
    """A state precondition was violated."""
    pass


class DuplicatePaymentError(ConflictError):
    """A PAID payment already exists for the target period."""

    def __init__(self, message: str, existing: Optional[dict] = None):
        super().__init__(message, payload={"existing_payment": existing or {}})
        self.existing = existing or {}


class AlreadyPaidError(DuplicatePaymentError):
    """A loan installment already exists for the target month."""
    pass


class InsufficientPoolError(LedgerError):
    """Requested loan amount exceeds the available savings pool."""
    pass


class PersistenceError(LedgerError):
    """The underlying transaction failed or timed out. Retryable."""
    pass
