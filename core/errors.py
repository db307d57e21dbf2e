"""Error taxonomy of the ledger core."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class ValidationError(LedgerError):
    """Raised when a request is malformed or incomplete."""


class NotFoundError(LedgerError):
    """Raised when no transaction exists for the given id."""


class ConflictError(LedgerError):
    """Raised on an idempotency-key payload mismatch or a lost status race."""


class InvalidTransitionError(LedgerError):
    """Raised when the requested status change is not allowed."""


class StorageError(LedgerError):
    """Raised when the underlying storage fails."""
