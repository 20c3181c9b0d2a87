from __future__ import annotations


class LedgerError(ValueError):
    """Base for every error raised by the ledger services.

    Subclasses ValueError so pages can keep catching the familiar type.
    """

    retryable = False


class ValidationError(LedgerError):
    pass


class InvalidState(LedgerError):
    pass


class NotFound(LedgerError):
    pass


class Conflict(LedgerError):
    pass


class Precondition(LedgerError):
    pass


class InsufficientStock(LedgerError):
    def __init__(self, message: str, *, requested_kg: float = 0.0, available_kg: float = 0.0):
        super().__init__(message)
        self.requested_kg = float(requested_kg)
        self.available_kg = float(available_kg)


class LedgerTimeout(LedgerError):
    """The store stayed locked past the configured wait. Nothing was written."""

    retryable = True
