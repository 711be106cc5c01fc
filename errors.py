class LedgerError(Exception):
    """Base class for errors raised by the ledger core."""

    code = "ERROR"


class InvalidInputError(LedgerError, ValueError):
    code = "VALIDATION"


class NotFoundError(LedgerError, ValueError):
    code = "NOT_FOUND"


class InvalidStateError(LedgerError, ValueError):
    """A contract violation: the entity is not in a state the core can work with."""

    code = "INVALID_STATE"


class ConcurrencyConflictError(LedgerError):
    code = "CONFLICT"
