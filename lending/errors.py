"""Error kinds raised by the lending core.

Business errors (``NotFoundError``, ``ConflictError``, ``InvalidArgumentError``)
reflect a failed precondition and are never retried. ``StoreError`` wraps
infrastructure failures of the entity store and may be retried by the caller.
"""


class LendingError(Exception):
    kind = "error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(LendingError, LookupError):
    """A referenced book, user or loan does not exist."""
    kind = "not_found"


class ConflictError(LendingError):
    """A business rule refused the action (unavailable book, inactive user, ...)."""
    kind = "conflict"


class InvalidArgumentError(LendingError, ValueError):
    """Malformed input, e.g. a due date that is not after the loan date."""
    kind = "invalid_argument"


class StoreError(LendingError):
    """The entity store failed (I/O error, lock timeout). Safe to retry."""
    kind = "store_error"
    retryable = True
