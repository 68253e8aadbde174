class LedgerError(ValueError):
    """Base class for errors raised by the ledger core."""


class NotFound(LedgerError):
    pass


class ValidationError(LedgerError):
    pass


class AlreadySet(LedgerError):
    pass


class PartialFailure(LedgerError):
    """Raised on request when a bulk operation finished with item failures."""

    def __init__(self, succeeded: int, failed: int, total: int) -> None:
        super().__init__(
            f"{failed} of {total} items failed ({succeeded} succeeded)"
        )
        self.succeeded = succeeded
        self.failed = failed
        self.total = total
