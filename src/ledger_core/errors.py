"""Ledger error taxonomy. Invalid rows are reported as data, not raised."""


class LedgerError(Exception):
    """Base class for ledger failures."""


class PersistenceError(LedgerError):
    """Storage unavailable or a write failed; the enclosing transaction was rolled back."""


class ShortExposureError(LedgerError):
    """A symbol group would leave short exposure while shorting is disabled."""


class ReconciliationCancelled(LedgerError):
    """The caller cancelled the run before the symbol transaction committed."""


class ReconciliationBusyError(LedgerError):
    """Another reconciliation holds the owner or symbol lock past the timeout."""


class BatchNotFoundError(LedgerError):
    """No batch with that id exists for the owner."""


class PositionNotFoundError(LedgerError):
    def __init__(self, owner: str, symbol: str) -> None:
        super().__init__(f"No open position for {owner}/{symbol}")
        self.owner = owner
        self.symbol = symbol
