"""
Data layer: SQLite ledger store, CSV trade-book import, broker fill fetchers.

Depends on ledger_core for contracts; no dependency from ledger_core back to data.
"""

from data.csv_import import ColumnMapping, CsvImportResult, detect_columns, load_executions_csv
from data.fetcher import ExecutionFetcher, FetchResult, MockExecutionFetcher
from data.ledger_store import LedgerReader, LedgerStore, LedgerWriter

__all__ = [
    "ColumnMapping",
    "CsvImportResult",
    "ExecutionFetcher",
    "FetchResult",
    "LedgerReader",
    "LedgerStore",
    "LedgerWriter",
    "MockExecutionFetcher",
    "detect_columns",
    "load_executions_csv",
]


def get_alpaca_fetcher(api_key: str, api_secret: str, *, paper: bool = True):
    """Lazy import to avoid requiring alpaca-py when not used."""
    from data.alpaca_fetcher import AlpacaExecutionFetcher

    return AlpacaExecutionFetcher(api_key, api_secret, paper=paper)
