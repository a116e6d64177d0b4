"""
Ledger core: numeric primitives, contracts, FIFO matching, position aggregation,
integrity evaluation. Pure functions and dataclasses; no I/O.
"""

from ledger_core.aggregator import (
    AggregationMode,
    FullRebuildAggregator,
    IncrementalAggregator,
    PositionAggregator,
    SymbolUpdate,
    aggregator_for,
)
from ledger_core.contracts import (
    Batch,
    Execution,
    MatchedTrade,
    OpenPosition,
    PositionSide,
    Side,
    TradeDirection,
)
from ledger_core.errors import (
    BatchNotFoundError,
    LedgerError,
    PersistenceError,
    PositionNotFoundError,
    ReconciliationBusyError,
    ReconciliationCancelled,
    ShortExposureError,
)
from ledger_core.fifo_matcher import MatchResult, OpenLot, match_fifo
from ledger_core.integrity import IntegrityChecker, IntegrityReport, QuantityMismatch, evaluate_integrity
from ledger_core.metrics import PerformanceMetrics, compute_performance
from ledger_core.numeric import DEFAULT_POLICY, NumericPolicy, to_decimal
from ledger_core.validation import ExecutionDraft, RejectedExecution, validate_executions

__all__ = [
    # Contracts
    "Batch",
    "Execution",
    "MatchedTrade",
    "OpenPosition",
    "PositionSide",
    "Side",
    "TradeDirection",
    # Numerics
    "DEFAULT_POLICY",
    "NumericPolicy",
    "to_decimal",
    # Ingestion
    "ExecutionDraft",
    "RejectedExecution",
    "validate_executions",
    # Matching and aggregation
    "AggregationMode",
    "FullRebuildAggregator",
    "IncrementalAggregator",
    "MatchResult",
    "OpenLot",
    "PositionAggregator",
    "SymbolUpdate",
    "aggregator_for",
    "match_fifo",
    # Integrity
    "IntegrityChecker",
    "IntegrityReport",
    "QuantityMismatch",
    "evaluate_integrity",
    # Metrics
    "PerformanceMetrics",
    "compute_performance",
    # Errors
    "BatchNotFoundError",
    "LedgerError",
    "PersistenceError",
    "PositionNotFoundError",
    "ReconciliationBusyError",
    "ReconciliationCancelled",
    "ShortExposureError",
]
