"""
Reconciliation: executions in, matched trades and open positions out.

ReconciliationOrchestrator is the single entry point for CSV import, broker
sync and data-management collaborators.
"""

from reconciliation.locks import LockRegistry
from reconciliation.orchestrator import ReconciliationOrchestrator
from reconciliation.results import RebuildReport, ReconciliationResult, ReconciliationStage, SymbolFailure

__all__ = [
    "LockRegistry",
    "RebuildReport",
    "ReconciliationOrchestrator",
    "ReconciliationResult",
    "ReconciliationStage",
    "SymbolFailure",
]
