"""Outcome types returned to collaborators by the reconciliation orchestrator."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from ledger_core.contracts import MatchedTrade, OpenPosition
from ledger_core.integrity import IntegrityReport
from ledger_core.numeric import ZERO
from ledger_core.validation import RejectedExecution


class ReconciliationStage(str, Enum):
    RECEIVED = "RECEIVED"
    GROUPED_BY_SYMBOL = "GROUPED_BY_SYMBOL"
    MATCHED = "MATCHED"
    PERSISTED = "PERSISTED"
    INTEGRITY_CHECKED = "INTEGRITY_CHECKED"
    OK = "OK"
    REBUILD_TRIGGERED = "REBUILD_TRIGGERED"
    DONE = "DONE"


@dataclass(frozen=True)
class SymbolFailure:
    symbol: str
    reason: str
    stage: str  # "incremental" | "rebuild"
    attempts: int = 1


@dataclass
class ReconciliationResult:
    run_id: str
    owner: str
    batch_id: str | None = None
    matched: list[MatchedTrade] = field(default_factory=list)
    open_positions_touched: list[OpenPosition] = field(default_factory=list)
    closed_symbols: list[str] = field(default_factory=list)
    rebuild_triggered: bool = False
    rebuilt_symbols: list[str] = field(default_factory=list)
    succeeded_symbols: list[str] = field(default_factory=list)
    failed_symbols: list[SymbolFailure] = field(default_factory=list)
    rejected: list[RejectedExecution] = field(default_factory=list)  # capped list
    rejected_count: int = 0
    duplicates_skipped: int = 0
    accepted_count: int = 0
    stages: list[ReconciliationStage] = field(default_factory=list)
    integrity: IntegrityReport | None = None
    cancelled: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.failed_symbols) and bool(self.succeeded_symbols)

    @property
    def ok(self) -> bool:
        return not self.failed_symbols and not self.cancelled

    @property
    def net_realized_pnl(self) -> Decimal:
        return sum((m.realized_pnl for m in self.matched), ZERO)


@dataclass
class RebuildReport:
    owner: str
    scope: str | None = None  # symbol, or None for the whole account
    rebuilt_symbols: list[str] = field(default_factory=list)
    failed_symbols: list[SymbolFailure] = field(default_factory=list)
    matched: list[MatchedTrade] = field(default_factory=list)
    positions: list[OpenPosition] = field(default_factory=list)
    closed_symbols: list[str] = field(default_factory=list)
    removed_matches: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed_symbols and not self.cancelled
