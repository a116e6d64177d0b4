"""
Integrity checker: read-only verification of derived state against raw executions.

Findings are reported, never fixed here. The orchestrator decides on
remediation (full rebuild of the affected symbols).
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Protocol

from ledger_core.contracts import Execution, MatchedTrade, OpenPosition, Side
from ledger_core.numeric import ZERO

logger = logging.getLogger("ledger.integrity")

DEFAULT_EPSILON = Decimal("0.00000001")


@dataclass(frozen=True)
class QuantityMismatch:
    symbol: str
    expected: Decimal
    actual: Decimal

    @property
    def difference(self) -> Decimal:
        return self.actual - self.expected


@dataclass(frozen=True)
class IntegrityReport:
    owner: str
    orphaned_matches: list[str] = field(default_factory=list)
    mismatched_symbols: list[QuantityMismatch] = field(default_factory=list)
    overmatched_executions: list[str] = field(default_factory=list)
    drifted_executions: list[str] = field(default_factory=list)
    unaccounted_symbols: list[QuantityMismatch] = field(default_factory=list)
    affected_symbols: list[str] = field(default_factory=list)

    @property
    def rebuild_required(self) -> bool:
        return bool(
            self.orphaned_matches
            or self.mismatched_symbols
            or self.overmatched_executions
            or self.drifted_executions
            or self.unaccounted_symbols
        )

    @property
    def affected_pairs(self) -> list[tuple[str, str]]:
        return [(self.owner, symbol) for symbol in self.affected_symbols]


class LedgerSnapshot(Protocol):
    def executions(self, owner: str, symbol: str | None = None) -> list[Execution]: ...

    def matched_trades(self, owner: str, symbol: str | None = None) -> list[MatchedTrade]: ...

    def positions(self, owner: str, include_closed: bool = True) -> list[OpenPosition]: ...


class SnapshotSource(Protocol):
    def snapshot(self) -> AbstractContextManager[LedgerSnapshot]: ...


def evaluate_integrity(
    owner: str,
    executions: Iterable[Execution],
    matched_trades: Iterable[MatchedTrade],
    positions: Iterable[OpenPosition],
    epsilon: Decimal = DEFAULT_EPSILON,
) -> IntegrityReport:
    """Run all scans over one consistent view of an owner's ledger."""
    by_id: dict[str, Execution] = {}
    expected: dict[str, Decimal] = {}
    remaining: dict[str, Decimal] = {}
    for ex in executions:
        by_id[ex.id] = ex
        expected[ex.symbol] = expected.get(ex.symbol, ZERO) + (ex.quantity if ex.side is Side.BUY else -ex.quantity)
        remaining[ex.symbol] = remaining.get(ex.symbol, ZERO) + ex.remaining_quantity

    affected: set[str] = set()

    orphaned: list[str] = []
    referenced: dict[str, Decimal] = {}
    for m in matched_trades:
        if m.buy_execution_id not in by_id or m.sell_execution_id not in by_id:
            orphaned.append(m.id)
            affected.add(m.symbol)
        for ex_id in (m.buy_execution_id, m.sell_execution_id):
            referenced[ex_id] = referenced.get(ex_id, ZERO) + m.quantity

    actual = {p.symbol: p.net_quantity for p in positions}
    mismatched: list[QuantityMismatch] = []
    for symbol in sorted(set(expected) | set(actual)):
        exp = expected.get(symbol, ZERO)
        act = actual.get(symbol, ZERO)
        if abs(exp - act) > epsilon:
            mismatched.append(QuantityMismatch(symbol=symbol, expected=exp, actual=act))
            affected.add(symbol)

    # Unmatched execution quantity must all sit in the open position.
    unaccounted: list[QuantityMismatch] = []
    for symbol in sorted(set(remaining) | set(actual)):
        open_qty = abs(actual.get(symbol, ZERO))
        unmatched = remaining.get(symbol, ZERO)
        if abs(unmatched - open_qty) > epsilon:
            unaccounted.append(QuantityMismatch(symbol=symbol, expected=open_qty, actual=unmatched))
            affected.add(symbol)

    overmatched: list[str] = []
    drifted: list[str] = []
    for ex_id, ex in by_id.items():
        used = referenced.get(ex_id, ZERO)
        if used > ex.quantity + epsilon:
            overmatched.append(ex_id)
            affected.add(ex.symbol)
        elif abs(used - ex.matched_quantity) > epsilon:
            drifted.append(ex_id)
            affected.add(ex.symbol)

    report = IntegrityReport(
        owner=owner,
        orphaned_matches=sorted(orphaned),
        mismatched_symbols=mismatched,
        overmatched_executions=sorted(overmatched),
        drifted_executions=sorted(drifted),
        unaccounted_symbols=unaccounted,
        affected_symbols=sorted(affected),
    )
    if report.rebuild_required:
        logger.info(
            "Integrity drift for %s: %d orphaned, %d mismatched, %d overmatched, %d drifted, %d unaccounted",
            owner,
            len(report.orphaned_matches),
            len(report.mismatched_symbols),
            len(report.overmatched_executions),
            len(report.drifted_executions),
            len(report.unaccounted_symbols),
        )
    return report


class IntegrityChecker:
    """Runs the scans against one read snapshot of a ledger store. Never mutates."""

    def __init__(self, source: SnapshotSource, *, epsilon: Decimal = DEFAULT_EPSILON) -> None:
        self._source = source
        self._epsilon = epsilon

    def check(self, owner: str) -> IntegrityReport:
        with self._source.snapshot() as snap:
            executions = snap.executions(owner)
            matched = snap.matched_trades(owner)
            positions = snap.positions(owner)
        return evaluate_integrity(owner, executions, matched, positions, self._epsilon)
