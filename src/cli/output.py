"""
Human-readable ledger output for the terminal.

Every CLI command uses these formatters. The journal receives the same data.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Sequence

from ledger_core.numeric import quantize

if TYPE_CHECKING:
    from data.csv_import import ColumnMapping, RowError
    from ledger_core.contracts import Batch, MatchedTrade, OpenPosition
    from ledger_core.integrity import IntegrityReport
    from ledger_core.metrics import PerformanceMetrics
    from reconciliation.results import RebuildReport, ReconciliationResult


def _qty(value: Decimal) -> str:
    # Drop trailing zeros for display only; stored values keep their scale.
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"


def _money(value: Decimal) -> str:
    return f"{quantize(value, 2):,.2f}"


def format_reconciliation(result: ReconciliationResult) -> str:
    """Summary of one submit_executions run, partial failures included."""
    status = "OK" if result.ok else ("PARTIAL" if result.partial else "FAILED")
    if result.cancelled:
        status = "CANCELLED"
    lines = [
        "=== Reconciliation ===",
        f"Run          : {result.run_id}",
        f"Batch        : {result.batch_id or '-'}",
        f"Status       : {status}",
        f"Accepted     : {result.accepted_count}",
        f"Rejected     : {result.rejected_count}",
        f"Duplicates   : {result.duplicates_skipped}",
        f"Matched      : {len(result.matched)} trade(s), net P&L {_money(result.net_realized_pnl)}",
        f"Stages       : {' -> '.join(s.value for s in result.stages)}",
    ]
    if result.rebuild_triggered:
        rebuilt = ", ".join(result.rebuilt_symbols) or "none"
        lines.append(f"Rebuild      : triggered (rebuilt: {rebuilt})")
    if result.closed_symbols:
        lines.append(f"Closed       : {', '.join(result.closed_symbols)}")
    for p in result.open_positions_touched:
        lines.append(f"  Position   : {format_position_line(p)}")
    for f in result.failed_symbols:
        lines.append(f"  FAILED     : {f.symbol} [{f.stage}, {f.attempts} attempt(s)] {f.reason}")
    for r in result.rejected:
        where = f"row {r.row}" if r.row is not None else f"#{r.index}"
        lines.append(f"  Rejected   : {where}: {r.reason}")
    hidden = result.rejected_count - len(result.rejected)
    if hidden > 0:
        lines.append(f"  ... and {hidden} more rejected row(s)")
    return "\n".join(lines)


def format_rebuild(report: RebuildReport) -> str:
    lines = [
        "=== Full Rebuild ===",
        f"Scope        : {report.scope or 'all symbols'}",
        f"Rebuilt      : {', '.join(report.rebuilt_symbols) or 'none'}",
        f"Matches      : {len(report.matched)} derived, {report.removed_matches} replaced",
        f"Positions    : {len(report.positions)} open",
    ]
    if report.closed_symbols:
        lines.append(f"Closed       : {', '.join(report.closed_symbols)}")
    for f in report.failed_symbols:
        lines.append(f"  FAILED     : {f.symbol} ({f.reason}); previous rows kept")
    return "\n".join(lines)


def format_integrity(report: IntegrityReport) -> str:
    verdict = "REBUILD REQUIRED" if report.rebuild_required else "CONSISTENT"
    lines = [
        "=== Integrity Check ===",
        f"Owner        : {report.owner}",
        f"Verdict      : {verdict}",
    ]
    if report.orphaned_matches:
        lines.append(f"Orphaned     : {len(report.orphaned_matches)} matched trade(s)")
        for mid in report.orphaned_matches:
            lines.append(f"  - {mid}")
    for m in report.mismatched_symbols:
        lines.append(f"Mismatch     : {m.symbol} expected {_qty(m.expected)} actual {_qty(m.actual)}")
    if report.overmatched_executions:
        lines.append(f"Overmatched  : {', '.join(report.overmatched_executions)}")
    if report.drifted_executions:
        lines.append(f"Drifted      : {len(report.drifted_executions)} execution(s)")
    for m in report.unaccounted_symbols:
        lines.append(f"Unaccounted  : {m.symbol} open {_qty(m.expected)} unmatched {_qty(m.actual)}")
    if report.affected_symbols:
        lines.append(f"Affected     : {', '.join(report.affected_symbols)}")
    return "\n".join(lines)


def format_position_line(p: OpenPosition) -> str:
    flags = []
    if p.is_investment:
        flags.append("investment")
    if p.is_manually_closed:
        flags.append("closed")
    suffix = f"  [{', '.join(flags)}]" if flags else ""
    return f"{p.symbol:<8} {p.side.value:<5} {_qty(p.quantity):>12} @ {_qty(p.average_price)}  comm {_money(p.commission)}{suffix}"


def format_positions(positions: Sequence[OpenPosition]) -> str:
    if not positions:
        return "No open positions."
    lines = [f"=== Open Positions ({len(positions)}) ==="]
    for p in positions:
        lines.append(f"  {format_position_line(p)}")
        if p.notes:
            lines.append(f"           notes: {p.notes}")
    return "\n".join(lines)


def format_matched_trades(trades: Sequence[MatchedTrade]) -> str:
    if not trades:
        return "No matched trades."
    lines = [f"=== Matched Trades ({len(trades)}) ==="]
    for m in trades:
        lines.append(
            f"  {m.symbol:<8} {m.direction.value:<5} {_qty(m.quantity):>10}  "
            f"buy {_qty(m.buy_price)} -> sell {_qty(m.sell_price)}  "
            f"gross {_money(m.gross_pnl)} P&L {_money(m.realized_pnl)} ({quantize(m.pnl_pct, 2)}%)  {m.duration_minutes} min"
        )
    return "\n".join(lines)


def format_metrics(metrics: PerformanceMetrics) -> str:
    pf = "inf" if metrics.profit_factor.is_infinite() else str(metrics.profit_factor)
    lines = [
        "=== Performance ===",
        f"Trades       : {metrics.total_trades} ({metrics.winning_trades} win / {metrics.losing_trades} loss)",
        f"Win rate     : {metrics.win_rate}%",
        f"Total P&L    : {_money(metrics.total_pnl)}",
        f"Avg win      : {_money(metrics.average_win)}",
        f"Avg loss     : {_money(metrics.average_loss)}",
        f"Profit factor: {pf}",
        f"Max drawdown : {_money(metrics.max_drawdown)}",
        f"Sharpe       : {metrics.sharpe_ratio}",
    ]
    return "\n".join(lines)


def format_mapping(mapping: ColumnMapping) -> str:
    lines = [f"Column mapping (confidence {mapping.confidence:.0%}):"]
    for fld, header in mapping.fields.items():
        lines.append(f"  {fld:<11}<- {header}")
    if mapping.missing:
        lines.append(f"  missing    : {', '.join(mapping.missing)}")
    return "\n".join(lines)


def format_row_errors(errors: Sequence[RowError], limit: int) -> str:
    lines = [f"  Row {e.row}: {e.message}" for e in errors[:limit]]
    if len(errors) > limit:
        lines.append(f"  ... and {len(errors) - limit} more")
    return "\n".join(lines)


def format_batches(batches: Sequence[tuple[Batch, int]]) -> str:
    if not batches:
        return "No batches."
    lines = [f"=== Batches ({len(batches)}) ==="]
    for b, count in batches:
        label = f"  {b.label}" if b.label else ""
        lines.append(f"  {b.id}  {b.source:<7} {b.created_at:%Y-%m-%d %H:%M}  {count} execution(s){label}")
    return "\n".join(lines)
