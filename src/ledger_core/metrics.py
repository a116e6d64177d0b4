"""Performance summary over realized (matched) trades."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from ledger_core.contracts import MatchedTrade
from ledger_core.numeric import ZERO, quantize

TRADING_DAYS = 252
_CENTS = 2


def _r2(value: Decimal) -> Decimal:
    return quantize(value, _CENTS)


@dataclass(frozen=True)
class PerformanceMetrics:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: Decimal  # percent
    total_pnl: Decimal
    average_win: Decimal
    average_loss: Decimal
    profit_factor: Decimal  # Infinity when there are wins and no losses
    max_drawdown: Decimal
    sharpe_ratio: Decimal


def compute_performance(matched: Iterable[MatchedTrade]) -> PerformanceMetrics:
    trades = sorted(matched, key=lambda m: (m.closed_at, m.id))
    if not trades:
        return PerformanceMetrics(0, 0, 0, ZERO, ZERO, ZERO, ZERO, ZERO, ZERO, ZERO)

    wins = [m.realized_pnl for m in trades if m.realized_pnl > 0]
    losses = [m.realized_pnl for m in trades if m.realized_pnl < 0]
    total_pnl = sum((m.realized_pnl for m in trades), ZERO)
    gross_win = sum(wins, ZERO)
    gross_loss = abs(sum(losses, ZERO))

    if gross_loss > 0:
        profit_factor = _r2(gross_win / gross_loss)
    elif gross_win > 0:
        profit_factor = Decimal("Infinity")
    else:
        profit_factor = ZERO

    # Drawdown measured on cumulative realized P&L in close order.
    peak = ZERO
    running = ZERO
    max_dd = ZERO
    for m in trades:
        running += m.realized_pnl
        peak = max(peak, running)
        max_dd = max(max_dd, peak - running)

    returns = [m.pnl_pct for m in trades]
    mean = sum(returns, ZERO) / len(returns)
    variance = sum(((r - mean) ** 2 for r in returns), ZERO) / len(returns)
    std = variance.sqrt()
    sharpe = _r2(mean / std * Decimal(TRADING_DAYS).sqrt()) if std > 0 else ZERO

    return PerformanceMetrics(
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=_r2(Decimal(len(wins)) / len(trades) * 100),
        total_pnl=_r2(total_pnl),
        average_win=_r2(gross_win / len(wins)) if wins else ZERO,
        average_loss=_r2(gross_loss / len(losses)) if losses else ZERO,
        profit_factor=profit_factor,
        max_drawdown=_r2(max_dd),
        sharpe_ratio=sharpe,
    )
