"""
FIFO matcher: pair the oldest unconsumed BUY with the oldest unconsumed SELL.

Pure function over one owner+symbol. Same input list -> same output list, so
derived state can always be re-derived from raw executions.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from ledger_core.contracts import Execution, MatchedTrade, Side, TradeDirection, match_id
from ledger_core.numeric import DEFAULT_POLICY, ONE_HUNDRED, ZERO, NumericPolicy


@dataclass(frozen=True)
class OpenLot:
    """Unmatched remainder of one execution."""

    execution_id: str
    side: Side
    quantity: Decimal
    price: Decimal
    timestamp: datetime
    commission: Decimal  # share of the execution's commission still open

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity if self.side is Side.BUY else -self.quantity


@dataclass
class MatchResult:
    owner: str
    symbol: str
    matched: list[MatchedTrade] = field(default_factory=list)
    open_lots: list[OpenLot] = field(default_factory=list)
    consumed: dict[str, Decimal] = field(default_factory=dict)  # execution id -> qty matched this run
    last_timestamp: datetime | None = None

    @property
    def net_quantity(self) -> Decimal:
        return sum((lot.signed_quantity for lot in self.open_lots), ZERO)

    @property
    def opened_at(self) -> datetime | None:
        return min((lot.timestamp for lot in self.open_lots), default=None)

    def average_price(self, policy: NumericPolicy = DEFAULT_POLICY) -> Decimal | None:
        if not self.open_lots:
            return None
        return policy.average_price((lot.quantity, lot.price) for lot in self.open_lots)

    def open_commission(self, policy: NumericPolicy = DEFAULT_POLICY) -> Decimal:
        return policy.money(sum((lot.commission for lot in self.open_lots), ZERO))


class _Cursor:
    """Mutable remainder of one execution while it sits in a queue."""

    __slots__ = ("execution", "remaining")

    def __init__(self, execution: Execution) -> None:
        self.execution = execution
        self.remaining = execution.quantity


def _fifo_order(executions: Sequence[Execution]) -> list[Execution]:
    # Arrival sequence breaks timestamp ties; input position covers unsequenced rows.
    keyed = [
        (ex.timestamp, ex.sequence if ex.sequence is not None else -1, i, ex)
        for i, ex in enumerate(executions)
    ]
    keyed.sort(key=lambda k: (k[0], k[1], k[2]))
    return [k[3] for k in keyed]


def _commission_share(ex: Execution, qty: Decimal) -> Decimal:
    if not ex.commission:
        return ZERO
    return ex.commission * qty / ex.quantity


def _build_match(
    buy: Execution,
    sell: Execution,
    qty: Decimal,
    policy: NumericPolicy,
) -> MatchedTrade:
    commission = policy.money(_commission_share(buy, qty) + _commission_share(sell, qty))
    pnl = policy.money((sell.price - buy.price) * qty - commission)
    cost = buy.price * qty
    pnl_pct = policy.percent(pnl / cost * ONE_HUNDRED)
    opened = min(buy.timestamp, sell.timestamp)
    closed = max(buy.timestamp, sell.timestamp)
    return MatchedTrade(
        id=match_id(buy.id, sell.id),
        owner=buy.owner,
        symbol=buy.symbol,
        quantity=qty,
        buy_price=buy.price,
        sell_price=sell.price,
        buy_timestamp=buy.timestamp,
        sell_timestamp=sell.timestamp,
        duration_minutes=int((closed - opened).total_seconds() // 60),
        direction=TradeDirection.LONG if buy.timestamp <= sell.timestamp else TradeDirection.SHORT,
        commission=commission,
        realized_pnl=pnl,
        pnl_pct=pnl_pct,
        buy_execution_id=buy.id,
        sell_execution_id=sell.id,
    )


def match_fifo(executions: Sequence[Execution], policy: NumericPolicy = DEFAULT_POLICY) -> MatchResult:
    """
    Match one symbol's executions FIFO by timestamp.

    Every execution is matched from its full original quantity; prior
    consumption recorded on the execution is ignored. Leftover quantity on
    either side is returned as open lots.
    """
    if not executions:
        raise ValueError("match_fifo needs at least one execution")
    owner, symbol = executions[0].owner, executions[0].symbol
    for ex in executions:
        if ex.owner != owner or ex.symbol != symbol:
            raise ValueError(
                f"match_fifo expects a single owner/symbol, got {ex.owner}/{ex.symbol} with {owner}/{symbol}"
            )

    ordered = _fifo_order(executions)
    buys = deque(_Cursor(ex) for ex in ordered if ex.side is Side.BUY)
    sells = deque(_Cursor(ex) for ex in ordered if ex.side is Side.SELL)
    result = MatchResult(owner=owner, symbol=symbol, last_timestamp=ordered[-1].timestamp)

    while buys and sells:
        buy, sell = buys[0], sells[0]
        qty = min(buy.remaining, sell.remaining)
        result.matched.append(_build_match(buy.execution, sell.execution, qty, policy))
        for cursor in (buy, sell):
            cursor.remaining -= qty
            ex_id = cursor.execution.id
            result.consumed[ex_id] = result.consumed.get(ex_id, ZERO) + qty
        if buy.remaining == 0:
            buys.popleft()
        if sell.remaining == 0:
            sells.popleft()

    for cursor in list(buys) + list(sells):
        ex = cursor.execution
        result.open_lots.append(
            OpenLot(
                execution_id=ex.id,
                side=ex.side,
                quantity=cursor.remaining,
                price=ex.price,
                timestamp=ex.timestamp,
                commission=_commission_share(ex, cursor.remaining),
            )
        )
    return result
