"""
Data contracts for the ledger core: Execution, MatchedTrade, OpenPosition, Batch.

Executions are the immutable input unit. Matched trades and open positions are
derived from them and can always be re-derived by a full rebuild.
No I/O; these are plain frozen dataclasses.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from ledger_core.numeric import ZERO

# Fixed namespace so derived ids are stable across processes and rebuilds.
LEDGER_NAMESPACE = uuid.UUID("6f1c2a4e-8d3b-5e7a-9c0d-2b4f6a8e1c3d")


def utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def match_id(buy_execution_id: str, sell_execution_id: str) -> str:
    """A buy/sell pair is matched at most once under FIFO, so the pair identifies the match."""
    return str(uuid.uuid5(LEDGER_NAMESPACE, f"match:{buy_execution_id}:{sell_execution_id}"))


def position_id(owner: str, symbol: str) -> str:
    return str(uuid.uuid5(LEDGER_NAMESPACE, f"position:{owner}:{symbol}"))


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Side(str, Enum):
    """Execution side."""

    BUY = "BUY"
    SELL = "SELL"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeDirection(str, Enum):
    """LONG when the buy leg opened the trade, SHORT when the sell leg did."""

    LONG = "LONG"
    SHORT = "SHORT"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Batch:
    """One upload or broker sync. Every stored execution references its batch."""

    id: str
    owner: str
    source: str  # "csv" | "broker" | "api"
    created_at: datetime
    label: str | None = None


@dataclass(frozen=True)
class Execution:
    """One validated buy or sell fill. Only consumption bookkeeping ever changes."""

    id: str
    owner: str
    symbol: str
    side: Side
    quantity: Decimal
    price: Decimal
    timestamp: datetime
    commission: Decimal = ZERO
    external_trade_id: str | None = None
    batch_id: str | None = None
    matched_quantity: Decimal = ZERO
    sequence: int | None = None  # arrival order, assigned by the store

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"execution {self.id}: quantity must be positive")
        if self.matched_quantity < 0 or self.matched_quantity > self.quantity:
            raise ValueError(
                f"execution {self.id}: matched_quantity {self.matched_quantity} outside [0, {self.quantity}]"
            )

    @property
    def remaining_quantity(self) -> Decimal:
        return self.quantity - self.matched_quantity

    @property
    def is_fully_matched(self) -> bool:
        return self.matched_quantity == self.quantity

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity if self.side is Side.BUY else -self.quantity

    def with_matched(self, matched_quantity: Decimal) -> "Execution":
        return replace(self, matched_quantity=matched_quantity)


# ---------------------------------------------------------------------------
# Derived state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatchedTrade:
    """Realized portion of a position: one buy leg paired with one sell leg."""

    id: str
    owner: str
    symbol: str
    quantity: Decimal
    buy_price: Decimal
    sell_price: Decimal
    buy_timestamp: datetime
    sell_timestamp: datetime
    duration_minutes: int
    direction: TradeDirection
    commission: Decimal
    realized_pnl: Decimal
    pnl_pct: Decimal
    buy_execution_id: str
    sell_execution_id: str

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"matched trade {self.id}: quantity must be positive")
        if self.duration_minutes < 0:
            raise ValueError(f"matched trade {self.id}: negative duration {self.duration_minutes}")

    @property
    def opened_at(self) -> datetime:
        return min(self.buy_timestamp, self.sell_timestamp)

    @property
    def closed_at(self) -> datetime:
        return max(self.buy_timestamp, self.sell_timestamp)

    @property
    def gross_pnl(self) -> Decimal:
        return (self.sell_price - self.buy_price) * self.quantity


@dataclass(frozen=True)
class OpenPosition:
    """Net open exposure for one owner+symbol. A zero position is never stored."""

    owner: str
    symbol: str
    net_quantity: Decimal  # signed: > 0 long, < 0 short
    average_price: Decimal
    commission: Decimal
    opened_at: datetime
    updated_at: datetime
    is_investment: bool = False
    is_manually_closed: bool = False
    manual_close_reason: str | None = None
    manual_close_date: datetime | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        if self.net_quantity == 0:
            raise ValueError(f"position {self.owner}/{self.symbol}: net quantity is zero")

    @property
    def id(self) -> str:
        return position_id(self.owner, self.symbol)

    @property
    def side(self) -> PositionSide:
        return PositionSide.LONG if self.net_quantity > 0 else PositionSide.SHORT

    @property
    def trade_type(self) -> Side:
        return Side.BUY if self.net_quantity > 0 else Side.SELL

    @property
    def quantity(self) -> Decimal:
        return abs(self.net_quantity)

    def carry_flags_from(self, previous: "OpenPosition | None") -> "OpenPosition":
        """Copy lifecycle flags from *previous* when it points the same direction."""
        if previous is None or previous.side is not self.side:
            return self
        return replace(
            self,
            is_investment=previous.is_investment,
            is_manually_closed=previous.is_manually_closed,
            manual_close_reason=previous.manual_close_reason,
            manual_close_date=previous.manual_close_date,
            notes=previous.notes,
        )
