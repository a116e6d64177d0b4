"""
Position aggregator: one interface, two strategies over the same FIFO matcher.

IncrementalAggregator applies only a new batch (matching inside the batch) to
the existing position snapshot. It is cheap but only "consistent with the
executions it has seen": a sell arriving in a later batch than its buy is not
matched against that buy. FullRebuildAggregator re-matches the complete
history of the symbol and is the authoritative result.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Protocol, Sequence

from ledger_core.contracts import Execution, MatchedTrade, OpenPosition
from ledger_core.fifo_matcher import MatchResult, match_fifo
from ledger_core.numeric import DEFAULT_POLICY, ZERO, NumericPolicy


class AggregationMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL_REBUILD = "full_rebuild"


@dataclass(frozen=True)
class SymbolUpdate:
    """Derived-state change for one owner+symbol, ready to persist atomically."""

    owner: str
    symbol: str
    mode: AggregationMode
    matched: list[MatchedTrade] = field(default_factory=list)
    position: OpenPosition | None = None
    previous: OpenPosition | None = None
    consumed: dict[str, Decimal] = field(default_factory=dict)

    @property
    def closed(self) -> bool:
        return self.previous is not None and self.position is None

    @property
    def replaces_history(self) -> bool:
        return self.mode is AggregationMode.FULL_REBUILD


class PositionAggregator(Protocol):
    mode: AggregationMode

    def aggregate(
        self,
        owner: str,
        symbol: str,
        executions: Sequence[Execution],
        existing: OpenPosition | None,
    ) -> SymbolUpdate:
        ...


def _position_from_lots(owner: str, symbol: str, result: MatchResult, policy: NumericPolicy) -> OpenPosition | None:
    net = result.net_quantity
    if net == 0:
        return None
    return OpenPosition(
        owner=owner,
        symbol=symbol,
        net_quantity=policy.quantity(net),
        average_price=result.average_price(policy),
        commission=result.open_commission(policy),
        opened_at=result.opened_at,
        updated_at=result.last_timestamp,
    )


class IncrementalAggregator:
    """Match within the batch, then net the leftover into the existing snapshot."""

    mode = AggregationMode.INCREMENTAL

    def __init__(self, policy: NumericPolicy = DEFAULT_POLICY) -> None:
        self._policy = policy

    def aggregate(
        self,
        owner: str,
        symbol: str,
        executions: Sequence[Execution],
        existing: OpenPosition | None,
    ) -> SymbolUpdate:
        if not executions:
            return SymbolUpdate(owner, symbol, self.mode, position=existing, previous=existing)
        result = match_fifo(executions, self._policy)
        position = self._fold(owner, symbol, existing, result)
        return SymbolUpdate(
            owner=owner,
            symbol=symbol,
            mode=self.mode,
            matched=result.matched,
            position=position,
            previous=existing,
            consumed=result.consumed,
        )

    def _fold(
        self,
        owner: str,
        symbol: str,
        existing: OpenPosition | None,
        result: MatchResult,
    ) -> OpenPosition | None:
        p = self._policy
        leftover = result.net_quantity
        if existing is None:
            return _position_from_lots(owner, symbol, result, p)
        if leftover == 0:
            return existing

        old = existing.net_quantity
        new_net = old + leftover
        updated_at = max(existing.updated_at, result.last_timestamp)
        if new_net == 0:
            return None

        leftover_avg = result.average_price(p)
        leftover_commission = result.open_commission(p)
        if (old > 0) == (leftover > 0):
            # Adding to the position: weighted average over old and new lots.
            return replace(
                existing,
                net_quantity=p.quantity(new_net),
                average_price=p.average_price([(old, existing.average_price), (leftover, leftover_avg)]),
                commission=p.money(existing.commission + leftover_commission),
                updated_at=updated_at,
            )
        if abs(leftover) < abs(old):
            # Reducing: entry price unchanged, commission follows the surviving quantity.
            return replace(
                existing,
                net_quantity=p.quantity(new_net),
                commission=p.money(existing.commission * abs(new_net) / abs(old)),
                updated_at=updated_at,
            )
        # Crossed zero: what survives is opened by the batch's leftover lots.
        return OpenPosition(
            owner=owner,
            symbol=symbol,
            net_quantity=p.quantity(new_net),
            average_price=leftover_avg,
            commission=p.money(leftover_commission * abs(new_net) / abs(leftover)),
            opened_at=result.opened_at,
            updated_at=updated_at,
        )


class FullRebuildAggregator:
    """Re-derive matches and position from the whole execution history."""

    mode = AggregationMode.FULL_REBUILD

    def __init__(self, policy: NumericPolicy = DEFAULT_POLICY) -> None:
        self._policy = policy

    def aggregate(
        self,
        owner: str,
        symbol: str,
        executions: Sequence[Execution],
        existing: OpenPosition | None,
    ) -> SymbolUpdate:
        if not executions:
            return SymbolUpdate(owner, symbol, self.mode, previous=existing)
        result = match_fifo(executions, self._policy)
        position = _position_from_lots(owner, symbol, result, self._policy)
        if position is not None:
            position = position.carry_flags_from(existing)
        consumed = {ex.id: result.consumed.get(ex.id, ZERO) for ex in executions}
        return SymbolUpdate(
            owner=owner,
            symbol=symbol,
            mode=self.mode,
            matched=result.matched,
            position=position,
            previous=existing,
            consumed=consumed,
        )


def aggregator_for(mode: AggregationMode, policy: NumericPolicy = DEFAULT_POLICY) -> PositionAggregator:
    if mode is AggregationMode.INCREMENTAL:
        return IncrementalAggregator(policy)
    if mode is AggregationMode.FULL_REBUILD:
        return FullRebuildAggregator(policy)
    raise ValueError(f"unknown aggregation mode: {mode!r}")
