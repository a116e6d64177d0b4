"""Tests for the FIFO matcher: ordering, partial fills, P&L, no over-matching."""

from decimal import Decimal

import pytest

from conftest import _ts, make_execution
from ledger_core.contracts import Side, TradeDirection, match_id
from ledger_core.fifo_matcher import match_fifo


def test_round_trip_example() -> None:
    b1 = make_execution("BUY", "10", "100", _ts(2024, 1, 2))
    b2 = make_execution("BUY", "5", "110", _ts(2024, 1, 3))
    s1 = make_execution("SELL", "12", "120", _ts(2024, 1, 4))

    result = match_fifo([b1, b2, s1])

    assert [m.quantity for m in result.matched] == [Decimal(10), Decimal(2)]
    first, second = result.matched
    assert first.buy_execution_id == b1.id and first.sell_execution_id == s1.id
    assert first.realized_pnl == Decimal("200")
    assert first.pnl_pct == Decimal("20")
    assert second.buy_execution_id == b2.id
    assert second.realized_pnl == Decimal("20")
    assert result.net_quantity == Decimal(3)
    assert result.average_price() == Decimal("110")
    assert len(result.open_lots) == 1
    assert result.open_lots[0].execution_id == b2.id


def test_oldest_buy_is_consumed_first_regardless_of_input_order() -> None:
    late = make_execution("BUY", "5", "200", _ts(2024, 1, 5))
    early = make_execution("BUY", "5", "100", _ts(2024, 1, 2))
    sell = make_execution("SELL", "5", "150", _ts(2024, 1, 6))

    result = match_fifo([late, sell, early])

    assert len(result.matched) == 1
    assert result.matched[0].buy_execution_id == early.id
    assert result.open_lots[0].execution_id == late.id


def test_timestamp_ties_broken_by_sequence() -> None:
    ts = _ts(2024, 1, 2)
    second = make_execution("BUY", "1", "11", ts, sequence=2)
    first = make_execution("BUY", "1", "10", ts, sequence=1)
    sell = make_execution("SELL", "1", "12", _ts(2024, 1, 3))

    result = match_fifo([second, first, sell])

    assert result.matched[0].buy_execution_id == first.id


def test_never_over_matches() -> None:
    buys = [make_execution("BUY", "3", "10", _ts(2024, 1, d)) for d in (2, 3, 4)]
    sells = [make_execution("SELL", "4", "11", _ts(2024, 1, d)) for d in (5, 6)]

    result = match_fifo(buys + sells)

    for ex in buys + sells:
        assert result.consumed.get(ex.id, Decimal(0)) <= ex.quantity
    total_qty = sum(ex.quantity for ex in buys + sells)
    matched_qty = sum(m.quantity for m in result.matched)
    assert 2 * matched_qty + abs(result.net_quantity) == total_qty
    assert result.net_quantity == Decimal(1)


def test_sell_before_buy_is_short_direction() -> None:
    sell = make_execution("SELL", "10", "50", _ts(2024, 1, 2, 10, 0))
    buy = make_execution("BUY", "10", "45", _ts(2024, 1, 2, 11, 30))

    m = match_fifo([sell, buy]).matched[0]

    assert m.direction is TradeDirection.SHORT
    assert m.duration_minutes == 90
    assert m.realized_pnl == Decimal("50")
    assert m.opened_at == sell.timestamp


def test_unmatched_sell_leaves_short_lot() -> None:
    result = match_fifo([make_execution("SELL", "7", "20", _ts(2024, 1, 2))])

    assert result.matched == []
    assert result.net_quantity == Decimal(-7)
    assert result.open_lots[0].side is Side.SELL


def test_commission_is_pro_rated_per_leg() -> None:
    buy = make_execution("BUY", "10", "100", _ts(2024, 1, 2), commission="10")
    sell = make_execution("SELL", "4", "110", _ts(2024, 1, 3), commission="2")

    result = match_fifo([buy, sell])

    m = result.matched[0]
    # 4/10 of the buy commission + all of the sell commission
    assert m.commission == Decimal("6")
    assert m.realized_pnl == Decimal("34")
    assert result.open_commission() == Decimal("6")


def test_match_ids_are_deterministic() -> None:
    buy = make_execution("BUY", "1", "10", _ts(2024, 1, 2), ex_id="b-1")
    sell = make_execution("SELL", "1", "11", _ts(2024, 1, 3), ex_id="s-1")

    first = match_fifo([buy, sell]).matched[0]
    again = match_fifo([sell, buy]).matched[0]

    assert first.id == again.id == match_id("b-1", "s-1")


def test_ignores_recorded_consumption() -> None:
    buy = make_execution("BUY", "5", "10", _ts(2024, 1, 2)).with_matched(Decimal(5))
    sell = make_execution("SELL", "5", "12", _ts(2024, 1, 3))

    result = match_fifo([buy, sell])

    assert result.matched[0].quantity == Decimal(5)


def test_rejects_mixed_symbols() -> None:
    a = make_execution("BUY", "1", "10", _ts(2024, 1, 2), symbol="AAPL")
    b = make_execution("SELL", "1", "10", _ts(2024, 1, 3), symbol="MSFT")
    with pytest.raises(ValueError, match="single owner/symbol"):
        match_fifo([a, b])


def test_rejects_empty_input() -> None:
    with pytest.raises(ValueError):
        match_fifo([])
