"""Tests for Alpaca fill fetcher (mocked SDK). No network calls."""

import sys
from datetime import datetime, timedelta, timezone
from types import ModuleType
from unittest.mock import MagicMock, patch

import pytest

from data.fetcher import MockExecutionFetcher
from ledger_core.validation import ExecutionDraft


@pytest.fixture(autouse=True)
def _mock_alpaca_modules():
    """Mock the alpaca SDK modules so tests run without alpaca-py installed."""
    alpaca = ModuleType("alpaca")
    alpaca_trading = ModuleType("alpaca.trading")
    alpaca_trading_client = ModuleType("alpaca.trading.client")
    alpaca_trading_requests = ModuleType("alpaca.trading.requests")
    alpaca_trading_enums = ModuleType("alpaca.trading.enums")

    alpaca_trading_client.TradingClient = MagicMock()
    alpaca_trading_requests.GetOrdersRequest = MagicMock()

    class FakeQueryOrderStatus:
        OPEN = "open"
        CLOSED = "closed"
        ALL = "all"

    alpaca_trading_enums.QueryOrderStatus = FakeQueryOrderStatus

    mods = {
        "alpaca": alpaca,
        "alpaca.trading": alpaca_trading,
        "alpaca.trading.client": alpaca_trading_client,
        "alpaca.trading.requests": alpaca_trading_requests,
        "alpaca.trading.enums": alpaca_trading_enums,
    }
    with patch.dict(sys.modules, mods):
        # Clear any cached import of the fetcher module
        sys.modules.pop("data.alpaca_fetcher", None)
        yield


def _order(order_id: str, side: str, qty, price, filled_at) -> MagicMock:
    order = MagicMock()
    order.id = order_id
    order.symbol = "SPY"
    order.side = MagicMock(value=side)
    order.filled_qty = qty
    order.filled_avg_price = price
    order.filled_at = filled_at
    return order


def test_alpaca_fetcher_maps_filled_orders() -> None:
    """Verify AlpacaExecutionFetcher converts filled orders to ExecutionDraft rows."""
    from data.alpaca_fetcher import AlpacaExecutionFetcher

    eastern = timezone(timedelta(hours=-5))
    filled = _order("ord-1", "buy", "10", "470.25", datetime(2024, 1, 15, 9, 30, tzinfo=eastern))
    canceled = _order("ord-2", "sell", "0", None, None)

    fetcher = AlpacaExecutionFetcher("key", "secret")
    fetcher._client = MagicMock()
    fetcher._client.get_orders.return_value = [filled, canceled]

    result = fetcher.fetch(start=datetime(2024, 1, 1, tzinfo=timezone.utc), symbols=["SPY"])

    assert result.source == "alpaca"
    assert result.skipped == 1
    assert len(result.drafts) == 1
    draft = result.drafts[0]
    assert draft.symbol == "SPY"
    assert draft.side == "BUY"
    assert draft.quantity == "10"
    assert draft.price == "470.25"
    assert draft.commission == "0"
    assert draft.external_trade_id == "ord-1"
    assert draft.timestamp == datetime(2024, 1, 15, 14, 30, tzinfo=timezone.utc)
    assert draft.timestamp.utcoffset() == timedelta(0)


def test_alpaca_fetcher_builds_closed_orders_request() -> None:
    from data.alpaca_fetcher import MAX_ORDERS_PER_REQUEST, AlpacaExecutionFetcher

    requests = sys.modules["alpaca.trading.requests"]
    fetcher = AlpacaExecutionFetcher("key", "secret")
    fetcher._client = MagicMock()
    fetcher._client.get_orders.return_value = []

    result = fetcher.fetch()

    assert result.drafts == []
    kwargs = requests.GetOrdersRequest.call_args.kwargs
    assert kwargs["status"] == "closed"
    assert kwargs["limit"] == MAX_ORDERS_PER_REQUEST
    assert kwargs["symbols"] is None


def test_alpaca_fetcher_requires_keys() -> None:
    """Must raise if keys are empty."""
    from data.alpaca_fetcher import AlpacaExecutionFetcher

    with pytest.raises(ValueError, match="API key"):
        AlpacaExecutionFetcher("", "")


def test_order_without_fill_time_is_skipped() -> None:
    from data.alpaca_fetcher import order_to_draft

    assert order_to_draft(_order("ord-3", "buy", "5", "1.0", None)) is None


def test_mock_fetcher_filters_symbols() -> None:
    ts = datetime(2024, 1, 2, tzinfo=timezone.utc)
    fetcher = MockExecutionFetcher(
        drafts=[
            ExecutionDraft(symbol="AAPL", side="BUY", quantity="1", price="10", timestamp=ts),
            ExecutionDraft(symbol="MSFT", side="BUY", quantity="1", price="10", timestamp=ts),
        ]
    )

    result = fetcher.fetch(symbols=["msft"])

    assert [d.symbol for d in result.drafts] == ["MSFT"]
    assert result.source == "mock"
